"""Cooperative cancellation primitives shared by every suspension point of a run."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class RunCancelledError(asyncio.CancelledError):
    """Raised at a suspension point when the owning run has been aborted."""


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    Every model call, file write and shell command re-checks the token after it
    resumes so a late result from an aborted run is discarded instead of applied.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "run cancelled") -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason or "run cancelled")


async def await_cancellable(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
    *,
    timeout_seconds: float | None = None,
) -> T:
    """Await ``awaitable`` unless ``token`` fires first; re-check the token on return."""

    if token is None:
        if timeout_seconds is None:
            return await awaitable
        return await asyncio.wait_for(_await_value(awaitable), timeout=timeout_seconds)

    if token.is_cancelled:
        _close_unscheduled_coroutine(awaitable)
        token.raise_if_cancelled()

    task: asyncio.Task[T] = asyncio.ensure_future(_await_value(awaitable))
    cancel_wait_task = asyncio.ensure_future(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            result = await task
            # A completed response from an aborted run is stale.
            token.raise_if_cancelled()
            return result

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        if cancel_wait_task in done:
            token.raise_if_cancelled()
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "RunCancelledError",
    "await_cancellable",
]
