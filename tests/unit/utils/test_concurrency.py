"""Regression tests for cooperative cancellation edge cases."""

from __future__ import annotations

import asyncio

import pytest

from forge_agent.utils.concurrency import CancellationToken, RunCancelledError, await_cancellable


async def _value_after(delay: float, value: int = 1) -> int:
    await asyncio.sleep(delay)
    return value


async def test_await_cancellable_returns_value_without_token() -> None:
    assert await await_cancellable(_value_after(0, 7), None) == 7


async def test_await_cancellable_returns_value_when_token_is_idle() -> None:
    token = CancellationToken()
    assert await await_cancellable(_value_after(0.001, 3), token) == 3


async def test_pre_cancelled_token_raises_without_scheduling_the_coroutine() -> None:
    token = CancellationToken()
    token.cancel("stopped by user")
    started: list[bool] = []

    async def _work() -> int:
        started.append(True)
        return 1

    with pytest.raises(RunCancelledError, match="stopped by user"):
        await await_cancellable(_work(), token)
    assert started == []


async def test_cancel_during_wait_aborts_the_inner_task() -> None:
    token = CancellationToken()
    finished: list[bool] = []

    async def _slow() -> int:
        await asyncio.sleep(5)
        finished.append(True)
        return 1

    async def _cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(_cancel_soon())
    with pytest.raises(RunCancelledError):
        await await_cancellable(_slow(), token)
    await canceller
    assert finished == []


async def test_result_that_lands_after_cancellation_is_discarded() -> None:
    token = CancellationToken()

    async def _cancel_then_return() -> int:
        token.cancel("superseded")
        return 42

    with pytest.raises(RunCancelledError):
        await await_cancellable(_cancel_then_return(), token)


async def test_timeout_raises_timeout_error() -> None:
    token = CancellationToken()
    with pytest.raises(TimeoutError):
        await await_cancellable(_value_after(1), token, timeout_seconds=0.01)


def test_run_cancelled_error_is_a_cancelled_error() -> None:
    assert issubclass(RunCancelledError, asyncio.CancelledError)


async def test_first_reason_wins() -> None:
    token = CancellationToken()
    token.cancel("first")
    token.cancel("second")
    assert token.is_cancelled
    assert token.reason == "first"
