"""Push-only run event channel consumed by renderers; no pipeline state depends on it."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Final

from forge_agent.domain.models import utc_now_iso

_DEFAULT_BUFFER_SIZE: Final[int] = 512
_DEFAULT_ERROR_BUFFER: Final[int] = 256


class RunEventKind(StrEnum):
    STATUS = "status"
    LOG = "log"
    DIFF = "diff"
    STREAM_START = "stream_start"
    STREAM_APPEND = "stream_append"
    STREAM_END = "stream_end"


@dataclass(frozen=True, slots=True)
class RunEvent:
    """One progress event. ``text`` carries status/log/stream text, ``lines`` a diff."""

    kind: RunEventKind
    text: str = ""
    lines: tuple[str, ...] = ()
    created_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", RunEventKind(self.kind))
        object.__setattr__(self, "lines", tuple(str(line) for line in self.lines))


Subscriber = Callable[[RunEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the publisher."""

    event_kind: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    kind: RunEventKind | None
    callback: Subscriber


class RunEventChannel:
    """Fan-out of typed run events to subscribers, with a bounded replay buffer.

    Subscriber exceptions are recorded as ``DispatchError`` and never reach the
    publishing pipeline stage.
    """

    def __init__(self, *, buffer_size: int = _DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        self._buffer = deque[RunEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()

    def subscribe(self, kind: RunEventKind | str | None, callback: Subscriber) -> int:
        """Subscribe to one event kind, or every kind when ``kind`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = RunEventKind(kind) if kind is not None else None
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(token, normalized, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def publish(self, event: RunEvent) -> tuple[DispatchError, ...]:
        if not isinstance(event, RunEvent):
            raise ValueError(f"event must be RunEvent, got {type(event).__name__}")
        with self._lock:
            self._buffer.append(event)
            subscriptions = tuple(self._subscriptions.values())

        errors: list[DispatchError] = []
        for subscription in subscriptions:
            if subscription.kind is not None and subscription.kind is not event.kind:
                continue
            try:
                subscription.callback(event)
            except Exception as exc:  # noqa: BLE001
                errors.append(
                    DispatchError(
                        event_kind=event.kind.value,
                        target=_callback_name(subscription.callback),
                        error_type=type(exc).__name__,
                        message=str(exc),
                    )
                )
        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    def status(self, text: str) -> None:
        self.publish(RunEvent(RunEventKind.STATUS, text=text))

    def log(self, text: str) -> None:
        self.publish(RunEvent(RunEventKind.LOG, text=text))

    def diff(self, lines: Sequence[str]) -> None:
        self.publish(RunEvent(RunEventKind.DIFF, lines=tuple(lines)))

    def stream_start(self, title: str = "") -> None:
        self.publish(RunEvent(RunEventKind.STREAM_START, text=title))

    def stream_append(self, chunk: str) -> None:
        self.publish(RunEvent(RunEventKind.STREAM_APPEND, text=chunk))

    def stream_end(self) -> None:
        self.publish(RunEvent(RunEventKind.STREAM_END))

    def replay(
        self, *, kind: RunEventKind | str | None = None, limit: int | None = None
    ) -> tuple[RunEvent, ...]:
        """Return buffered events in publish order, optionally filtered."""

        wanted = RunEventKind(kind) if kind is not None else None
        with self._lock:
            events = tuple(self._buffer)
        filtered = [event for event in events if wanted is None or event.kind is wanted]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def log_lines(self) -> tuple[str, ...]:
        return tuple(event.text for event in self.replay(kind=RunEventKind.LOG))

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._dispatch_errors)


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


__all__ = [
    "DispatchError",
    "RunEvent",
    "RunEventChannel",
    "RunEventKind",
    "Subscriber",
]
