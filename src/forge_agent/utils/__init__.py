"""Utility exports for filesystem and cancellation helpers."""

from forge_agent.utils.concurrency import CancellationToken, RunCancelledError, await_cancellable
from forge_agent.utils.fs import (
    atomic_write,
    is_within,
    read_text_or_empty,
    write_text_creating_parents,
)

__all__ = [
    "CancellationToken",
    "RunCancelledError",
    "atomic_write",
    "await_cancellable",
    "is_within",
    "read_text_or_empty",
    "write_text_creating_parents",
]
