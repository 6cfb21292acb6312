"""
forge-agent — run trace recorder

File: src/forge_agent/observability/trace.py
Last updated: 2026-10-19

Purpose
- Collect an auditable list of prompts, responses and steps while a run is active,
  so the user can peek at what the pipeline sent and received.

Functional requirements
- Recording is a no-op outside ``start()`` / ``stop()``.
- At most ``max_entries`` entries are kept; later entries are dropped.
- Content is redacted before storage and truncated to ``max_content_chars``; an
  entry whose content needed redaction is flagged ``sensitive``.
- System messages are hidden from recorded prompts by default.

Non-functional requirements
- Never raises on malformed content; tracing must not break a run.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Final

from forge_agent.domain.models import TRACE_KINDS, TraceEntry
from forge_agent.security.redaction import redact_text

if TYPE_CHECKING:
    from forge_agent.domain.models import TraceKind

MAX_TRACE_ENTRIES: Final[int] = 200
MAX_TRACE_CONTENT_CHARS: Final[int] = 8000
TRACE_REDACTION: Final[str] = "[redacted]"
SYSTEM_PROMPT_HIDDEN: Final[str] = "[system prompt hidden]"
TRUNCATION_SUFFIX: Final[str] = "\n... (truncated)"


class TraceRecorder:
    """Bounded, redacting trace buffer owned by one run."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        max_entries: int = MAX_TRACE_ENTRIES,
        max_content_chars: int = MAX_TRACE_CONTENT_CHARS,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        if max_content_chars <= 0:
            raise ValueError("max_content_chars must be > 0")
        self._enabled = enabled
        self._max_entries = max_entries
        self._max_content_chars = max_content_chars
        self._entries: list[TraceEntry] | None = None

    @property
    def active(self) -> bool:
        return self._entries is not None

    def start(self) -> None:
        self._entries = [] if self._enabled else None

    def stop(self) -> tuple[TraceEntry, ...]:
        entries = tuple(self._entries or ())
        self._entries = None
        return entries

    def peek(self) -> tuple[TraceEntry, ...]:
        return tuple(self._entries or ())

    def record(
        self, kind: TraceKind, title: str, content: str, *, sensitive: bool = False
    ) -> None:
        if self._entries is None or len(self._entries) >= self._max_entries:
            return
        if kind not in TRACE_KINDS:
            kind = "info"
        text = content if isinstance(content, str) else str(content)
        redacted = redact_text(text, replacement=TRACE_REDACTION)
        self._entries.append(
            TraceEntry(
                kind=kind,
                title=str(title),
                content=_truncate(redacted, self._max_content_chars),
                sensitive=sensitive or redacted != text,
            )
        )

    def record_step(self, title: str, content: str) -> None:
        self.record("step", title, content)

    def record_payload(self, title: str, content: str) -> None:
        self.record("payload", title, content)

    def record_response(self, title: str, content: str) -> None:
        self.record("response", title, content)

    def record_prompt(
        self,
        title: str,
        messages: Sequence[Mapping[str, str]],
        *,
        hide_system: bool = True,
    ) -> None:
        lines: list[str] = []
        system_hidden = False
        for message in messages:
            role = str(message.get("role", "user"))
            if role == "system" and hide_system:
                system_hidden = True
                continue
            lines.append(f"[{role}] {message.get('content', '')}")
        if system_hidden:
            lines.append(SYSTEM_PROMPT_HIDDEN)
        self.record("prompt", title, "\n\n".join(lines))


def _truncate(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[:max_chars] + TRUNCATION_SUFFIX


__all__ = [
    "MAX_TRACE_CONTENT_CHARS",
    "MAX_TRACE_ENTRIES",
    "SYSTEM_PROMPT_HIDDEN",
    "TRACE_REDACTION",
    "TRUNCATION_SUFFIX",
    "TraceRecorder",
]
