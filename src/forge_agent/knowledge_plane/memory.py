"""
forge-agent — persistent run memory

File: src/forge_agent/knowledge_plane/memory.py
Last updated: 2026-10-19

Purpose
- Keep a bounded, compacted log of finished runs per workspace and render it into a
  prompt-sized context block.

Functional requirements
- Storage lives at ``<root>/.forge/memory.json`` as
  ``{version, updatedAt, compacted?, entries}``; other versions are ignored and
  never overwritten. Entries that fail to parse are skipped individually.
- Appending compacts when entries exceed ``max_entries`` or the serialized state
  exceeds ``max_chars``: the newest ``compaction_target_entries`` stay verbatim
  and the rest fold into the ``compacted`` block.
- Compaction summaries come from the model when a client is configured and fall
  back to deterministic bullets.

Non-functional requirements
- Memory is best-effort: every read or write failure is logged and swallowed.
- Writes are atomic.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from forge_agent.domain.models import MemoryEntry, utc_now_iso
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError
from forge_agent.synthesis_plane.schemas import MEMORY_SUMMARY
from forge_agent.utils.fs import write_text_creating_parents

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

MEMORY_VERSION: Final[int] = 1
MEMORY_DIRECTORY: Final[str] = ".forge"
MEMORY_FILENAME: Final[str] = "memory.json"
TRUNCATED_MEMORY: Final[str] = "\n... (truncated memory)"
COMPACTED_UNAVAILABLE: Final[str] = "Compacted memory unavailable."

COMPACTION_PROMPT: Final[str] = (
    "You are compacting project memory. Summarize the key decisions, constraints, "
    "and files changed. Return concise bullets only."
)


def memory_file_path(root: str | os.PathLike[str]) -> Path:
    return Path(root) / MEMORY_DIRECTORY / MEMORY_FILENAME


@dataclass(frozen=True, slots=True)
class MemoryOptions:
    max_entries: int = 12
    max_chars: int = 6000
    compaction_target_entries: int = 8
    include_compacted: bool = True

    @classmethod
    def from_settings(cls, settings: ForgeSettings) -> MemoryOptions:
        return cls(
            max_entries=max(1, settings.memory_max_entries),
            max_chars=max(200, settings.memory_max_chars),
            compaction_target_entries=max(1, settings.memory_compaction_target_entries),
            include_compacted=settings.memory_include_compacted,
        )


@dataclass(frozen=True, slots=True)
class CompactedMemory:
    created_at: str
    entries: int
    summary: str

    def to_dict(self) -> dict[str, object]:
        return {"createdAt": self.created_at, "entries": self.entries, "summary": self.summary}

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> CompactedMemory | None:
        summary = payload.get("summary")
        if not isinstance(summary, str):
            return None
        count = payload.get("entries")
        return cls(
            created_at=str(payload.get("createdAt") or utc_now_iso()),
            entries=count if isinstance(count, int) and not isinstance(count, bool) else 0,
            summary=summary,
        )


@dataclass(slots=True)
class MemoryState:
    updated_at: str = field(default_factory=utc_now_iso)
    entries: list[MemoryEntry] = field(default_factory=list)
    compacted: CompactedMemory | None = None
    # Stored entries that failed to parse on load; never written back.
    skipped_entries: int = field(default=0, compare=False)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"version": MEMORY_VERSION, "updatedAt": self.updated_at}
        if self.compacted is not None:
            payload["compacted"] = self.compacted.to_dict()
        payload["entries"] = [entry.to_dict() for entry in self.entries]
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> MemoryState | None:
        if payload.get("version") != MEMORY_VERSION:
            return None
        raw_entries = payload.get("entries")
        if not isinstance(raw_entries, list):
            return None
        entries: list[MemoryEntry] = []
        skipped = 0
        for item in raw_entries:
            if not isinstance(item, Mapping):
                skipped += 1
                continue
            try:
                entries.append(MemoryEntry.from_dict(item))
            except (TypeError, ValueError):
                skipped += 1
        raw_compacted = payload.get("compacted")
        compacted = (
            CompactedMemory.from_dict(raw_compacted) if isinstance(raw_compacted, Mapping) else None
        )
        return cls(
            updated_at=str(payload.get("updatedAt") or utc_now_iso()),
            entries=entries,
            compacted=compacted,
            skipped_entries=skipped,
        )


def render_memory_context(state: MemoryState, options: MemoryOptions) -> str | None:
    """Compacted block first, then recent entries newest first, capped at ``max_chars``."""

    lines: list[str] = []
    if options.include_compacted and state.compacted is not None and state.compacted.summary:
        lines.append("Compacted memory:")
        lines.append(state.compacted.summary.strip())

    for entry in reversed(state.entries[-options.max_entries :]):
        lines.append(f"[{entry.created_at}] {entry.instruction}")
        if entry.intent:
            lines.append(f"Intent: {entry.intent}")
        if entry.files_changed:
            lines.append(f"Files changed: {', '.join(entry.files_changed)}")
        if entry.decisions:
            lines.append(f"Decisions: {' | '.join(entry.decisions)}")
        if entry.constraints:
            lines.append(f"Constraints: {' | '.join(entry.constraints)}")
        if entry.summary:
            lines.append(f"Summary: {entry.summary}")

    if not lines:
        return None
    context = "\n".join(lines)
    if len(context) > options.max_chars:
        context = context[: options.max_chars] + TRUNCATED_MEMORY
    return context.strip()


def fallback_summary(entries: Sequence[MemoryEntry]) -> str:
    bullets: list[str] = []
    for entry in entries:
        parts = [entry.instruction]
        if entry.files_changed:
            parts.append(f"files: {', '.join(entry.files_changed)}")
        if entry.decisions:
            parts.append(f"decisions: {' | '.join(entry.decisions)}")
        bullets.append("- " + " | ".join(parts))
    return "\n".join(bullets) or COMPACTED_UNAVAILABLE


def _entries_prompt(entries: Sequence[MemoryEntry]) -> str:
    blocks: list[str] = []
    for entry in entries:
        lines = [f"Instruction: {entry.instruction}"]
        if entry.intent:
            lines.append(f"Intent: {entry.intent}")
        if entry.files_changed:
            lines.append(f"Files: {', '.join(entry.files_changed)}")
        if entry.decisions:
            lines.append(f"Decisions: {' | '.join(entry.decisions)}")
        if entry.constraints:
            lines.append(f"Constraints: {' | '.join(entry.constraints)}")
        if entry.summary:
            lines.append(f"Summary: {entry.summary}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class MemoryStore:
    """File-backed memory for one workspace."""

    def __init__(
        self,
        root: str | os.PathLike[str],
        options: MemoryOptions | None = None,
        *,
        client: JsonRetryClient | None = None,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(root)
        self._options = options if options is not None else MemoryOptions()
        self._client = client
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return memory_file_path(self._root)

    @property
    def options(self) -> MemoryOptions:
        return self._options

    def load_state(self) -> MemoryState | None:
        state, _ = self._read_state()
        return state

    def _read_state(self) -> tuple[MemoryState | None, bool]:
        """Return ``(state, readable)``; an absent file counts as readable."""

        path = self.path
        if not path.exists():
            return None, True
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._logger.warning("memory_load_failed", path=str(path), error=str(exc))
            return None, False
        if not isinstance(payload, Mapping):
            self._logger.warning("memory_load_failed", path=str(path), error="not an object")
            return None, False
        try:
            state = MemoryState.from_dict(payload)
        except (TypeError, ValueError) as exc:
            self._logger.warning("memory_load_failed", path=str(path), error=str(exc))
            return None, False
        if state is None:
            self._logger.warning(
                "memory_load_failed", path=str(path), version=payload.get("version")
            )
            return None, False
        if state.skipped_entries:
            self._logger.warning(
                "memory_entries_skipped", path=str(path), skipped=state.skipped_entries
            )
        return state, True

    def load_context(
        self, max_entries: int | None = None, max_chars: int | None = None
    ) -> str | None:
        state = self.load_state()
        if state is None:
            return None
        options = self._options
        if max_entries is not None or max_chars is not None:
            options = MemoryOptions(
                max_entries=max_entries if max_entries is not None else options.max_entries,
                max_chars=max_chars if max_chars is not None else options.max_chars,
                compaction_target_entries=options.compaction_target_entries,
                include_compacted=options.include_compacted,
            )
        return render_memory_context(state, options)

    async def append(
        self, entry: MemoryEntry, *, token: CancellationToken | None = None
    ) -> bool:
        """Persist ``entry``; return ``False`` when the write failed.

        A memory file that exists but cannot be read is left untouched.
        """

        state, readable = self._read_state()
        if not readable:
            self._logger.warning("memory_append_skipped", path=str(self.path))
            return False
        if state is None:
            state = MemoryState()
        state.entries.append(entry)
        state.updated_at = utc_now_iso()
        await self._compact_if_needed(state, token)
        try:
            write_text_creating_parents(self.path, state.to_json())
        except OSError as exc:
            self._logger.warning("memory_write_failed", path=str(self.path), error=str(exc))
            return False
        self._logger.info("memory_appended", entries=len(state.entries), outcome=entry.outcome.value)
        return True

    def clear(self) -> bool:
        path = self.path
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            self._logger.warning("memory_clear_failed", path=str(path), error=str(exc))
            return False
        return True

    async def _compact_if_needed(
        self, state: MemoryState, token: CancellationToken | None
    ) -> None:
        options = self._options
        total_chars = len(json.dumps(state.to_dict()))
        if len(state.entries) <= options.max_entries and total_chars <= options.max_chars:
            return
        target = max(1, options.compaction_target_entries)
        if len(state.entries) <= target:
            return

        to_compact = state.entries[:-target]
        remaining = state.entries[-target:]
        summary = await self._summarize(to_compact, state.compacted, token)
        previous = state.compacted.entries if state.compacted is not None else 0
        state.compacted = CompactedMemory(
            created_at=utc_now_iso(), entries=previous + len(to_compact), summary=summary
        )
        state.entries = remaining
        self._logger.info(
            "memory_compacted", compacted=len(to_compact), remaining=len(remaining)
        )

    async def _summarize(
        self,
        entries: Sequence[MemoryEntry],
        previous: CompactedMemory | None,
        token: CancellationToken | None,
    ) -> str:
        fallback = fallback_summary(entries)
        if previous is not None and previous.summary.strip():
            fallback = f"{previous.summary.strip()}\n{fallback}"
        if self._client is None:
            return fallback

        prompt = _entries_prompt(entries)
        if previous is not None and previous.summary.strip():
            prompt = f"Previously compacted:\n{previous.summary.strip()}\n\n{prompt}"
        messages = [
            ChatMessage.system(COMPACTION_PROMPT),
            ChatMessage.user(f"Project memory entries:\n\n{prompt}"),
        ]
        try:
            payload = await self._client.request_json(
                messages, MEMORY_SUMMARY, token=token, label="Memory compaction"
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("memory_summary_fallback", error=str(exc))
            return fallback
        bullets = [str(item).strip() for item in payload.get("bullets", []) if str(item).strip()]
        if not bullets:
            return fallback
        return "\n".join(item if item.startswith("- ") else f"- {item}" for item in bullets)


__all__ = [
    "COMPACTION_PROMPT",
    "CompactedMemory",
    "MEMORY_VERSION",
    "MemoryOptions",
    "MemoryState",
    "MemoryStore",
    "fallback_summary",
    "memory_file_path",
    "render_memory_context",
]
