"""
forge-agent — domain models

File: src/forge_agent/domain/models.py
Last updated: 2026-10-19

Purpose
- Typed records passed between pipeline stages of one run.

Functional requirements
- Records are immutable and validate their own fields on construction.
- Persisted records (memory entries) round-trip through ``to_dict`` / ``from_dict``.

Non-functional requirements
- Standard library only; deterministic serialization with sorted keys.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final, Literal

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TraceKind = Literal["step", "prompt", "response", "payload", "validation", "diff", "info"]
TRACE_KINDS: Final[frozenset[str]] = frozenset(
    {"step", "prompt", "response", "payload", "validation", "diff", "info"}
)


class Intent(StrEnum):
    """Classification of a user instruction."""

    EDIT = "edit"
    QUESTION = "question"
    FIX = "fix"


class RunOutcome(StrEnum):
    """Terminal outcome recorded for a run in memory."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class VerificationStatus(StrEnum):
    PASS = "pass"
    FAIL = "fail"


class Confidence(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with ``Z`` suffix."""

    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require_text(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    return value


def _require_non_empty(value: object, field_name: str) -> str:
    text = _require_text(value, field_name).strip()
    if not text:
        raise ValueError(f"{field_name} cannot be empty")
    return text


def _as_str_tuple(values: Sequence[str], field_name: str) -> tuple[str, ...]:
    if isinstance(values, str):
        raise TypeError(f"{field_name} must be a sequence of strings, not a string")
    out: list[str] = []
    for item in values:
        if not isinstance(item, str):
            raise TypeError(f"{field_name} entries must be strings")
        out.append(item)
    return tuple(out)


@dataclass(frozen=True, slots=True)
class FileTarget:
    """A workspace-relative path that passed the path policy, plus its absolute path."""

    path: str
    full_path: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _require_non_empty(self.path, "FileTarget.path"))
        object.__setattr__(
            self, "full_path", _require_non_empty(self.full_path, "FileTarget.full_path")
        )


@dataclass(frozen=True, slots=True)
class FileUpdate:
    """Proposed full-file replacement for one target."""

    path: str
    full_path: str
    original_content: str
    updated_content: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _require_non_empty(self.path, "FileUpdate.path"))
        object.__setattr__(
            self, "full_path", _require_non_empty(self.full_path, "FileUpdate.full_path")
        )
        _require_text(self.original_content, "FileUpdate.original_content")
        _require_text(self.updated_content, "FileUpdate.updated_content")

    def is_change(self) -> bool:
        return self.updated_content != self.original_content

    @property
    def is_new_file(self) -> bool:
        return self.original_content == ""


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of one or more validation commands."""

    ok: bool
    output: str
    command: str = ""
    label: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "ok": self.ok,
            "output": self.output,
            "command": self.command,
            "label": self.label,
        }


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Model verdict on whether the applied change satisfies the instruction."""

    status: VerificationStatus
    issues: tuple[str, ...] = ()
    confidence: Confidence = Confidence.LOW

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", VerificationStatus(self.status))
        object.__setattr__(self, "confidence", Confidence(self.confidence))
        object.__setattr__(
            self, "issues", _as_str_tuple(self.issues, "VerificationResult.issues")
        )

    @property
    def failed(self) -> bool:
        return self.status is VerificationStatus.FAIL

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "issues": list(self.issues),
            "confidence": self.confidence.value,
        }


@dataclass(frozen=True, slots=True)
class MemoryEntry:
    """One finished run, persisted to ground future prompts for the workspace."""

    instruction: str
    intent: str
    outcome: RunOutcome
    files_changed: tuple[str, ...] = ()
    summary: str = ""
    decisions: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    validation: str | None = None
    verification: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcome", RunOutcome(self.outcome))
        _require_text(self.instruction, "MemoryEntry.instruction")
        _require_text(self.intent, "MemoryEntry.intent")
        _require_text(self.summary, "MemoryEntry.summary")
        object.__setattr__(
            self, "files_changed", _as_str_tuple(self.files_changed, "MemoryEntry.files_changed")
        )
        object.__setattr__(
            self, "decisions", _as_str_tuple(self.decisions, "MemoryEntry.decisions")
        )
        object.__setattr__(
            self, "constraints", _as_str_tuple(self.constraints, "MemoryEntry.constraints")
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "instruction": self.instruction,
            "intent": self.intent,
            "filesChanged": list(self.files_changed),
            "summary": self.summary,
            "decisions": list(self.decisions),
            "constraints": list(self.constraints),
            "validation": self.validation,
            "verification": self.verification,
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> MemoryEntry:
        def _strings(key: str) -> tuple[str, ...]:
            raw = payload.get(key)
            if not isinstance(raw, list):
                return ()
            return tuple(str(item) for item in raw)

        def _optional(key: str) -> str | None:
            raw = payload.get(key)
            return raw if isinstance(raw, str) else None

        return cls(
            id=str(payload.get("id") or uuid.uuid4().hex),
            created_at=str(payload.get("createdAt") or utc_now_iso()),
            instruction=str(payload.get("instruction", "")),
            intent=str(payload.get("intent", "")),
            files_changed=_strings("filesChanged"),
            summary=str(payload.get("summary", "")),
            decisions=_strings("decisions"),
            constraints=_strings("constraints"),
            validation=_optional("validation"),
            verification=_optional("verification"),
            outcome=RunOutcome(str(payload.get("outcome", RunOutcome.COMPLETED.value))),
        )


@dataclass(frozen=True, slots=True)
class TraceEntry:
    """One auditable step recorded while a run is active."""

    kind: TraceKind
    title: str
    content: str
    sensitive: bool = False
    created_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        if self.kind not in TRACE_KINDS:
            raise ValueError(f"unsupported trace kind {self.kind!r}")
        _require_text(self.title, "TraceEntry.title")
        _require_text(self.content, "TraceEntry.content")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind,
            "title": self.title,
            "content": self.content,
            "sensitive": self.sensitive,
            "createdAt": self.created_at,
        }


__all__ = [
    "Confidence",
    "FileTarget",
    "FileUpdate",
    "Intent",
    "JSONScalar",
    "JSONValue",
    "MemoryEntry",
    "RunOutcome",
    "TRACE_KINDS",
    "TraceEntry",
    "TraceKind",
    "ValidationResult",
    "VerificationResult",
    "VerificationStatus",
    "utc_now_iso",
]
