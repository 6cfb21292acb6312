"""Domain records shared across forge-agent planes."""

from forge_agent.domain.models import (
    Confidence,
    FileTarget,
    FileUpdate,
    Intent,
    JSONValue,
    MemoryEntry,
    RunOutcome,
    TraceEntry,
    ValidationResult,
    VerificationResult,
    VerificationStatus,
    utc_now_iso,
)

__all__ = [
    "Confidence",
    "FileTarget",
    "FileUpdate",
    "Intent",
    "JSONValue",
    "MemoryEntry",
    "RunOutcome",
    "TraceEntry",
    "ValidationResult",
    "VerificationResult",
    "VerificationStatus",
    "utc_now_iso",
]
