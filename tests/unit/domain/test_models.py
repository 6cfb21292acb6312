"""
forge-agent — unit tests for domain models

File: tests/unit/domain/test_models.py
Last updated: 2026-10-19

Purpose
- Validate construction-time checks and the persisted memory entry shape.
"""

from __future__ import annotations

import pytest

from forge_agent.domain.models import (
    Confidence,
    FileTarget,
    FileUpdate,
    MemoryEntry,
    RunOutcome,
    TraceEntry,
    ValidationResult,
    VerificationResult,
    VerificationStatus,
    utc_now_iso,
)


def test_file_target_rejects_blank_path() -> None:
    with pytest.raises(ValueError, match="FileTarget.path"):
        FileTarget(path="  ", full_path="/tmp/x")


def test_file_update_change_detection() -> None:
    same = FileUpdate("a.py", "/w/a.py", "x = 1\n", "x = 1\n")
    changed = FileUpdate("a.py", "/w/a.py", "x = 1\n", "x = 2\n")
    created = FileUpdate("b.py", "/w/b.py", "", "y = 1\n")

    assert not same.is_change()
    assert changed.is_change()
    assert created.is_new_file
    assert not changed.is_new_file


def test_verification_result_coerces_enums_and_issues() -> None:
    result = VerificationResult(status="fail", issues=["missing test"], confidence="high")

    assert result.status is VerificationStatus.FAIL
    assert result.confidence is Confidence.HIGH
    assert result.issues == ("missing test",)
    assert result.failed
    assert result.to_dict() == {"status": "fail", "issues": ["missing test"], "confidence": "high"}


def test_verification_result_rejects_string_issues() -> None:
    with pytest.raises(TypeError):
        VerificationResult(status="pass", issues="not a list")  # type: ignore[arg-type]


def test_memory_entry_round_trip_uses_camel_case_keys() -> None:
    entry = MemoryEntry(
        instruction="add a flag",
        intent="edit",
        outcome=RunOutcome.COMPLETED,
        files_changed=("cli.py",),
        summary="Added --flag.",
        decisions=("Target: cli.py",),
        validation="test: pass",
    )

    payload = entry.to_dict()
    assert payload["filesChanged"] == ["cli.py"]
    assert payload["outcome"] == "completed"
    assert "createdAt" in payload

    restored = MemoryEntry.from_dict(payload)
    assert restored == entry


def test_memory_entry_rejects_unknown_outcome() -> None:
    with pytest.raises(ValueError):
        MemoryEntry(instruction="x", intent="edit", outcome="blocked")  # type: ignore[arg-type]


def test_memory_entry_from_dict_tolerates_missing_fields() -> None:
    restored = MemoryEntry.from_dict({"instruction": "old run"})
    assert restored.outcome is RunOutcome.COMPLETED
    assert restored.files_changed == ()
    assert restored.validation is None


def test_trace_entry_kind_is_checked() -> None:
    with pytest.raises(ValueError, match="unsupported trace kind"):
        TraceEntry(kind="bogus", title="t", content="c")  # type: ignore[arg-type]


def test_validation_result_to_dict() -> None:
    result = ValidationResult(ok=False, output="boom", command="pytest -q", label="test")
    assert result.to_dict() == {"ok": False, "output": "boom", "command": "pytest -q", "label": "test"}


def test_utc_now_iso_has_z_suffix() -> None:
    assert utc_now_iso().endswith("Z")
