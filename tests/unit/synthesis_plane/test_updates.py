"""
forge-agent — unit tests for update orchestration

File: tests/unit/synthesis_plane/test_updates.py
Last updated: 2026-10-19

Purpose
- Validate full-file extraction, chunking, reconciliation, writes and the auto-fix
  re-entry path.

What this test file should cover
- Fenced bodies are unwrapped; diff-shaped output is rejected.
- Greedy chunking under file-count and size caps, with a hypothesis property.
- Case-insensitive, slash-normalized path matching; unchanged files dropped.
- Writes stop at the first failure and keep earlier writes.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from forge_agent.domain.models import FileUpdate
from forge_agent.knowledge_plane.targeting import FileTargetResolver, resolve_workspace_path
from forge_agent.observability.events import RunEventChannel, RunEventKind
from forge_agent.synthesis_plane.json_retry import JsonRetryClient
from forge_agent.synthesis_plane.updates import (
    AUTO_FIX_DIRECTIVE,
    AUTO_FIX_NO_CHANGES,
    NO_FILES_IN_WORKSPACE,
    DiffShapedOutputError,
    FilePayload,
    UpdateOrchestrator,
    apply_file_updates,
    build_change_summary,
    chunk_file_payloads,
    extract_updated_file,
    reconcile_updates,
    should_allow_comments,
)
from forge_agent.utils.concurrency import CancellationToken, RunCancelledError
from tests.fakes import TEXT, ScriptedProvider, as_json, make_settings, write_files

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st

    HYPOTHESIS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - fallback path
    HYPOTHESIS_AVAILABLE = False

DIFF_TEXT = "--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-x = 1\n+x = 2\n"


def _orchestrator(
    root: Path, provider: ScriptedProvider, **overrides: object
) -> tuple[UpdateOrchestrator, RunEventChannel]:
    forge_settings = make_settings(**overrides)
    client = JsonRetryClient(provider)
    resolver = FileTargetResolver(root, forge_settings, client=client)
    events = RunEventChannel()
    return UpdateOrchestrator(client, forge_settings, resolver, events=events), events


def test_extract_updated_file() -> None:
    assert extract_updated_file("```python\nx = 2\n```") == "x = 2"
    assert extract_updated_file("  x = 2\n") == "x = 2"
    with pytest.raises(DiffShapedOutputError):
        extract_updated_file(DIFF_TEXT)
    with pytest.raises(ValueError, match="No content"):
        extract_updated_file("   ")


def test_comment_policy_follows_instruction() -> None:
    assert should_allow_comments("document the parser")
    assert not should_allow_comments("rename the parser")


def test_chunking_respects_file_cap() -> None:
    payloads = [FilePayload(f"f{i}.py", "x") for i in range(3)]
    chunks = chunk_file_payloads(payloads, 2, 60000)
    assert [[p.path for p in chunk] for chunk in chunks] == [["f0.py", "f1.py"], ["f2.py"]]


def test_chunking_respects_size_cap_and_oversized_files() -> None:
    payloads = [FilePayload("a.py", "x" * 600), FilePayload("b.py", "y" * 5000), FilePayload("c.py", "z")]
    chunks = chunk_file_payloads(payloads, 10, 1000)
    assert [[p.path for p in chunk] for chunk in chunks] == [["a.py"], ["b.py"], ["c.py"]]


def test_chunking_clamps_caps() -> None:
    payloads = [FilePayload("a.py", "x"), FilePayload("b.py", "y")]
    assert len(chunk_file_payloads(payloads, 0, 0)) == 2


if HYPOTHESIS_AVAILABLE:

    @settings(max_examples=60, derandomize=True, deadline=None)
    @given(
        sizes=st.lists(st.integers(min_value=0, max_value=2500), max_size=12),
        max_files=st.integers(min_value=1, max_value=5),
        max_chars=st.integers(min_value=1000, max_value=3000),
    )
    def test_property_chunks_keep_order_and_respect_caps(
        sizes: list[int], max_files: int, max_chars: int
    ) -> None:
        payloads = [FilePayload(f"f{index}.py", "x" * size) for index, size in enumerate(sizes)]

        chunks = chunk_file_payloads(payloads, max_files, max_chars)

        assert [payload for chunk in chunks for payload in chunk] == payloads
        for chunk in chunks:
            assert 1 <= len(chunk) <= max_files
            if len(chunk) > 1:
                assert sum(payload.estimated_chars for payload in chunk) <= max_chars


def test_reconcile_matches_case_and_slashes(tmp_path: Path) -> None:
    targets = [
        resolve_workspace_path(tmp_path, "src/App.py"),
        resolve_workspace_path(tmp_path, "b.py"),
        resolve_workspace_path(tmp_path, "c.py"),
    ]
    originals = {"src/App.py": "old", "b.py": "same", "c.py": "c"}
    returned = [
        {"path": "SRC\\app.py", "content": "new"},
        {"path": "b.py", "content": "same"},
        "junk",
        {"path": "extra.py", "content": "ignored"},
    ]

    updates, notes = reconcile_updates(targets, originals, returned)

    assert [(u.path, u.original_content, u.updated_content) for u in updates] == [
        ("src/App.py", "old", "new")
    ]
    assert notes == ["No content change for b.py", "No update returned for c.py"]


def test_apply_writes_until_first_failure(tmp_path: Path) -> None:
    write_files(tmp_path, {"blocker": "not a directory"})
    updates = [
        FileUpdate("a.py", str(tmp_path / "a.py"), "", "a = 1\n"),
        FileUpdate("same.py", str(tmp_path / "same.py"), "x", "x"),
        FileUpdate("blocker/b.py", str(tmp_path / "blocker" / "b.py"), "", "b = 1\n"),
        FileUpdate("c.py", str(tmp_path / "c.py"), "", "c = 1\n"),
    ]

    report = apply_file_updates(updates)

    assert report.written == ("a.py",)
    assert report.failed == "blocker/b.py"
    assert report.partial and not report.ok
    assert report.error is not None and report.error.startswith("Write error:")
    assert (tmp_path / "a.py").read_text(encoding="utf-8") == "a = 1\n"
    assert not (tmp_path / "same.py").exists()
    assert not (tmp_path / "c.py").exists()


def test_apply_creates_parent_directories(tmp_path: Path) -> None:
    update = FileUpdate("pkg/new/mod.py", str(tmp_path / "pkg" / "new" / "mod.py"), "", "VALUE = 1\n")
    report = apply_file_updates([update])
    assert report.ok and report.written == ("pkg/new/mod.py",)
    assert (tmp_path / "pkg" / "new" / "mod.py").read_text(encoding="utf-8") == "VALUE = 1\n"


async def test_apply_checks_cancellation_before_writing(tmp_path: Path) -> None:
    token = CancellationToken()
    token.cancel()
    update = FileUpdate("a.py", str(tmp_path / "a.py"), "", "a = 1\n")
    with pytest.raises(RunCancelledError):
        apply_file_updates([update], token=token)
    assert not (tmp_path / "a.py").exists()


def test_change_summary_includes_counts_and_preview() -> None:
    update = FileUpdate("a.py", "/tmp/a.py", "x = 1\n", "x = 2\n")
    summary = build_change_summary([update, FileUpdate("b.py", "/tmp/b.py", "y", "y")])
    assert summary.startswith("Changed 2 lines (+1 / -1) in a.py.\nDiff preview (a.py):")
    assert "b.py" not in summary


async def test_single_file_update_streams_and_unwraps(tmp_path: Path) -> None:
    write_files(tmp_path, {"src/app.py": "x = 1\n"})
    provider = ScriptedProvider({TEXT: "```python\nx = 2\n```"})
    orchestrator, events = _orchestrator(tmp_path, provider)
    target = resolve_workspace_path(tmp_path, "src/app.py")

    update = await orchestrator.request_single_file_update(target, "set x to 2")

    assert update is not None
    assert update.original_content == "x = 1\n"
    assert update.updated_content == "x = 2"
    kinds = [event.kind for event in events.replay()]
    assert kinds == [
        RunEventKind.STATUS,
        RunEventKind.STREAM_START,
        RunEventKind.STREAM_APPEND,
        RunEventKind.STREAM_END,
    ]
    prompt = provider.last_request(TEXT).messages[-1].content
    assert "Target file: src/app.py" in prompt
    assert "x = 1" in prompt


async def test_single_file_update_without_change_returns_none(tmp_path: Path) -> None:
    write_files(tmp_path, {"app.py": "x = 1"})
    orchestrator, _ = _orchestrator(tmp_path, ScriptedProvider({TEXT: "x = 1"}))
    target = resolve_workspace_path(tmp_path, "app.py")
    assert await orchestrator.request_single_file_update(target, "noop") is None


async def test_single_file_update_rejects_diff(tmp_path: Path) -> None:
    write_files(tmp_path, {"app.py": "x = 1\n"})
    orchestrator, _ = _orchestrator(tmp_path, ScriptedProvider({TEXT: DIFF_TEXT}))
    with pytest.raises(DiffShapedOutputError):
        await orchestrator.request_single_file_update(
            resolve_workspace_path(tmp_path, "app.py"), "set x to 2"
        )


async def test_updates_for_targets_are_chunked(tmp_path: Path) -> None:
    write_files(tmp_path, {"a.py": "a = 1\n", "b.py": "b = 1\n"})
    provider = ScriptedProvider(
        {
            "file_update": [
                as_json({"files": [{"path": "a.py", "content": "a = 2\n"}]}),
                as_json({"files": [{"path": "b.py", "content": "b = 2\n"}]}),
            ]
        }
    )
    orchestrator, events = _orchestrator(tmp_path, provider, max_files_per_update=1)
    targets = [resolve_workspace_path(tmp_path, "a.py"), resolve_workspace_path(tmp_path, "b.py")]

    batch = await orchestrator.request_updates_for_targets("bump values", targets)

    assert batch.status == "ok"
    assert [update.path for update in batch.updates] == ["a.py", "b.py"]
    assert batch.requested == ("a.py", "b.py")
    assert provider.calls("file_update") == 2
    assert "Chunking update into 2 batches." in events.log_lines()
    assert "LLM returned updates for 1 files (1/2)." in events.log_lines()


async def test_multi_file_update_with_empty_workspace(tmp_path: Path) -> None:
    orchestrator, events = _orchestrator(tmp_path, ScriptedProvider())
    batch = await orchestrator.request_multi_file_update("rename the parser", [])
    assert batch.status == "empty"
    assert events.log_lines() == (NO_FILES_IN_WORKSPACE,)


async def test_scaffold_for_new_project(tmp_path: Path) -> None:
    provider = ScriptedProvider(
        {
            "file_selection": as_json({"files": ["index.html", "../escape.txt"]}),
            "file_update": as_json({"files": [{"path": "index.html", "content": "<h1>Hi</h1>\n"}]}),
        }
    )
    orchestrator, events = _orchestrator(tmp_path, provider)

    batch = await orchestrator.request_multi_file_update("create a landing page", [])

    assert batch.status == "ok"
    (update,) = batch.updates
    assert update.path == "index.html"
    assert update.is_new_file
    assert "Skipped ../escape.txt: path escapes the workspace." in events.log_lines()
    assert "Scaffold files: index.html" in events.log_lines()


async def test_auto_fix_applies_changes(tmp_path: Path) -> None:
    write_files(tmp_path, {"src/app.py": "def add(a, b):\n    return a - b\n"})
    provider = ScriptedProvider(
        {
            "file_selection": as_json({"files": ["src/app.py"]}),
            "file_update": as_json(
                {"files": [{"path": "src/app.py", "content": "def add(a, b):\n    return a + b\n"}]}
            ),
        }
    )
    orchestrator, events = _orchestrator(tmp_path, provider)

    outcome = await orchestrator.attempt_auto_fix(
        "make add work", "FAILED test_add - assert -1 == 3", ["src/app.py"]
    )

    assert outcome.changed
    assert (tmp_path / "src/app.py").read_text(encoding="utf-8").endswith("return a + b\n")
    prompt = provider.last_request("file_update").messages[-1].content
    assert AUTO_FIX_DIRECTIVE in prompt
    assert "Validation output:\nFAILED test_add" in prompt
    assert any(line.startswith("Changed 2 lines") for line in events.log_lines())


async def test_auto_fix_model_failure_is_reported_not_raised(tmp_path: Path) -> None:
    write_files(tmp_path, {"src/app.py": "x = 1\n"})
    provider = ScriptedProvider(
        {"file_selection": as_json({"files": ["src/app.py"]}), "file_update": "garbage"}
    )
    orchestrator, events = _orchestrator(tmp_path, provider)

    outcome = await orchestrator.attempt_auto_fix("make it pass", "error", ["src/app.py"])

    assert not outcome.changed
    assert events.log_lines()[-1] == AUTO_FIX_NO_CHANGES
    assert (tmp_path / "src/app.py").read_text(encoding="utf-8") == "x = 1\n"
