from __future__ import annotations

import json
from pathlib import Path

from forge_agent.domain.models import MemoryEntry, RunOutcome
from forge_agent.knowledge_plane.memory import (
    TRUNCATED_MEMORY,
    MemoryOptions,
    MemoryStore,
    fallback_summary,
    memory_file_path,
)
from forge_agent.synthesis_plane.json_retry import JsonRetryClient
from tests.fakes import ScriptedProvider, as_json, make_settings

STAMP = "2026-01-01T00:00:00.000Z"


def _entry(instruction: str, **kwargs: object) -> MemoryEntry:
    fields: dict[str, object] = {"intent": "edit", "outcome": RunOutcome.COMPLETED, "created_at": STAMP}
    fields.update(kwargs)
    return MemoryEntry(instruction, **fields)  # type: ignore[arg-type]


def _small_store(root: Path, **kwargs: object) -> MemoryStore:
    options = MemoryOptions(max_entries=3, max_chars=100_000, compaction_target_entries=2)
    return MemoryStore(root, options, **kwargs)  # type: ignore[arg-type]


def test_missing_memory_has_no_context(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)
    assert store.path == tmp_path / ".forge" / "memory.json"
    assert store.load_state() is None
    assert store.load_context() is None


async def test_append_persists_and_renders_newest_first(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)

    assert await store.append(
        _entry("rename foo", files_changed=("a.py",), decisions=("keep API",), summary="Renamed")
    )
    assert await store.append(_entry("explain bar", intent="question"))

    payload = json.loads(memory_file_path(tmp_path).read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert [item["instruction"] for item in payload["entries"]] == ["rename foo", "explain bar"]
    assert "compacted" not in payload

    assert store.load_context() == (
        f"[{STAMP}] explain bar\nIntent: question\n"
        f"[{STAMP}] rename foo\nIntent: edit\nFiles changed: a.py\n"
        "Decisions: keep API\nSummary: Renamed"
    )


async def test_context_limits(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)
    await store.append(_entry("first"))
    await store.append(_entry("second"))

    assert store.load_context(max_entries=1) == f"[{STAMP}] second\nIntent: edit"

    truncated = store.load_context(max_chars=20)
    assert truncated is not None
    assert truncated.endswith(TRUNCATED_MEMORY.strip())
    assert len(truncated) == 20 + len(TRUNCATED_MEMORY)


def test_unknown_versions_and_corrupt_files_are_ignored(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)
    store.path.parent.mkdir(parents=True)

    store.path.write_text(json.dumps({"version": 2, "entries": []}), encoding="utf-8")
    assert store.load_state() is None

    store.path.write_text("{not json", encoding="utf-8")
    assert store.load_context() is None


def test_unparseable_entries_are_skipped_individually(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)
    store.path.parent.mkdir(parents=True)
    good = _entry("old run").to_dict()
    bad = {**_entry("odd run").to_dict(), "outcome": "blocked"}
    store.path.write_text(
        json.dumps({"version": 1, "updatedAt": STAMP, "entries": [good, bad, "junk"]}),
        encoding="utf-8",
    )

    state = store.load_state()
    assert state is not None
    assert [entry.instruction for entry in state.entries] == ["old run"]
    assert state.skipped_entries == 2
    assert store.load_context() == f"[{STAMP}] old run\nIntent: edit"


async def test_append_keeps_earlier_entries_when_one_is_unparseable(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)
    store.path.parent.mkdir(parents=True)
    good = _entry("old run").to_dict()
    bad = {**_entry("odd run").to_dict(), "outcome": "blocked"}
    store.path.write_text(
        json.dumps(
            {
                "version": 1,
                "updatedAt": STAMP,
                "compacted": {"createdAt": STAMP, "entries": 4, "summary": "- earlier"},
                "entries": [good, bad],
            }
        ),
        encoding="utf-8",
    )

    assert await store.append(_entry("new"))

    payload = json.loads(store.path.read_text(encoding="utf-8"))
    assert [item["instruction"] for item in payload["entries"]] == ["old run", "new"]
    assert payload["compacted"]["summary"] == "- earlier"


async def test_append_leaves_unreadable_files_untouched(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)
    store.path.parent.mkdir(parents=True)

    for content in ("{not json", json.dumps({"version": 2, "entries": [{"x": 1}]}), "[]"):
        store.path.write_text(content, encoding="utf-8")
        assert await store.append(_entry("new")) is False
        assert store.path.read_text(encoding="utf-8") == content


async def test_compaction_without_a_client_uses_fallback_bullets(tmp_path: Path) -> None:
    store = _small_store(tmp_path)
    for index in range(4):
        await store.append(_entry(f"step {index}", files_changed=(f"f{index}.py",)))

    state = store.load_state()
    assert state is not None
    assert [entry.instruction for entry in state.entries] == ["step 2", "step 3"]
    assert state.compacted is not None
    assert state.compacted.entries == 2
    assert state.compacted.summary == "- step 0 | files: f0.py\n- step 1 | files: f1.py"

    context = store.load_context()
    assert context is not None
    assert context.startswith("Compacted memory:\n- step 0 | files: f0.py")

    hidden = MemoryStore(
        tmp_path, MemoryOptions(include_compacted=False)
    ).load_context()
    assert hidden is not None
    assert "Compacted memory" not in hidden


async def test_repeated_compaction_accumulates(tmp_path: Path) -> None:
    store = _small_store(tmp_path)
    for index in range(6):
        await store.append(_entry(f"step {index}"))

    state = store.load_state()
    assert state is not None
    assert state.compacted is not None
    assert state.compacted.entries == 4
    assert state.compacted.summary == "- step 0\n- step 1\n- step 2\n- step 3"


async def test_compaction_summary_from_the_model(tmp_path: Path) -> None:
    provider = ScriptedProvider(
        {"memory_summary": as_json({"bullets": ["kept pytest", "- uses uv", "  "]})}
    )
    store = _small_store(tmp_path, client=JsonRetryClient(provider, max_retries=0))
    for index in range(4):
        await store.append(_entry(f"step {index}"))

    state = store.load_state()
    assert state is not None and state.compacted is not None
    assert state.compacted.summary == "- kept pytest\n- uses uv"
    prompt = provider.last_request("memory_summary").messages[-1].content
    assert prompt.startswith("Project memory entries:\n\nInstruction: step 0\nIntent: edit")


async def test_compaction_model_failure_falls_back(tmp_path: Path) -> None:
    provider = ScriptedProvider({"memory_summary": "nope"})
    store = _small_store(tmp_path, client=JsonRetryClient(provider, max_retries=0))
    for index in range(4):
        await store.append(_entry(f"step {index}"))

    state = store.load_state()
    assert state is not None and state.compacted is not None
    assert state.compacted.summary == "- step 0\n- step 1"


async def test_write_failures_are_reported_not_raised(tmp_path: Path) -> None:
    (tmp_path / ".forge").write_text("not a directory", encoding="utf-8")
    store = MemoryStore(tmp_path)

    assert await store.append(_entry("rename foo")) is False


async def test_clear(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path)
    await store.append(_entry("rename foo"))

    assert store.clear()
    assert not store.path.exists()
    assert store.clear()


def test_options_from_settings_are_clamped() -> None:
    options = MemoryOptions.from_settings(
        make_settings(memory_max_entries=0, memory_max_chars=50, memory_compaction_target_entries=0)
    )
    assert options == MemoryOptions(
        max_entries=1, max_chars=200, compaction_target_entries=1, include_compacted=True
    )


def test_fallback_summary_for_nothing() -> None:
    assert fallback_summary([]) == "Compacted memory unavailable."
