"""
Unit tests for relevance ranking and grounded snippet retrieval.

Coverage:
- Model re-ranking keeps only candidate paths and falls back to input order.
- Deterministic snippet scoring, windows and keyword coverage.
- Confidence labels and the NEEDS_CONTEXT helpers.
"""

from __future__ import annotations

from pathlib import Path

from forge_agent.knowledge_plane.retrieval import (
    RelevanceRanker,
    RetrievalResult,
    SourceSnippet,
    append_sources_and_confidence,
    build_needs_context_message,
    collect_relevant_snippets,
    compute_confidence,
    extract_needs_context,
)
from forge_agent.synthesis_plane.json_retry import JsonRetryClient
from tests.fakes import ScriptedProvider, as_json, write_files

RETRY_SOURCE = "import time\n\ndef retry(fn):\n    delay = backoff()\n    return fn()\n"


def _ranker(root: Path, provider: ScriptedProvider, **kwargs: int) -> RelevanceRanker:
    return RelevanceRanker(JsonRetryClient(provider, max_retries=0), root, **kwargs)


def _snippet(index: int) -> SourceSnippet:
    return SourceSnippet(f"S{index}", "a.py", 1, 2, "1: x")


async def test_single_candidate_skips_the_model(tmp_path: Path) -> None:
    provider = ScriptedProvider()
    assert await _ranker(tmp_path, provider).rank("x", ["a.py", "a.py"]) == ["a.py"]
    assert provider.requests == []


async def test_rank_orders_known_paths_and_appends_the_rest(tmp_path: Path) -> None:
    write_files(tmp_path, {"a.py": "alpha\n"})
    provider = ScriptedProvider(
        {"retrieval_rank": as_json({"ordered": ["c.py", "zzz.py", "c.py", "a.py"]})}
    )

    ranked = await _ranker(tmp_path, provider).rank("do it", ["a.py", "b.py", "c.py", "a.py"])

    assert ranked == ["c.py", "a.py", "b.py"]
    prompt = provider.last_request("retrieval_rank").messages[-1].content
    assert "Candidates:\n- a.py\n- b.py\n- c.py" in prompt
    assert "File: a.py\nalpha" in prompt
    assert "File: b.py\n(Preview unavailable)" in prompt


async def test_rank_trims_candidates(tmp_path: Path) -> None:
    provider = ScriptedProvider({"retrieval_rank": as_json({"ordered": ["c.py", "b.py"]})})

    ranked = await _ranker(tmp_path, provider, max_candidates=2).rank("x", ["a.py", "b.py", "c.py"])

    assert ranked == ["b.py", "a.py"]


async def test_rank_failure_keeps_input_order(tmp_path: Path) -> None:
    provider = ScriptedProvider({"retrieval_rank": "nope"})
    assert await _ranker(tmp_path, provider).rank("x", ["b.py", "a.py"]) == ["b.py", "a.py"]


async def test_snippets_are_scored_and_windowed(tmp_path: Path) -> None:
    write_files(
        tmp_path,
        {
            "src/retry.py": RETRY_SOURCE,
            "src/backoff.py": "def backoff():\n    return 1\n",
            "docs/notes.md": "nothing relevant\n",
        },
    )
    files = ["docs/notes.md", "src/backoff.py", "src/retry.py"]

    result = await collect_relevant_snippets("explain retry backoff", tmp_path, files)

    assert result.keywords == ("explain", "retry", "backoff")
    assert [source.id for source in result.sources] == ["S1", "S2", "S3"]
    assert [source.location for source in result.sources] == [
        "src/retry.py:1-6",
        "src/retry.py:1-6",
        "src/backoff.py:1-3",
    ]
    assert result.sources[0].content.startswith("1: import time\n2: \n3: def retry(fn):")
    assert result.keyword_coverage == 2 / 3
    assert compute_confidence(result) == "High"

    capped = await collect_relevant_snippets(
        "explain retry backoff", tmp_path, files, max_snippets=1
    )
    assert len(capped.sources) == 1


async def test_snippet_order_follows_the_ranker(tmp_path: Path) -> None:
    write_files(
        tmp_path,
        {"src/retry.py": RETRY_SOURCE, "src/backoff.py": "def backoff():\n    return 1\n"},
    )
    provider = ScriptedProvider({"retrieval_rank": as_json({"ordered": ["src/backoff.py"]})})

    result = await collect_relevant_snippets(
        "explain retry backoff",
        tmp_path,
        ["src/retry.py", "src/backoff.py"],
        ranker=_ranker(tmp_path, provider),
    )

    assert result.sources[0].path == "src/backoff.py"


async def test_mentioned_file_without_keyword_hits(tmp_path: Path) -> None:
    write_files(tmp_path, {"docs/notes.md": "nothing relevant\n"})

    result = await collect_relevant_snippets("show notes.md", tmp_path, ["docs/notes.md"])

    assert [source.location for source in result.sources] == ["docs/notes.md:1-2"]
    assert result.keyword_coverage == 0.0
    assert compute_confidence(result) == "Low"


async def test_no_keywords_and_no_mentions(tmp_path: Path) -> None:
    result = await collect_relevant_snippets("do it", tmp_path, ["a.py"])
    assert result == RetrievalResult((), (), 0.0)


def test_confidence_thresholds() -> None:
    assert compute_confidence(RetrievalResult((_snippet(1),), ("a",), 0.2)) == "Medium"
    assert compute_confidence(RetrievalResult((_snippet(1), _snippet(2)), ("a",), 0.4)) == "Medium"
    assert compute_confidence(RetrievalResult((_snippet(1),), ("a",), 0.1)) == "Low"
    assert compute_confidence(RetrievalResult((), ("a",), 1.0)) == "Low"


def test_needs_context_helpers() -> None:
    assert extract_needs_context("NEEDS_CONTEXT: the deploy config") == "the deploy config"
    assert extract_needs_context("needs_context:") == "More project context is required."
    assert extract_needs_context("all good") is None

    assert append_sources_and_confidence("Answer.", (), "Low") == (
        "Answer.\n\nConfidence: Low\nSources: none"
    )
    assert build_needs_context_message(RetrievalResult((), ("retry",), 0.0), 4) == (
        "I need more context to answer that confidently. Keywords detected: retry. "
        "Try pointing me to specific files or areas (workspace has 4 files)."
    )
