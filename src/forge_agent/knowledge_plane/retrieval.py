"""
forge-agent — relevance ranking and grounded snippet retrieval

File: src/forge_agent/knowledge_plane/retrieval.py
Last updated: 2026-10-19

Purpose
- Re-rank candidate files with a structured model call and collect line-numbered
  snippets that ground question answers.

Functional requirements
- Ranking sends at most 12 candidates with 400-character previews; paths the model
  omits are appended in their input order; any failure keeps the input order.
- Snippet scoring is deterministic: path keyword hits weigh 3, a mention weighs 10,
  content keyword hits weigh 2.

Non-functional requirements
- Files over 200 000 bytes are never read.
"""

from __future__ import annotations

import os
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog

from forge_agent.knowledge_plane.file_search import extract_keywords, extract_mentioned_files
from forge_agent.knowledge_plane.workspace import PREVIEW_MAX_FILE_BYTES, read_file_preview
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError
from forge_agent.synthesis_plane.schemas import RETRIEVAL_RANK

if TYPE_CHECKING:
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

DEFAULT_MAX_CANDIDATES: Final[int] = 12
DEFAULT_PREVIEW_CHARS: Final[int] = 400
DEFAULT_MAX_SNIPPETS: Final[int] = 8
DEFAULT_SNIPPET_LINES: Final[int] = 3

RANK_SYSTEM_PROMPT: Final[str] = (
    "You rank files by relevance to a coding instruction. "
    'Return ONLY valid JSON: {"ordered":["path1","path2",...]}. '
    "Only include paths from the candidates list, ordered most relevant to least."
)

_NEEDS_CONTEXT: Final[re.Pattern[str]] = re.compile(r"needs_context\s*:\s*(.*)", re.IGNORECASE)

ConfidenceLabel = Literal["High", "Medium", "Low"]


@dataclass(frozen=True, slots=True)
class SourceSnippet:
    id: str
    path: str
    start_line: int
    end_line: int
    content: str

    @property
    def location(self) -> str:
        return f"{self.path}:{self.start_line}-{self.end_line}"


@dataclass(frozen=True, slots=True)
class RetrievalResult:
    sources: tuple[SourceSnippet, ...]
    keywords: tuple[str, ...]
    keyword_coverage: float


@dataclass(frozen=True, slots=True)
class _Scored:
    path: str
    score: int
    content: str | None


def build_file_previews(
    candidates: Sequence[str], root: str | os.PathLike[str], max_chars: int
) -> list[str]:
    previews: list[str] = []
    for path in candidates:
        preview = read_file_preview(root, path, max_chars)
        previews.append(f"File: {path}\n{preview if preview is not None else '(Preview unavailable)'}")
    return previews


class RelevanceRanker:
    """Model-assisted re-ranking of candidate files."""

    def __init__(
        self,
        client: JsonRetryClient,
        root: str | os.PathLike[str],
        *,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        max_preview_chars: int = DEFAULT_PREVIEW_CHARS,
        max_retries: int | None = None,
        logger: Any | None = None,
    ) -> None:
        self._client = client
        self._root = Path(root)
        self._max_candidates = max(2, max_candidates)
        self._max_preview_chars = max(200, max_preview_chars)
        self._max_retries = max_retries
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def rank(
        self,
        instruction: str,
        candidates: Sequence[str],
        *,
        token: CancellationToken | None = None,
    ) -> list[str]:
        unique = list(dict.fromkeys(candidates))
        if len(unique) <= 1:
            return unique
        trimmed = unique[: self._max_candidates]
        previews = build_file_previews(trimmed, self._root, self._max_preview_chars)
        messages = [
            ChatMessage.system(RANK_SYSTEM_PROMPT),
            ChatMessage.user(
                f"Instruction:\n{instruction}\n\nCandidates:\n"
                + "\n".join(f"- {path}" for path in trimmed)
                + "\n\nPreviews:\n"
                + "\n\n".join(previews)
            ),
        ]
        try:
            payload = await self._client.request_json(
                messages,
                RETRIEVAL_RANK,
                max_retries=self._max_retries,
                token=token,
                label="Retrieval re-rank",
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("retrieval_rank_fallback", error=str(exc))
            return trimmed

        allowed = set(trimmed)
        ordered = [
            path
            for path in dict.fromkeys(str(item) for item in payload.get("ordered", []))
            if path in allowed
        ]
        ranked = [*ordered, *(path for path in trimmed if path not in ordered)]
        self._logger.info("retrieval_ranked", candidates=len(trimmed), ranked=len(ordered))
        return ranked


async def collect_relevant_snippets(
    instruction: str,
    root: str | os.PathLike[str],
    files: Sequence[str],
    *,
    ranker: RelevanceRanker | None = None,
    max_files: int = DEFAULT_MAX_CANDIDATES,
    max_snippets: int = DEFAULT_MAX_SNIPPETS,
    snippet_lines: int = DEFAULT_SNIPPET_LINES,
    token: CancellationToken | None = None,
) -> RetrievalResult:
    """Score files against the instruction and cut line-numbered windows around hits."""

    keywords = extract_keywords(instruction)
    mentioned = set(extract_mentioned_files(instruction, list(files)))
    if not keywords and not mentioned:
        return RetrievalResult((), tuple(keywords), 0.0)

    lowered_keywords = list(dict.fromkeys(keyword.lower() for keyword in keywords))
    scored = [_score_file(Path(root), path, lowered_keywords, mentioned) for path in files]
    ranked = sorted((item for item in scored if item.score > 0), key=lambda item: -item.score)
    ranked = ranked[: max(1, max_files)]

    order = [item.path for item in ranked]
    if ranker is not None and len(order) > 1:
        order = await ranker.rank(instruction, order, token=token)
    by_path = {item.path: item for item in ranked}

    sources: list[SourceSnippet] = []
    found: set[str] = set()
    for path in order:
        entry = by_path.get(path)
        if entry is None or entry.content is None:
            continue
        if len(sources) >= max_snippets:
            break
        lines = re.split(r"\r?\n", entry.content)
        lowered_lines = [line.lower() for line in lines]
        hits: list[int] = []
        for keyword in lowered_keywords:
            index = next((i for i, line in enumerate(lowered_lines) if keyword in line), -1)
            if index >= 0:
                hits.append(index)
                found.add(keyword)
        if not hits and path in mentioned:
            hits.append(0)
        for hit in hits:
            if len(sources) >= max_snippets:
                break
            start = max(0, hit - snippet_lines)
            end = min(len(lines) - 1, hit + snippet_lines)
            body = "\n".join(f"{start + offset + 1}: {line}" for offset, line in enumerate(lines[start : end + 1]))
            sources.append(SourceSnippet(f"S{len(sources) + 1}", path, start + 1, end + 1, body))

    if lowered_keywords:
        coverage = len(found) / len(lowered_keywords)
    else:
        coverage = 0.5 if sources else 0.0
    return RetrievalResult(tuple(sources), tuple(keywords), coverage)


def _score_file(root: Path, path: str, keywords: list[str], mentioned: set[str]) -> _Scored:
    lowered_path = path.lower()
    score = 3 * sum(1 for keyword in keywords if keyword in lowered_path)
    if path in mentioned:
        score += 10
    full_path = root / path
    try:
        stat = full_path.stat()
    except OSError:
        return _Scored(path, 0, None)
    if not full_path.is_file() or stat.st_size == 0 or stat.st_size > PREVIEW_MAX_FILE_BYTES:
        return _Scored(path, score, None)
    try:
        content = full_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return _Scored(path, score, None)
    lowered = content.lower()
    score += 2 * sum(1 for keyword in keywords if keyword in lowered)
    return _Scored(path, score, content)


def compute_confidence(result: RetrievalResult) -> ConfidenceLabel:
    if len(result.sources) >= 2 and result.keyword_coverage >= 0.5:
        return "High"
    if result.sources and result.keyword_coverage >= 0.2:
        return "Medium"
    return "Low"


def extract_needs_context(answer: str) -> str | None:
    match = _NEEDS_CONTEXT.search(answer)
    if match is None:
        return None
    detail = match.group(1).strip()
    return detail or "More project context is required."


def append_sources_and_confidence(
    answer: str, sources: Sequence[SourceSnippet], confidence: ConfidenceLabel
) -> str:
    if sources:
        block = "Sources:\n" + "\n".join(f"[{s.id}] {s.location}" for s in sources)
    else:
        block = "Sources: none"
    return f"{answer}\n\nConfidence: {confidence}\n{block}"


def build_needs_context_message(
    result: RetrievalResult, file_count: int, detail: str | None = None
) -> str:
    keyword_hint = f"Keywords detected: {', '.join(result.keywords)}. " if result.keywords else ""
    detail_hint = f"Missing details: {detail}. " if detail else ""
    return (
        "I need more context to answer that confidently. "
        + detail_hint
        + keyword_hint
        + f"Try pointing me to specific files or areas (workspace has {file_count} files)."
    )


__all__ = [
    "ConfidenceLabel",
    "RANK_SYSTEM_PROMPT",
    "RelevanceRanker",
    "RetrievalResult",
    "SourceSnippet",
    "append_sources_and_confidence",
    "build_file_previews",
    "build_needs_context_message",
    "collect_relevant_snippets",
    "compute_confidence",
    "extract_needs_context",
]
