"""
forge-agent — question answering

File: src/forge_agent/synthesis_plane/questions.py
Last updated: 2026-10-19

Purpose
- Answer ``question`` intents from the workspace listing, file contents, or a
  grounded model answer.

Functional requirements
- "how many files" and file-list questions never call the model.
- File-read questions show the named file, capped at 2000 characters.
- Project overview questions summarize prioritized files in chunks, then combine.
- Other questions are answered from the project context plus retrieved snippets,
  with a confidence label and source list appended.

Non-functional requirements
- Answers are streamed through the event channel as start, full text, end.
"""

from __future__ import annotations

import os
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from forge_agent.knowledge_plane.file_search import extract_mentioned_files, find_file_by_basename
from forge_agent.knowledge_plane.retrieval import (
    append_sources_and_confidence,
    build_needs_context_message,
    collect_relevant_snippets,
    compute_confidence,
    extract_needs_context,
)
from forge_agent.knowledge_plane.workspace import list_workspace_files
from forge_agent.synthesis_plane.intent import is_file_read_question, merge_chat_history
from forge_agent.synthesis_plane.providers.base import ChatMessage

if TYPE_CHECKING:
    from forge_agent.knowledge_plane.retrieval import RelevanceRanker
    from forge_agent.knowledge_plane.workspace import ProjectContext
    from forge_agent.observability.events import RunEventChannel
    from forge_agent.synthesis_plane.intent import HistoryItem
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

FILE_LIST_LIMIT: Final[int] = 200
FILE_READ_MAX_CHARS: Final[int] = 2000
QUESTION_FILES_PREVIEW: Final[int] = 300
DEEP_LIST_DEPTH: Final[int] = 6
DEEP_LIST_LIMIT: Final[int] = 5000

_FILE_LIST_QUESTION: Final[re.Pattern[str]] = re.compile(r"(what|which).*(files|file list)")
_PROJECT_SUMMARY_PHRASES: Final[tuple[str, ...]] = (
    "what is this project",
    "what this project",
    "tell me what this project",
    "what is the project",
    "project about",
    "repo about",
    "codebase about",
)
_PRIORITY_PREFIXES: Final[tuple[str, ...]] = (
    "readme",
    "src/main",
    "src/index",
    "src/app",
    "src/pages",
    "src/routes",
    "src/components",
)
_CODE_SUFFIXES: Final[tuple[str, ...]] = (".py", ".ts", ".tsx", ".js", ".jsx")

QUESTION_SYSTEM_PROMPT: Final[str] = (
    "You are a helpful assistant. Answer the question using the provided project context. "
    "If the context is insufficient, ask the user for the missing details, or reply with "
    "NEEDS_CONTEXT: <what is missing>. "
    "Do not claim you lack access; instead request the needed file or data. "
    "Cite snippets by their [S#] id when you use them."
)


@dataclass(frozen=True, slots=True)
class SummaryLimits:
    max_chars: int = 12_000
    max_files: int = 60
    max_bytes_per_file: int = 60_000
    chunk_chars: int = 6000
    max_chunks: int = 6


def is_project_summary_question(lowered: str) -> bool:
    return any(phrase in lowered for phrase in _PROJECT_SUMMARY_PHRASES)


def prioritize_project_files(files: Sequence[str]) -> list[str]:
    """READMEs and conventional entry points first; stable for equal scores."""

    def score(path: str) -> int:
        lowered = path.lower()
        total = 5 if "readme" in lowered else 0
        total += 3 * sum(1 for prefix in _PRIORITY_PREFIXES if lowered.startswith(prefix))
        if lowered.endswith(".md"):
            total += 2
        if lowered.endswith(_CODE_SUFFIXES):
            total += 1
        return total

    return sorted(files, key=lambda path: -score(path))


def build_project_summary_chunks(
    root: str | os.PathLike[str], files: Sequence[str], limits: SummaryLimits | None = None
) -> tuple[list[str], bool]:
    """Pack prioritized file contents into chunks; return ``(chunks, truncated)``."""

    limits = limits if limits is not None else SummaryLimits()
    max_total = max(2000, limits.max_chars)
    chunk_chars = max(1000, limits.chunk_chars)
    max_chunks = max(1, limits.max_chunks)
    max_files = max(1, limits.max_files)
    max_bytes = max(1024, limits.max_bytes_per_file)

    chunks: list[str] = []
    current = ""
    total = 0
    count = 0
    truncated = False
    for relative in prioritize_project_files(files):
        if len(chunks) >= max_chunks or total >= max_total or count >= max_files:
            truncated = True
            break
        full_path = Path(root) / relative
        try:
            if not full_path.is_file():
                continue
            size = full_path.stat().st_size
            if size == 0 or size > max_bytes:
                continue
            content = full_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if not content.strip():
            continue
        remaining = max_total - total
        piece = content[:remaining]
        entry = f"File: {relative}\n{piece}"
        if current.strip() and len(current) + len(entry) + 5 > chunk_chars:
            chunks.append(current.strip())
            current = ""
            if len(chunks) >= max_chunks:
                truncated = True
                break
        current = f"{current}\n---\n{entry}" if current else entry
        total += len(piece)
        count += 1
        if len(content) > remaining:
            truncated = True
            break
    if current.strip() and len(chunks) < max_chunks:
        chunks.append(current.strip())
    if total >= max_total:
        truncated = True
    return chunks, truncated


class QuestionAnswerer:
    """Answers questions about the workspace without editing anything."""

    def __init__(
        self,
        client: JsonRetryClient,
        root: str | os.PathLike[str],
        *,
        ranker: RelevanceRanker | None = None,
        summary_limits: SummaryLimits | None = None,
        history_max_messages: int = 8,
        history_max_chars: int = 8000,
        logger: Any | None = None,
    ) -> None:
        self._client = client
        self._root = Path(root)
        self._ranker = ranker
        self._limits = summary_limits if summary_limits is not None else SummaryLimits()
        self._history_max_messages = history_max_messages
        self._history_max_chars = history_max_chars
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def answer(
        self,
        instruction: str,
        context: ProjectContext,
        events: RunEventChannel,
        *,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> str | None:
        lowered = instruction.lower()
        files = list(context.files)

        if is_project_summary_question(lowered):
            return await self._summarize_project(instruction, files, events, history, token)

        if "how many files" in lowered:
            message = f"This project has {len(files)} files (depth-limited scan)."
            events.log(message)
            return message

        if _FILE_LIST_QUESTION.search(lowered) or "all the files" in lowered:
            bullets = "\n".join(f"- {path}" for path in files[:FILE_LIST_LIMIT])
            extra = len(files) - FILE_LIST_LIMIT
            more = f"\n... ({extra} more)" if extra > 0 else ""
            message = f"Files (partial list):\n{bullets}{more}"
            events.log(message)
            return message

        if is_file_read_question(lowered):
            shown = self._read_mentioned_file(instruction, files, events)
            if shown is not None:
                return shown

        return await self._grounded_answer(instruction, context, events, history, token)

    def _read_mentioned_file(
        self, instruction: str, files: list[str], events: RunEventChannel
    ) -> str | None:
        mentioned = extract_mentioned_files(instruction, files)
        if not mentioned:
            deep = list_workspace_files(self._root, DEEP_LIST_DEPTH, DEEP_LIST_LIMIT)
            mentioned = extract_mentioned_files(instruction, deep)
            if not mentioned:
                by_basename = find_file_by_basename(instruction, deep)
                mentioned = [by_basename] if by_basename else []
        if not mentioned:
            return None
        target = mentioned[0]
        try:
            content = (self._root / target).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            message = f"Unable to read {target}: {exc}"
            events.log(message)
            return message
        if len(content) > FILE_READ_MAX_CHARS:
            content = f"{content[:FILE_READ_MAX_CHARS]}\n... (truncated)"
        message = f"Content of {target}:\n{content}"
        events.log(message)
        return message

    async def _summarize_project(
        self,
        instruction: str,
        files: list[str],
        events: RunEventChannel,
        history: Sequence[HistoryItem] | None,
        token: CancellationToken | None,
    ) -> str | None:
        chunks, truncated = build_project_summary_chunks(self._root, files, self._limits)
        if not chunks:
            events.log("No readable files found for summary.")
            return None
        events.log("Summarizing project in chunks...")
        partials: list[str] = []
        for index, chunk in enumerate(chunks, start=1):
            messages = self._merge(
                history,
                [
                    ChatMessage.system(
                        "You are summarizing a project chunk based ONLY on the provided file contents. "
                        "Do not guess. Return 4-6 concise bullets."
                    ),
                    ChatMessage.user(f"Chunk {index} of {len(chunks)}:\n\n{chunk}"),
                ],
            )
            content = await self._client.request_text(
                messages, token=token, label=f"Project summary chunk {index}"
            )
            if content:
                partials.append(content)
        if not partials:
            events.log("No summary returned.")
            return None

        joined = "\n\n".join(
            f"Chunk {index} summary:\n{text}" for index, text in enumerate(partials, start=1)
        )
        messages = self._merge(
            history,
            [
                ChatMessage.system(
                    "Combine the chunk summaries into a precise project overview. "
                    "Do not guess. Respond in 5-8 concise bullets, then a 1-sentence summary."
                ),
                ChatMessage.user(f"Question: {instruction}\n\nChunk summaries:\n{joined}"),
            ],
        )
        answer = await self._client.request_text(messages, token=token, label="Project summary")
        if not answer:
            events.log("No answer returned.")
            return None
        if truncated:
            events.log("Note: summary context was truncated to fit model limits.")
        _stream(events, answer)
        return answer

    async def _grounded_answer(
        self,
        instruction: str,
        context: ProjectContext,
        events: RunEventChannel,
        history: Sequence[HistoryItem] | None,
        token: CancellationToken | None,
    ) -> str | None:
        files = list(context.files)
        retrieval = await collect_relevant_snippets(
            instruction, self._root, files, ranker=self._ranker, token=token
        )
        preview = "\n".join(files[:QUESTION_FILES_PREVIEW])
        truncated = "\n...(truncated)" if len(files) > QUESTION_FILES_PREVIEW else ""
        snippets = "\n\n".join(
            f"[{source.id}] {source.location}\n{source.content}" for source in retrieval.sources
        )
        snippet_block = f"\n\nRelevant snippets:\n{snippets}" if snippets else ""
        messages = self._merge(
            history,
            [
                ChatMessage.system(QUESTION_SYSTEM_PROMPT),
                ChatMessage.user(
                    f"Question: {instruction}\n\nProject context:\n{context.prompt_json()}\n\n"
                    f"Files (partial list):\n{preview}{truncated}{snippet_block}"
                ),
            ],
        )
        events.log("Requesting answer from the local LLM...")
        answer = await self._client.request_text(messages, token=token, label="Question")
        if not answer:
            events.log("No answer returned.")
            return None

        detail = extract_needs_context(answer)
        if detail is not None:
            message = build_needs_context_message(retrieval, len(files), detail)
            events.log(message)
            return message

        final = append_sources_and_confidence(
            answer, retrieval.sources, compute_confidence(retrieval)
        )
        self._logger.info(
            "question_answered", sources=len(retrieval.sources), coverage=retrieval.keyword_coverage
        )
        _stream(events, final)
        return final

    def _merge(
        self, history: Sequence[HistoryItem] | None, messages: list[ChatMessage]
    ) -> list[ChatMessage]:
        return merge_chat_history(
            history,
            messages,
            max_messages=self._history_max_messages,
            max_chars=self._history_max_chars,
        )


def _stream(events: RunEventChannel, text: str) -> None:
    events.stream_start("assistant")
    events.stream_append(text)
    events.stream_end()


__all__ = [
    "QuestionAnswerer",
    "SummaryLimits",
    "build_project_summary_chunks",
    "is_project_summary_question",
    "prioritize_project_files",
]
