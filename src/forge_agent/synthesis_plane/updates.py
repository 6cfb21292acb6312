"""
forge-agent — update orchestration

File: src/forge_agent/synthesis_plane/updates.py
Last updated: 2026-10-19

Purpose
- Request full-file replacements from the model for one or many targets, reconcile
  what comes back against what was asked for, and write the accepted changes.

Functional requirements
- Single-file output is the raw file body; fenced output is unwrapped and
  diff-shaped output is rejected.
- Multi-file payloads are packed greedily in input order under two caps: files per
  request and estimated JSON characters per request.
- Returned paths match requested paths case-insensitively with ``\\`` treated as ``/``;
  missing or unchanged files are dropped with a log line, never an error.
- Only updates whose content differs are produced; writes stop at the first failure
  and already written files stay written.

Non-functional requirements
- Every model call and every write re-checks the run's cancellation token.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog

from forge_agent.diffing import describe_change, inline_preview
from forge_agent.domain.models import FileTarget, FileUpdate
from forge_agent.knowledge_plane.targeting import should_allow_new_files
from forge_agent.observability.events import RunEventChannel
from forge_agent.synthesis_plane.intent import merge_chat_history
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError
from forge_agent.synthesis_plane.schemas import FILE_SELECTION, FILE_UPDATE
from forge_agent.utils.fs import read_text_or_empty, write_text_creating_parents

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.control_plane.session import SessionContext
    from forge_agent.knowledge_plane.targeting import FileTargetResolver
    from forge_agent.synthesis_plane.intent import HistoryItem
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

MIN_FILES_PER_CHUNK: Final[int] = 1
MIN_CHARS_PER_CHUNK: Final[int] = 1000
AUTO_FIX_DIRECTIVE: Final[str] = (
    "Fix the validation errors based on the output below. "
    "Only change files necessary to make validation pass."
)
AUTO_FIX_NO_CHANGES: Final[str] = "Auto-fix produced no changes."
NO_FILES_IN_WORKSPACE: Final[str] = "No files found in workspace."

_FENCE: Final[re.Pattern[str]] = re.compile(r"```(?:\w+)?\s*([\s\S]*?)```", re.IGNORECASE)
_ALLOW_COMMENTS: Final[re.Pattern[str]] = re.compile(
    r"\b(comment|comments|document|documentation|explain|explanation)\b", re.IGNORECASE
)

_COMMENTS_ALLOWED: Final[str] = (
    "If you add comments, they must be on their own line above the code. "
    "Do not add inline trailing comments."
)
_COMMENTS_FORBIDDEN: Final[str] = "Do not add comments unless explicitly requested."

SCAFFOLD_PROMPT: Final[str] = (
    "You are a coding assistant bootstrapping a new project in an empty workspace. "
    "List the minimal set of files needed to satisfy the instruction. "
    'Return ONLY valid JSON in the format {"files":["path1","path2"]}. '
    "Paths must be relative to the project root."
)

UpdateStatus = Literal["ok", "empty", "cancelled"]


class DiffShapedOutputError(ValueError):
    """Raised when a full-file response looks like a unified diff."""


@dataclass(frozen=True, slots=True)
class FilePayload:
    path: str
    content: str

    @property
    def estimated_chars(self) -> int:
        return len(json.dumps({"path": self.path, "content": self.content}, separators=(",", ":")))

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "content": self.content}


@dataclass(frozen=True, slots=True)
class UpdateBatch:
    """Outcome of one multi-file update request."""

    status: UpdateStatus
    updates: tuple[FileUpdate, ...] = ()
    requested: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ApplyReport:
    written: tuple[str, ...] = ()
    failed: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed is None

    @property
    def partial(self) -> bool:
        return self.failed is not None and bool(self.written)


@dataclass(slots=True)
class AutoFixOutcome:
    updates: list[FileUpdate] = field(default_factory=list)
    report: ApplyReport | None = None

    @property
    def changed(self) -> bool:
        return bool(self.updates) and self.report is not None and bool(self.report.written)

    @property
    def partial(self) -> bool:
        return self.report is not None and self.report.partial


def should_allow_comments(instruction: str) -> bool:
    return _ALLOW_COMMENTS.search(instruction) is not None


def is_likely_diff(text: str) -> bool:
    return "--- " in text and "+++ " in text and "@@" in text


def extract_updated_file(content: str) -> str:
    """Unwrap a fenced body and reject diff-shaped output."""

    trimmed = content.strip()
    if not trimmed:
        raise ValueError("No content returned by LLM.")
    fenced = _FENCE.search(trimmed)
    raw = fenced.group(1).strip() if fenced else trimmed
    if is_likely_diff(raw):
        raise DiffShapedOutputError("LLM output appears to be a diff, not full file content.")
    return raw


def normalize_path_for_match(value: str) -> str:
    return value.replace("\\", "/").lower()


def chunk_file_payloads(
    payloads: Sequence[FilePayload], max_files: int, max_chars: int
) -> list[list[FilePayload]]:
    """Greedy packing in input order; a single oversized file still gets its own chunk."""

    max_files = max(MIN_FILES_PER_CHUNK, max_files)
    max_chars = max(MIN_CHARS_PER_CHUNK, max_chars)
    chunks: list[list[FilePayload]] = []
    current: list[FilePayload] = []
    current_chars = 0
    for payload in payloads:
        estimated = payload.estimated_chars
        if len(current) >= max_files or (current and current_chars + estimated > max_chars):
            chunks.append(current)
            current = []
            current_chars = 0
        current.append(payload)
        current_chars += estimated
    if current:
        chunks.append(current)
    return chunks


def build_full_file_messages(
    instruction: str, relative_path: str, original_content: str
) -> list[ChatMessage]:
    comment_policy = _COMMENTS_ALLOWED if should_allow_comments(instruction) else _COMMENTS_FORBIDDEN
    return [
        ChatMessage.system(
            "You are a coding assistant. Return ONLY the full updated content of the target file. "
            "Do not include explanations, code fences, or extra text. "
            "Preserve unrelated lines and formatting unless changes are required by the instruction. "
            + comment_policy
        ),
        ChatMessage.user(
            f"Instruction: {instruction}\n"
            f"Target file: {relative_path}\n"
            "Current file content:\n---\n"
            f"{original_content}\n---\n"
            "Return the full updated file content only."
        ),
    ]


def build_multi_file_messages(
    instruction: str,
    payloads: Sequence[FilePayload],
    *,
    active_file: str | None = None,
    extra_context: str | None = None,
) -> list[ChatMessage]:
    active_note = f"Active file: {active_file}\n" if active_file else ""
    context_note = f"\nValidation output:\n{extra_context}\n" if extra_context else ""
    files_json = json.dumps([payload.to_dict() for payload in payloads], indent=2)
    return [
        ChatMessage.system(
            "You are a coding assistant. Update the given files to satisfy the instruction. "
            'Return ONLY valid JSON in the format {"files":[{"path":"...","content":"..."}]}. '
            "Do not include code fences or explanations. Return full file contents."
        ),
        ChatMessage.user(
            f"Instruction: {instruction}\n{active_note}{context_note}"
            f"Files:\n{files_json}\nReturn JSON only."
        ),
    ]


def reconcile_updates(
    targets: Sequence[FileTarget],
    originals: dict[str, str],
    returned: Sequence[object],
) -> tuple[list[FileUpdate], list[str]]:
    """Match returned ``{path, content}`` items back to requested targets."""

    by_key: dict[str, str] = {}
    for item in returned:
        if not isinstance(item, dict):
            continue
        path = item.get("path")
        content = item.get("content")
        if isinstance(path, str) and isinstance(content, str):
            by_key[normalize_path_for_match(path)] = content

    updates: list[FileUpdate] = []
    notes: list[str] = []
    for target in targets:
        key = normalize_path_for_match(target.path)
        if key not in by_key:
            notes.append(f"No update returned for {target.path}")
            continue
        original = originals.get(target.path, "")
        updated = by_key[key]
        if updated == original:
            notes.append(f"No content change for {target.path}")
            continue
        updates.append(FileUpdate(target.path, target.full_path, original, updated))
    return updates, notes


def apply_file_updates(
    updates: Sequence[FileUpdate],
    *,
    token: CancellationToken | None = None,
    logger: Any | None = None,
) -> ApplyReport:
    """Write changed updates in order; stop at the first failure without rolling back."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    written: list[str] = []
    for update in updates:
        if not update.is_change():
            continue
        if token is not None:
            token.raise_if_cancelled()
        try:
            write_text_creating_parents(update.full_path, update.updated_content)
        except OSError as exc:
            log.warning("apply_failed", path=update.path, written=len(written), error=str(exc))
            return ApplyReport(tuple(written), failed=update.path, error=f"Write error: {exc}")
        written.append(update.path)
    log.info("apply_completed", written=len(written))
    return ApplyReport(tuple(written))


def publish_update_previews(events: RunEventChannel, updates: Sequence[FileUpdate]) -> None:
    for update in updates:
        summary = describe_change(update.original_content, update.updated_content, update.path)
        if summary:
            events.log(summary)
        preview = inline_preview(update.original_content, update.updated_content, update.path)
        if preview:
            events.diff(preview)


def build_change_summary(updates: Sequence[FileUpdate]) -> str:
    """Change counts plus diff previews for every changed update, as prompt text."""

    blocks: list[str] = []
    for update in updates:
        summary = describe_change(update.original_content, update.updated_content, update.path)
        if summary is None:
            continue
        preview = inline_preview(update.original_content, update.updated_content, update.path)
        blocks.append("\n".join([summary, *(preview or [])]))
    return "\n\n".join(blocks)


class UpdateOrchestrator:
    """Drive single-file and chunked multi-file update requests."""

    def __init__(
        self,
        client: JsonRetryClient,
        settings: ForgeSettings,
        resolver: FileTargetResolver,
        *,
        events: RunEventChannel | None = None,
        logger: Any | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._resolver = resolver
        self._events = events if events is not None else RunEventChannel()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._resolver.root

    async def request_single_file_update(
        self,
        target: FileTarget,
        instruction: str,
        *,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> FileUpdate | None:
        original = read_text_or_empty(target.full_path)
        messages = merge_chat_history(
            history,
            build_full_file_messages(instruction, target.path, original),
            max_messages=self._settings.chat_history_max_messages,
            max_chars=self._settings.chat_history_max_chars,
        )
        self._events.status("Requesting LLM...")
        content = await self._client.request_text(messages, token=token, label="Full-file update")
        self._events.stream_start(target.path)
        self._events.stream_append(content)
        self._events.stream_end()

        updated = extract_updated_file(content)
        if updated == original:
            self._logger.info("single_file_unchanged", path=target.path)
            return None
        return FileUpdate(target.path, target.full_path, original, updated)

    async def request_multi_file_update(
        self,
        instruction: str,
        files: Sequence[str],
        *,
        session: SessionContext | None = None,
        active_file: str | None = None,
        extra_context: str | None = None,
        history: Sequence[HistoryItem] | None = None,
        use_picker: bool = True,
        token: CancellationToken | None = None,
    ) -> UpdateBatch:
        allow_new = should_allow_new_files(instruction)
        targets: list[FileTarget] = []

        if not files:
            if not allow_new:
                self._events.log(NO_FILES_IN_WORKSPACE)
                return UpdateBatch("empty")
            targets = await self._scaffold_targets(instruction, history=history, token=token)

        if not targets:
            resolution = await self._resolver.resolve(
                instruction,
                files,
                session=session if use_picker else None,
                active_file=active_file,
                validation_output=extra_context,
                allow_new_files=allow_new,
                token=token,
                use_picker=use_picker,
            )
            for message in resolution.messages:
                self._events.log(message)
            if resolution.status == "cancelled":
                return UpdateBatch("cancelled")
            targets = list(resolution.targets)
        if not targets:
            return UpdateBatch("empty")

        return await self.request_updates_for_targets(
            instruction,
            targets,
            active_file=active_file,
            extra_context=extra_context,
            history=history,
            token=token,
        )

    async def request_updates_for_targets(
        self,
        instruction: str,
        targets: Sequence[FileTarget],
        *,
        active_file: str | None = None,
        extra_context: str | None = None,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> UpdateBatch:
        originals = {target.path: read_text_or_empty(target.full_path) for target in targets}
        payloads = [FilePayload(target.path, originals[target.path]) for target in targets]
        chunks = chunk_file_payloads(
            payloads, self._settings.max_files_per_update, self._settings.max_update_chars
        )
        if len(chunks) > 1:
            self._events.log(f"Chunking update into {len(chunks)} batches.")

        returned: list[object] = []
        for index, chunk in enumerate(chunks, start=1):
            suffix = f" ({index}/{len(chunks)})" if len(chunks) > 1 else ""
            self._events.status(f"Requesting LLM{suffix}...")
            self._logger.info(
                "update_chunk_dispatched", chunk=index, chunks=len(chunks), files=len(chunk)
            )
            messages = merge_chat_history(
                history,
                build_multi_file_messages(
                    instruction, chunk, active_file=active_file, extra_context=extra_context
                ),
                max_messages=self._settings.chat_history_max_messages,
                max_chars=self._settings.chat_history_max_chars,
            )
            payload = await self._client.request_json(
                messages,
                FILE_UPDATE,
                max_retries=self._settings.json_max_retries,
                token=token,
                label=f"File update{suffix}",
            )
            items = payload.get("files", [])
            self._events.log(f"LLM returned updates for {len(items)} files{suffix}.")
            returned.extend(items)

        updates, notes = reconcile_updates(targets, originals, returned)
        for note in notes:
            self._events.log(note)
        return UpdateBatch(
            "ok" if updates else "empty",
            tuple(updates),
            tuple(target.path for target in targets),
        )

    async def attempt_auto_fix(
        self,
        instruction: str,
        validation_output: str,
        files: Sequence[str],
        *,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> AutoFixOutcome:
        """Re-enter the multi-file path with the fix directive and apply the result."""

        fix_instruction = f"{instruction}\n\n{AUTO_FIX_DIRECTIVE}"
        try:
            batch = await self.request_multi_file_update(
                fix_instruction,
                files,
                extra_context=validation_output,
                history=history,
                use_picker=False,
                token=token,
            )
        except (JsonParseError, ProviderError, DiffShapedOutputError) as exc:
            self._events.log(f"LLM error: {exc}")
            self._events.log(AUTO_FIX_NO_CHANGES)
            return AutoFixOutcome()

        if not batch.updates:
            self._events.log(AUTO_FIX_NO_CHANGES)
            return AutoFixOutcome()

        publish_update_previews(self._events, batch.updates)
        report = apply_file_updates(batch.updates, token=token, logger=self._logger)
        if report.error:
            self._events.log(report.error)
        if report.partial:
            self._events.log(f"Partially applied: {', '.join(report.written)}.")
        return AutoFixOutcome(list(batch.updates), report)

    async def _scaffold_targets(
        self,
        instruction: str,
        *,
        history: Sequence[HistoryItem] | None,
        token: CancellationToken | None,
    ) -> list[FileTarget]:
        self._events.status("Scaffolding project...")
        messages = merge_chat_history(
            history,
            [
                ChatMessage.system(SCAFFOLD_PROMPT),
                ChatMessage.user(f"Instruction: {instruction}\nReturn JSON only."),
            ],
            max_messages=self._settings.chat_history_max_messages,
            max_chars=self._settings.chat_history_max_chars,
        )
        try:
            payload = await self._client.request_json(
                messages,
                FILE_SELECTION,
                max_retries=self._settings.json_max_retries,
                token=token,
                label="Scaffold",
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("scaffold_failed", error=str(exc))
            return []
        proposed = [str(item) for item in payload.get("files", []) if str(item).strip()]
        targets, rejected = self._resolver.guard(proposed)
        for note in rejected:
            self._events.log(note)
        if targets:
            self._events.log("Scaffold files: " + ", ".join(target.path for target in targets))
        self._logger.info("scaffold_planned", files=len(targets))
        return targets


__all__ = [
    "AUTO_FIX_DIRECTIVE",
    "AUTO_FIX_NO_CHANGES",
    "ApplyReport",
    "AutoFixOutcome",
    "DiffShapedOutputError",
    "FilePayload",
    "UpdateBatch",
    "UpdateOrchestrator",
    "apply_file_updates",
    "build_change_summary",
    "build_full_file_messages",
    "build_multi_file_messages",
    "chunk_file_payloads",
    "extract_updated_file",
    "is_likely_diff",
    "normalize_path_for_match",
    "publish_update_previews",
    "reconcile_updates",
    "should_allow_comments",
]
