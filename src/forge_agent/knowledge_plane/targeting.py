"""
forge-agent — file target resolution

File: src/forge_agent/knowledge_plane/targeting.py
Last updated: 2026-10-19

Purpose
- Turn an instruction into a concrete, guarded set of workspace files to edit.

Functional requirements
- Priority order: explicit paths, mentioned files, keyword search, model selection,
  then the active file as a last resort.
- Duplicate basenames prefer ``src/``, then ``app/``, then the shortest path.
- When several files are plausible and nothing in the text points at one, the
  file-picker collaborator decides; an empty pick with no fallback is "no target".
- Every candidate passes ``resolve_workspace_path``; escapes and blocked
  directories raise ``PathPolicyError`` and are never returned.

Non-functional requirements
- Path checks are purely lexical plus ``Path.resolve`` and never follow writes.
"""

from __future__ import annotations

import os
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog

from forge_agent.domain.models import FileTarget
from forge_agent.knowledge_plane.file_search import (
    extract_explicit_paths,
    extract_keywords,
    extract_mentioned_files,
    find_files_by_keywords,
)
from forge_agent.knowledge_plane.workspace import is_blocked_path
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError
from forge_agent.synthesis_plane.schemas import FILE_SELECTION
from forge_agent.utils.fs import is_within

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.control_plane.collaborators import FileSelectionUI
    from forge_agent.control_plane.session import SessionContext
    from forge_agent.knowledge_plane.retrieval import RelevanceRanker
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

MAX_SUGGESTED_FILES: Final[int] = 12
MODEL_SELECTION_FILE_LIMIT: Final[int] = 500

FILE_SELECTION_CANCELLED: Final[str] = "File selection cancelled."
NO_FILES_SELECTED: Final[str] = (
    "No files selected. Please specify which files to edit or provide more context."
)
NO_VALID_MODEL_FILES: Final[str] = "No valid files selected by LLM."

_SMALL_EDIT: Final[re.Pattern[str]] = re.compile(
    r"\b(typo|spelling|format|reformat|lint|cleanup|minor|small|simple|rename|comment|docs?)\b",
    re.IGNORECASE,
)
_ALLOW_NEW_FILES: Final[re.Pattern[str]] = re.compile(
    r"\b(create|add|new|generate|scaffold|bootstrap|website|web\s*page|html|css)\b",
    re.IGNORECASE,
)

FILE_SELECTION_PROMPT: Final[str] = (
    "You are a coding assistant. Select the files that must be edited. "
    'Return ONLY valid JSON in the format {"files":["path1","path2"]}. '
    "Paths must be relative to the project root."
)
NEW_FILES_NOTE: Final[str] = (
    " You may include new file paths that do not exist yet if the instruction requires creating them."
)

ResolutionStatus = Literal["resolved", "cancelled", "empty"]


class PathPolicyError(ValueError):
    """Raised when a candidate path escapes the workspace or enters a blocked directory."""

    def __init__(self, candidate: str, reason: str) -> None:
        self.candidate = candidate
        self.reason = reason
        super().__init__(f"{candidate}: {reason}")


@dataclass(frozen=True, slots=True)
class AutoSelection:
    files: tuple[str, ...]
    offer_picker: bool


@dataclass(frozen=True, slots=True)
class TargetResolution:
    """Resolved targets plus the user-visible notes produced while resolving them."""

    status: ResolutionStatus
    targets: tuple[FileTarget, ...] = ()
    messages: tuple[str, ...] = ()
    source: str = ""

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(target.path for target in self.targets)


def normalize_relative_path(candidate: str) -> str:
    """Forward slashes, no leading ``./`` and no surrounding whitespace or quotes."""

    text = candidate.strip().strip("\"'`").replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text


def resolve_workspace_path(root: str | os.PathLike[str], candidate: str) -> FileTarget:
    """Guard ``candidate`` against the workspace policy and return its target."""

    normalized = normalize_relative_path(candidate)
    if not normalized:
        raise PathPolicyError(candidate, "empty path")
    pure = PurePosixPath(normalized)
    if pure.is_absolute() or re.match(r"^[A-Za-z]:", normalized):
        raise PathPolicyError(candidate, "absolute paths are not allowed")
    if any(part == ".." for part in pure.parts):
        raise PathPolicyError(candidate, "path escapes the workspace")
    if is_blocked_path(normalized):
        raise PathPolicyError(candidate, "path is inside a blocked directory")

    root_path = Path(root).resolve()
    full_path = (root_path / normalized).resolve()
    if not is_within(full_path, root_path) or full_path == root_path:
        raise PathPolicyError(candidate, "path escapes the workspace")
    relative = full_path.relative_to(root_path).as_posix()
    if is_blocked_path(relative):
        raise PathPolicyError(candidate, "path is inside a blocked directory")
    return FileTarget(path=relative, full_path=str(full_path))


def disambiguate_candidate_paths(
    candidates: Sequence[str], files: Sequence[str]
) -> tuple[list[str], list[str]]:
    """Map bare basenames to one workspace path each; return ``(paths, notes)``."""

    resolved: dict[str, None] = {}
    notes: list[str] = []
    for candidate in candidates:
        normalized = normalize_relative_path(candidate)
        if not normalized:
            continue
        if "/" in normalized or normalized in files:
            resolved.setdefault(normalized, None)
            continue
        lowered = normalized.lower()
        matches = [path for path in files if PurePosixPath(path).name.lower() == lowered]
        if not matches:
            resolved.setdefault(normalized, None)
            continue
        chosen = _preferred_path(matches)
        if len(matches) > 1 or chosen != normalized:
            notes.append(f"{normalized} -> {chosen}")
        resolved.setdefault(chosen, None)
    return list(resolved), notes


def _preferred_path(matches: Sequence[str]) -> str:
    for prefix in ("src/", "app/"):
        preferred = sorted(path for path in matches if path.startswith(prefix))
        if preferred:
            return min(preferred, key=len)
    return min(sorted(matches), key=len)


def suggest_files_for_instruction(instruction: str, files: Sequence[str]) -> list[str]:
    mentioned = extract_mentioned_files(instruction, list(files))
    if mentioned:
        return mentioned[:MAX_SUGGESTED_FILES]
    keywords = [keyword.lower() for keyword in extract_keywords(instruction)]
    if not keywords:
        return []
    hits = [path for path in files if any(keyword in path.lower() for keyword in keywords)]
    return hits[:MAX_SUGGESTED_FILES]


def should_allow_new_files(instruction: str) -> bool:
    return _ALLOW_NEW_FILES.search(instruction) is not None


def compute_auto_selection(
    direct_files: Sequence[str],
    suggested: Sequence[str],
    *,
    allow_new_files: bool,
    skip_create_file_picker: bool,
    instruction: str,
) -> AutoSelection:
    """Pick files without asking when the text is decisive; otherwise say whether to ask."""

    if direct_files:
        return AutoSelection(tuple(direct_files), offer_picker=False)
    auto: tuple[str, ...] = ()
    if len(suggested) == 1 and _SMALL_EDIT.search(instruction):
        auto = (suggested[0],)
    skip_picker = allow_new_files and skip_create_file_picker
    offer = not skip_picker and not auto and len(suggested) > 1
    return AutoSelection(auto, offer_picker=offer)


@dataclass(slots=True)
class _Collected:
    targets: list[FileTarget] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


class FileTargetResolver:
    """Resolve the files an instruction should edit.

    The resolver never writes. It consults the file picker only when the text
    does not name files and more than one candidate looks plausible.
    """

    def __init__(
        self,
        root: str | os.PathLike[str],
        settings: ForgeSettings,
        *,
        client: JsonRetryClient | None = None,
        picker: FileSelectionUI | None = None,
        ranker: RelevanceRanker | None = None,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(root)
        self._settings = settings
        self._client = client
        self._picker = picker
        self._ranker = ranker
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    def guard(self, candidates: Sequence[str]) -> tuple[list[FileTarget], list[str]]:
        """Apply the path policy; rejected candidates become notes, never targets."""

        targets: list[FileTarget] = []
        rejected: list[str] = []
        seen: set[str] = set()
        for candidate in candidates:
            try:
                target = resolve_workspace_path(self._root, candidate)
            except PathPolicyError as exc:
                self._logger.info("target_rejected", candidate=candidate, reason=exc.reason)
                rejected.append(f"Skipped {candidate}: {exc.reason}.")
                continue
            if target.path in seen:
                continue
            seen.add(target.path)
            targets.append(target)
        return targets, rejected

    async def resolve(
        self,
        instruction: str,
        files: Sequence[str],
        *,
        session: SessionContext | None = None,
        active_file: str | None = None,
        validation_output: str | None = None,
        allow_new_files: bool | None = None,
        use_picker: bool = True,
        token: CancellationToken | None = None,
    ) -> TargetResolution:
        files = list(files)
        existing = set(files)
        allow_new = should_allow_new_files(instruction) if allow_new_files is None else allow_new_files

        explicit = [
            path
            for path in extract_explicit_paths(instruction)
            if allow_new or path in existing or _basename_in(path, files)
        ]
        mentioned = extract_mentioned_files(instruction, files)
        direct_raw = list(dict.fromkeys([*explicit, *mentioned]))
        direct, notes = disambiguate_candidate_paths(direct_raw, files)
        collected = _Collected(messages=[f"Resolved {note}" for note in notes])

        suggested = suggest_files_for_instruction(instruction, files)
        auto = compute_auto_selection(
            direct,
            suggested,
            allow_new_files=allow_new,
            skip_create_file_picker=self._settings.skip_create_file_picker,
            instruction=instruction,
        )
        if auto.files:
            source = "explicit" if explicit else ("mentioned" if mentioned else "suggested")
            return self._finish(auto.files, collected, source)

        if use_picker and auto.offer_picker and self._picker is not None:
            picked = await self._ask_picker(files, suggested, session, token)
            if picked is not None:
                selection_files, cancelled = picked
                if cancelled:
                    return TargetResolution("cancelled", messages=(FILE_SELECTION_CANCELLED,))
                if selection_files:
                    if session is not None:
                        session.last_manual_selection = tuple(selection_files)
                    return self._finish(selection_files, collected, "picker")
                if not allow_new:
                    return TargetResolution("empty", messages=(NO_FILES_SELECTED,))

        keyword_hits = find_files_by_keywords(instruction, self._root, files)
        if keyword_hits:
            ranked = await self._rank(instruction, keyword_hits, token)
            return self._finish(ranked, collected, "keyword")

        if self._client is not None:
            model_files = await self._model_selection(
                instruction,
                files,
                existing,
                active_file=active_file,
                validation_output=validation_output,
                allow_new=allow_new,
                token=token,
            )
            if model_files:
                return self._finish(model_files, collected, "model")
            collected.messages.append(NO_VALID_MODEL_FILES)

        if active_file:
            return self._finish([active_file], collected, "active")
        return TargetResolution("empty", messages=tuple(collected.messages))

    def _finish(
        self, candidates: Sequence[str], collected: _Collected, source: str
    ) -> TargetResolution:
        targets, rejected = self.guard(candidates)
        collected.messages.extend(rejected)
        if not targets:
            return TargetResolution("empty", messages=tuple(collected.messages), source=source)
        collected.messages.append("Selected files: " + ", ".join(t.path for t in targets))
        self._logger.info("targets_resolved", source=source, count=len(targets))
        return TargetResolution(
            "resolved", tuple(targets), tuple(collected.messages), source=source
        )

    async def _ask_picker(
        self,
        files: Sequence[str],
        suggested: Sequence[str],
        session: SessionContext | None,
        token: CancellationToken | None,
    ) -> tuple[list[str], bool] | None:
        assert self._picker is not None
        preselected: list[str] = []
        if session is not None and session.last_manual_selection:
            preselected = [path for path in session.last_manual_selection if path in files]
        if not preselected:
            preselected = list(suggested)
        if token is not None:
            token.raise_if_cancelled()
        selection = await self._picker.request_file_selection(list(files), preselected)
        if token is not None:
            token.raise_if_cancelled()
        if selection is None:
            return None
        return list(selection.files), selection.cancelled

    async def _rank(
        self, instruction: str, candidates: list[str], token: CancellationToken | None
    ) -> list[str]:
        if self._ranker is None or not self._settings.retrieval_rank_enabled:
            return candidates
        return await self._ranker.rank(instruction, candidates, token=token)

    async def _model_selection(
        self,
        instruction: str,
        files: Sequence[str],
        existing: set[str],
        *,
        active_file: str | None,
        validation_output: str | None,
        allow_new: bool,
        token: CancellationToken | None,
    ) -> list[str]:
        assert self._client is not None
        system = FILE_SELECTION_PROMPT + (NEW_FILES_NOTE if allow_new else "")
        user = (
            f"Instruction: {instruction}\n"
            f"Active file: {active_file or '(none)'}\n\n"
            f"Validation output:\n{validation_output or '(none)'}\n"
            "Available files:\n"
            + "\n".join(files[:MODEL_SELECTION_FILE_LIMIT])
            + "\nReturn JSON only."
        )
        try:
            payload = await self._client.request_json(
                [ChatMessage.system(system), ChatMessage.user(user)],
                FILE_SELECTION,
                max_retries=self._settings.json_max_retries,
                token=token,
                label="File selection",
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("file_selection_failed", error=str(exc))
            return []

        raw = payload.get("files", [])
        proposed = [str(item) for item in raw if isinstance(item, str) and item.strip()]
        paths, _ = disambiguate_candidate_paths(proposed, list(files))
        return [path for path in paths if allow_new or path in existing]


def _basename_in(path: str, files: Sequence[str]) -> bool:
    name = PurePosixPath(path).name.lower()
    return any(PurePosixPath(candidate).name.lower() == name for candidate in files)


__all__ = [
    "AutoSelection",
    "FILE_SELECTION_CANCELLED",
    "FileTargetResolver",
    "MAX_SUGGESTED_FILES",
    "NO_FILES_SELECTED",
    "NO_VALID_MODEL_FILES",
    "PathPolicyError",
    "TargetResolution",
    "compute_auto_selection",
    "disambiguate_candidate_paths",
    "normalize_relative_path",
    "resolve_workspace_path",
    "should_allow_new_files",
    "suggest_files_for_instruction",
]
