"""
forge-agent — host collaborator contracts

File: src/forge_agent/control_plane/collaborators.py
Last updated: 2026-10-19

Purpose
- Protocols for everything the pipeline asks of its host: file picking, confirmations,
  validation command choice, and version control.

Functional requirements
- A collaborator returning ``None`` means "no UI available"; the pipeline falls back
  to its non-interactive path.
- ``GitCLI`` limits git plumbing to status, diff stat, commit and push.

Non-functional requirements
- Git commands run through the shared command executor, never a shell.
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

from forge_agent.verification_plane.commands import CommandSpec, LocalSubprocessExecutor

if TYPE_CHECKING:
    from forge_agent.utils.concurrency import CancellationToken
    from forge_agent.verification_plane.commands import CommandExecutor, CommandResult
    from forge_agent.verification_plane.discovery import ValidationOption

GIT_TIMEOUT_SECONDS: Final[float] = 60.0


@dataclass(frozen=True, slots=True)
class FileSelection:
    files: tuple[str, ...] = ()
    cancelled: bool = False


@runtime_checkable
class FileSelectionUI(Protocol):
    async def request_file_selection(
        self, all_files: Sequence[str], preselected: Sequence[str]
    ) -> FileSelection | None: ...


@runtime_checkable
class ConfirmationUI(Protocol):
    async def confirm(self, message: str) -> bool: ...


@runtime_checkable
class ValidationChoiceUI(Protocol):
    async def choose(self, options: Sequence[ValidationOption]) -> ValidationOption | None: ...


@runtime_checkable
class VersionControl(Protocol):
    async def has_changes(self, *, token: CancellationToken | None = None) -> bool: ...

    async def diff_stat(self, *, token: CancellationToken | None = None) -> str: ...

    async def commit(
        self, paths: Sequence[str], message: str, *, token: CancellationToken | None = None
    ) -> None: ...

    async def push(self, *, token: CancellationToken | None = None) -> None: ...


class GitError(RuntimeError):
    """Raised when a git command exits non-zero or cannot be started."""

    def __init__(self, result: CommandResult) -> None:
        detail = (result.error or result.stderr or result.stdout).strip()
        super().__init__(f"{' '.join(result.argv)} failed: {detail or f'exit {result.exit_code}'}")
        self.result = result


class GitCLI:
    """``VersionControl`` backed by the ``git`` binary."""

    def __init__(
        self,
        root: str | os.PathLike[str],
        *,
        executor: CommandExecutor | None = None,
        timeout_seconds: float = GIT_TIMEOUT_SECONDS,
    ) -> None:
        self._root = Path(root)
        self._executor = executor or LocalSubprocessExecutor()
        self._timeout_seconds = timeout_seconds

    async def is_repository(self, *, token: CancellationToken | None = None) -> bool:
        result = await self._git("rev-parse", "--is-inside-work-tree", token=token, check=False)
        return result.is_success and result.stdout.strip() == "true"

    async def has_changes(self, *, token: CancellationToken | None = None) -> bool:
        result = await self._git("status", "--porcelain", token=token)
        return bool(result.stdout.strip())

    async def diff_stat(self, *, token: CancellationToken | None = None) -> str:
        result = await self._git("diff", "--stat", token=token)
        return result.stdout.strip()

    async def commit(
        self, paths: Sequence[str], message: str, *, token: CancellationToken | None = None
    ) -> None:
        if paths:
            await self._git("add", "--", *paths, token=token)
        else:
            await self._git("add", "--all", token=token)
        await self._git("commit", "-m", message, token=token)

    async def push(self, *, token: CancellationToken | None = None) -> None:
        await self._git("push", token=token)

    async def _git(
        self, *args: str, token: CancellationToken | None, check: bool = True
    ) -> CommandResult:
        spec = CommandSpec(
            ("git", *args), cwd=str(self._root), timeout_seconds=self._timeout_seconds
        )
        result = await self._executor.run(spec, token=token)
        if check and not result.is_success:
            raise GitError(result)
        return result


__all__ = [
    "ConfirmationUI",
    "FileSelection",
    "FileSelectionUI",
    "GitCLI",
    "GitError",
    "ValidationChoiceUI",
    "VersionControl",
]
