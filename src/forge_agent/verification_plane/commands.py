"""
forge-agent — shell command execution

File: src/forge_agent/verification_plane/commands.py
Last updated: 2026-10-19

Purpose
- Portable command contract and an asyncio subprocess executor used by validation
  and the git collaborator.

Functional requirements
- Commands run without a shell from an argv tuple, inside a working directory.
- Timeouts kill the process and keep whatever output was captured.
- Cancellation of the awaiting task kills the process before re-raising.

Non-functional requirements
- Captured output is decoded leniently, truncated, and passed through the redactor.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import time
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

from forge_agent.security.redaction import redact_text
from forge_agent.utils.concurrency import await_cancellable

if TYPE_CHECKING:
    from forge_agent.utils.concurrency import CancellationToken

DEFAULT_MAX_OUTPUT_CHARS: Final[int] = 200_000


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """One command invocation."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    inherit_env: bool = True

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv or not all(isinstance(part, str) and part for part in argv):
            raise ValueError("CommandSpec.argv must be a non-empty tuple of non-empty strings")
        object.__setattr__(self, "argv", argv)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds must be > 0")

    @classmethod
    def from_command_line(
        cls, command: str, *, cwd: str | None = None, timeout_seconds: float | None = None
    ) -> CommandSpec:
        return cls(tuple(shlex.split(command)), cwd=cwd, timeout_seconds=timeout_seconds)

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)

    def build_env(self) -> dict[str, str] | None:
        if self.inherit_env:
            env = dict(os.environ)
            env.update(self.env)
            return env
        return dict(self.env)


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def is_success(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout, stderr and any execution error, in that order."""

        parts = [self.stdout, self.stderr]
        if self.error:
            parts.append(self.error)
        return "".join(part if part.endswith("\n") or not part else f"{part}\n" for part in parts)


@runtime_checkable
class CommandExecutor(Protocol):
    async def run(
        self, spec: CommandSpec, *, token: CancellationToken | None = None
    ) -> CommandResult: ...


class LocalSubprocessExecutor:
    """Run commands with ``asyncio.create_subprocess_exec``."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = None,
        max_output_chars: int | None = DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_chars = max_output_chars

    async def run(
        self, spec: CommandSpec, *, token: CancellationToken | None = None
    ) -> CommandResult:
        return await await_cancellable(self._run(spec), token)

    async def _run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        timeout = spec.timeout_seconds or self._default_timeout_seconds
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=redact_text(str(exc)),
            )

        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(process, timeout)
            timed_out = False
            error_text: str | None = None
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes, stderr_bytes = exc.stdout, exc.stderr
            timed_out = True
            error_text = f"command timed out after {timeout or 0.0:.3f}s"
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=self._clean(stdout_bytes),
            stderr=self._clean(stderr_bytes),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
            error=error_text,
        )

    def _clean(self, raw: bytes) -> str:
        return redact_text(_truncate_text(_normalize_output_text(raw), self._max_output_chars))


@dataclass(slots=True)
class _CommandTimeoutError(Exception):
    stdout: bytes
    stderr: bytes


async def _communicate_with_timeout(
    process: asyncio.subprocess.Process, timeout_seconds: float | None
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate()
        return await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError as exc:
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise


def _elapsed_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


def _normalize_output_text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "DEFAULT_MAX_OUTPUT_CHARS",
    "LocalSubprocessExecutor",
]
