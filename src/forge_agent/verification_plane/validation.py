"""
forge-agent — validation and auto-fix loop

File: src/forge_agent/verification_plane/validation.py
Last updated: 2026-10-19

Purpose
- Run the project's validation commands and drive the bounded
  validate -> auto-fix -> validate cycle, with an optional model verification pass.

Functional requirements
- Automatic validation runs every option in priority order without stopping at the
  first failure; output accumulates and the result joins commands with `` && ``.
- Manual validation asks the choice collaborator, which is always offered a skip entry.
- The loop ends when validation passes, when auto-fix changes nothing, or when the
  retry budget is spent; none of these raise.
- Verification issues from a failed verdict are fed into the next fix attempt.

Non-functional requirements
- Command failures (missing binary, timeout) become failed results, not exceptions.
- Cancellation propagates untouched.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from forge_agent.domain.models import FileUpdate, ValidationResult, VerificationResult
from forge_agent.synthesis_plane.updates import build_change_summary
from forge_agent.verification_plane.commands import CommandSpec, LocalSubprocessExecutor
from forge_agent.verification_plane.discovery import (
    SKIP_VALIDATION,
    ValidationOption,
    discover_validation_commands,
    order_validation_options,
)
from forge_agent.verification_plane.verifier import format_verification

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.control_plane.collaborators import ValidationChoiceUI
    from forge_agent.observability.events import RunEventChannel
    from forge_agent.observability.trace import TraceRecorder
    from forge_agent.synthesis_plane.intent import HistoryItem
    from forge_agent.synthesis_plane.updates import UpdateOrchestrator
    from forge_agent.utils.concurrency import CancellationToken
    from forge_agent.verification_plane.commands import CommandExecutor
    from forge_agent.verification_plane.verifier import Verifier

VALIDATION_PASSED: Final[str] = "Validation passed."
VALIDATION_FAILED: Final[str] = "Validation failed."
VALIDATION_ALREADY_PASSING: Final[str] = "Validation already passing."
AUTO_FIX_DISABLED: Final[str] = "Auto-fix disabled."
PASSED_AFTER_AUTO_FIX: Final[str] = "Validation passed after auto-fix."
STILL_FAILING: Final[str] = "Validation still failing after auto-fix attempts."
RERUNNING_VALIDATION: Final[str] = "Re-running validation..."
OUTPUT_TAIL_LINES: Final[int] = 40

Discoverer = Callable[..., list[ValidationOption]]


def skipped_validation() -> ValidationResult:
    return ValidationResult(ok=True, output="")


def output_tail(text: str, max_lines: int = OUTPUT_TAIL_LINES) -> str:
    lines = text.rstrip().splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join([f"... ({len(lines) - max_lines} earlier lines)", *lines[-max_lines:]])


def build_fix_context(validation_output: str, issues: Sequence[str] = ()) -> str:
    """Validation output for the fix prompt, followed by any verification issues."""

    parts = [validation_output.strip() or "(no validation output)"]
    if issues:
        parts.append("Verification issues:\n" + "\n".join(f"- {issue}" for issue in issues))
    return "\n\n".join(parts)


class ValidationRunner:
    """Discover and run validation commands for one workspace."""

    def __init__(
        self,
        root: str | os.PathLike[str],
        settings: ForgeSettings,
        *,
        events: RunEventChannel,
        executor: CommandExecutor | None = None,
        chooser: ValidationChoiceUI | None = None,
        trace: TraceRecorder | None = None,
        discover: Discoverer = discover_validation_commands,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(root)
        self._settings = settings
        self._events = events
        self._executor = executor or LocalSubprocessExecutor(
            default_timeout_seconds=settings.validation_timeout_seconds,
            max_output_chars=settings.validation_max_output_chars,
        )
        self._chooser = chooser
        self._trace = trace
        self._discover = discover
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def options(self) -> list[ValidationOption]:
        return self._discover(self._root, configured=self._settings.validation_commands)

    async def run(self, *, token: CancellationToken | None = None) -> ValidationResult:
        """Run all options, or the one the user picks when auto validation is off."""

        options = self.options()
        if not options:
            self._logger.info("validation_skipped", reason="no_commands")
            return skipped_validation()
        if self._settings.auto_validation or self._chooser is None:
            return await self.run_all(options, token=token)

        choice = await self._chooser.choose([*options, SKIP_VALIDATION])
        if token is not None:
            token.raise_if_cancelled()
        if choice is None or choice.is_skip:
            self._events.log("Validation skipped.")
            return skipped_validation()
        ok, output = await self._run_option(choice, token=token)
        return ValidationResult(ok=ok, output=output, command=choice.command, label=choice.label)

    async def run_all(
        self,
        options: Sequence[ValidationOption] | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> ValidationResult:
        ordered = order_validation_options(self.options() if options is None else options)
        if not ordered:
            return skipped_validation()
        ok = True
        combined: list[str] = []
        for option in ordered:
            option_ok, output = await self._run_option(option, token=token)
            combined.append(output)
            ok = ok and option_ok
        result = ValidationResult(
            ok=ok,
            output="".join(combined),
            command=" && ".join(option.command for option in ordered),
            label=", ".join(option.label for option in ordered),
        )
        self._logger.info("validation_completed", ok=result.ok, label=result.label)
        return result

    async def _run_option(
        self, option: ValidationOption, *, token: CancellationToken | None
    ) -> tuple[bool, str]:
        self._events.log(f"Running validation: {option.label}")
        self._events.log(f"> {option.command}")
        try:
            spec = CommandSpec(
                option.argv,
                cwd=str(self._root / option.cwd),
                timeout_seconds=self._settings.validation_timeout_seconds,
            )
        except ValueError as exc:
            self._events.log(f"Validation error: {exc}")
            return False, str(exc)
        result = await self._executor.run(spec, token=token)
        if result.error:
            self._events.log(f"Validation error: {result.error}")
        if self._trace is not None:
            self._trace.record(
                "validation",
                f"Validation: {option.label} (exit {result.exit_code})",
                result.output,
            )
        return result.is_success, result.output


@dataclass(frozen=True, slots=True)
class LoopReport:
    """Terminal state of one validation/auto-fix cycle."""

    validation: ValidationResult
    verification: VerificationResult | None = None
    attempts: int = 0
    updates: tuple[FileUpdate, ...] = ()
    # An auto-fix batch stopped at a failed write after writing some files.
    partial_apply: bool = False

    @property
    def passed(self) -> bool:
        return self.validation.ok

    @property
    def files_changed(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(update.path for update in self.updates))


class ValidationAutoFixLoop:
    def __init__(
        self,
        runner: ValidationRunner,
        orchestrator: UpdateOrchestrator,
        settings: ForgeSettings,
        *,
        events: RunEventChannel,
        verifier: Verifier | None = None,
        logger: Any | None = None,
    ) -> None:
        self._runner = runner
        self._orchestrator = orchestrator
        self._settings = settings
        self._events = events
        self._verifier = verifier
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def budget(self) -> int:
        if not self._settings.auto_fix_validation:
            return 0
        return max(0, self._settings.auto_fix_max_retries)

    async def run(
        self,
        instruction: str,
        *,
        files: Sequence[str] = (),
        change_summary: str = "",
        validation: ValidationResult | None = None,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> LoopReport:
        """Validate, then fix and re-validate until pass, no progress or no budget."""

        budget = self.budget
        self._events.status("Running validation...")
        result = validation if validation is not None else await self._runner.run(token=token)
        verification: VerificationResult | None = None
        issues: tuple[str, ...] = ()
        applied: list[FileUpdate] = []
        attempts = 0
        partial_apply = False
        summary = change_summary

        while True:
            if result.ok:
                verification = await self._verify(instruction, summary, result, token=token)
                if verification is None or not verification.failed:
                    break
                if attempts >= budget:
                    self._events.log(
                        "Verification warning: "
                        + ("; ".join(verification.issues) or "model reported a failure")
                    )
                    break
                issues = verification.issues
            elif attempts >= budget:
                break

            attempts += 1
            self._events.log(f"Auto-fix attempt {attempts} of {budget}...")
            self._events.status(f"Auto-fix {attempts}/{budget}")
            self._logger.info("auto_fix_attempt", attempt=attempts, budget=budget, issues=len(issues))
            outcome = await self._orchestrator.attempt_auto_fix(
                instruction,
                build_fix_context(result.output, issues),
                files,
                history=history,
                token=token,
            )
            partial_apply = partial_apply or outcome.partial
            if not outcome.changed:
                self._logger.info("auto_fix_no_progress", attempt=attempts)
                break
            applied.extend(update for update in outcome.updates if update.path in outcome.report.written)
            summary = "\n\n".join(part for part in (summary, build_change_summary(outcome.updates)) if part)
            issues = ()

            self._events.log(RERUNNING_VALIDATION)
            self._events.status(RERUNNING_VALIDATION)
            result = await self._runner.run(token=token)
            verification = None
            if result.ok:
                self._events.log(PASSED_AFTER_AUTO_FIX)

        self._report(result, attempts)
        return LoopReport(
            validation=result,
            verification=verification,
            attempts=attempts,
            updates=tuple(applied),
            partial_apply=partial_apply,
        )

    async def _verify(
        self,
        instruction: str,
        change_summary: str,
        result: ValidationResult,
        *,
        token: CancellationToken | None,
    ) -> VerificationResult | None:
        if self._verifier is None or not self._settings.verify_after_validation:
            return None
        self._events.status("Verifying changes...")
        verification = await self._verifier.verify(
            instruction, change_summary, result.output, token=token
        )
        if verification is not None:
            self._events.log(format_verification(verification))
        return verification

    def _report(self, result: ValidationResult, attempts: int) -> None:
        if result.ok:
            if attempts == 0:
                self._events.log(VALIDATION_PASSED)
            self._events.status("Validation passed")
            return
        if result.output.strip():
            self._events.log(output_tail(result.output))
        self._events.log(STILL_FAILING if attempts else VALIDATION_FAILED)
        self._events.status("Validation failed")


async def run_validation_first_fix(
    loop: ValidationAutoFixLoop,
    runner: ValidationRunner,
    instruction: str,
    *,
    events: RunEventChannel,
    files: Sequence[str] = (),
    history: Sequence[HistoryItem] | None = None,
    token: CancellationToken | None = None,
) -> LoopReport:
    """``fix`` intent: validate first and only enter the fix loop on failure."""

    events.log("Running validation (fix mode)...")
    events.status("Running validation...")
    result = await runner.run(token=token)
    if result.ok:
        events.log(VALIDATION_ALREADY_PASSING)
        return LoopReport(validation=result)
    if loop.budget == 0:
        if result.output.strip():
            events.log(output_tail(result.output))
        events.log(AUTO_FIX_DISABLED)
        return LoopReport(validation=result)
    return await loop.run(
        instruction, files=files, validation=result, history=history, token=token
    )


__all__ = [
    "AUTO_FIX_DISABLED",
    "LoopReport",
    "PASSED_AFTER_AUTO_FIX",
    "STILL_FAILING",
    "VALIDATION_ALREADY_PASSING",
    "VALIDATION_FAILED",
    "VALIDATION_PASSED",
    "ValidationAutoFixLoop",
    "ValidationRunner",
    "build_fix_context",
    "output_tail",
    "run_validation_first_fix",
    "skipped_validation",
]
