"""
forge-agent — run coordinator

File: src/forge_agent/control_plane/coordinator.py
Last updated: 2026-10-19

Purpose
- Sequence one instruction through resume -> classify -> (question | fix | edit),
  where edit is clarify -> target -> update -> summarize -> confirm -> apply ->
  validate/fix -> verify -> git -> human summary, then record the run in memory.

Functional requirements
- Starting a run aborts the session's previous run; ``cancel()`` aborts the current one.
- Cancellation is re-checked after every suspension point and is not an error.
- Stage-local failures become a log line naming the stage and an ``error`` outcome.
- Every run ends with "Done in ..." unless it was cancelled.

Non-functional requirements
- Pipeline state never depends on event subscribers.
- Only unexpected exceptions (programming errors) escape ``run``.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog

from forge_agent.control_plane.collaborators import GitError
from forge_agent.control_plane.session import SessionContext
from forge_agent.domain.models import (
    FileTarget,
    FileUpdate,
    Intent,
    MemoryEntry,
    RunOutcome,
    TraceEntry,
    ValidationResult,
    VerificationResult,
)
from forge_agent.knowledge_plane.memory import MemoryOptions, MemoryStore
from forge_agent.knowledge_plane.retrieval import RelevanceRanker
from forge_agent.knowledge_plane.targeting import (
    FileTargetResolver,
    PathPolicyError,
    should_allow_new_files,
)
from forge_agent.knowledge_plane.workspace import ProjectContext, harvest_project_context
from forge_agent.observability.events import RunEvent, RunEventChannel, RunEventKind
from forge_agent.observability.logging import correlation_scope
from forge_agent.synthesis_plane.clarification import ClarificationEngine
from forge_agent.synthesis_plane.intent import build_classifier, determine_intent
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ProviderError
from forge_agent.synthesis_plane.questions import QuestionAnswerer
from forge_agent.synthesis_plane.summaries import SummaryWriter
from forge_agent.synthesis_plane.updates import (
    DiffShapedOutputError,
    UpdateOrchestrator,
    apply_file_updates,
    build_change_summary,
    publish_update_previews,
)
from forge_agent.verification_plane.validation import (
    ValidationAutoFixLoop,
    ValidationRunner,
    run_validation_first_fix,
)
from forge_agent.verification_plane.verifier import Verifier

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.control_plane.collaborators import (
        ConfirmationUI,
        FileSelectionUI,
        ValidationChoiceUI,
        VersionControl,
    )
    from forge_agent.control_plane.session import RunState
    from forge_agent.synthesis_plane.intent import HistoryItem, IntentClassifier
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken
    from forge_agent.verification_plane.commands import CommandExecutor

ReportOutcome = Literal["completed", "cancelled", "error", "blocked", "no_changes"]

NO_CHANGES: Final[str] = "No changes produced."
CHANGES_NOT_APPLIED: Final[str] = "Changes not applied."
RUN_STOPPED: Final[str] = "Run stopped."
NO_SINGLE_TARGET: Final[str] = "No target file found. Name a file in the instruction or pass an active file."
COMMIT_SUBJECT_MAX_CHARS: Final[int] = 72
MEMORY_SUMMARY_MAX_CHARS: Final[int] = 600

_RECOVERABLE: Final[tuple[type[BaseException], ...]] = (
    ProviderError,
    JsonParseError,
    DiffShapedOutputError,
    PathPolicyError,
    GitError,
    OSError,
)
_MEMORY_OUTCOMES: Final[dict[str, RunOutcome]] = {
    "completed": RunOutcome.COMPLETED,
    "cancelled": RunOutcome.CANCELLED,
    "error": RunOutcome.ERROR,
}


class StageError(RuntimeError):
    """A recoverable failure inside one named pipeline stage."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


@dataclass(frozen=True, slots=True)
class RunReport:
    """What a caller needs to render or test the outcome of one run."""

    outcome: ReportOutcome
    intent: Intent | None = None
    files_changed: tuple[str, ...] = ()
    validation: ValidationResult | None = None
    verification: VerificationResult | None = None
    messages: tuple[str, ...] = ()
    elapsed_ms: int = 0
    partial_apply: bool = False
    answer: str | None = None
    run_id: str = ""
    trace: tuple[TraceEntry, ...] = ()
    error_stage: str | None = None
    error: BaseException | None = None

    @property
    def validation_failed(self) -> bool:
        return self.validation is not None and not self.validation.ok


@dataclass(slots=True)
class _Progress:
    instruction: str
    intent: Intent | None = None
    validation: ValidationResult | None = None
    verification: VerificationResult | None = None
    partial_apply: bool = False
    answer: str | None = None
    summary: str = ""
    error: StageError | None = None
    messages: list[str] = field(default_factory=list)


def format_duration(elapsed_ms: int) -> str:
    total_seconds = max(0, elapsed_ms) // 1000
    minutes, seconds = divmod(total_seconds, 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def build_commit_message(instruction: str) -> str:
    first_line = next((line.strip() for line in instruction.splitlines() if line.strip()), "update files")
    subject = first_line[: COMMIT_SUBJECT_MAX_CHARS - 7].rstrip()
    return f"forge: {subject}"


def _confirm_message(count: int) -> str:
    noun = "file" if count == 1 else "files"
    return f"Apply changes to {count} {noun}?"


class RunCoordinator:
    """Owns the per-run pipeline and the session it runs in."""

    def __init__(
        self,
        root: str | os.PathLike[str],
        settings: ForgeSettings,
        client: JsonRetryClient,
        *,
        session: SessionContext | None = None,
        events: RunEventChannel | None = None,
        classifier: IntentClassifier | None = None,
        picker: FileSelectionUI | None = None,
        confirmer: ConfirmationUI | None = None,
        validation_chooser: ValidationChoiceUI | None = None,
        version_control: VersionControl | None = None,
        executor: CommandExecutor | None = None,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(root)
        self._settings = settings
        self._client = client
        self._session = session if session is not None else SessionContext()
        self._events = events if events is not None else RunEventChannel()
        self._confirmer = confirmer
        self._version_control = version_control
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._classifier = classifier or build_classifier(settings, client, logger=logger)
        ranker = RelevanceRanker(client, self._root, max_retries=settings.json_max_retries, logger=logger)
        self._resolver = FileTargetResolver(
            self._root, settings, client=client, picker=picker, ranker=ranker, logger=logger
        )
        self._clarifier = ClarificationEngine(client, settings, logger=logger)
        self._orchestrator = UpdateOrchestrator(
            client, settings, self._resolver, events=self._events, logger=logger
        )
        self._summaries = SummaryWriter(client, logger=logger)
        self._answerer = QuestionAnswerer(
            client,
            self._root,
            ranker=ranker if settings.retrieval_rank_enabled else None,
            history_max_messages=settings.chat_history_max_messages,
            history_max_chars=settings.chat_history_max_chars,
            logger=logger,
        )
        self._memory = (
            MemoryStore(self._root, MemoryOptions.from_settings(settings), client=client, logger=logger)
            if settings.enable_memory
            else None
        )
        self._runner = ValidationRunner(
            self._root,
            settings,
            events=self._events,
            executor=executor,
            chooser=validation_chooser,
            trace=client.trace,
            logger=logger,
        )
        self._loop = ValidationAutoFixLoop(
            self._runner,
            self._orchestrator,
            settings,
            events=self._events,
            verifier=Verifier(client, max_retries=settings.json_max_retries, logger=logger),
            logger=logger,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def session(self) -> SessionContext:
        return self._session

    @property
    def events(self) -> RunEventChannel:
        return self._events

    @property
    def memory(self) -> MemoryStore | None:
        return self._memory

    @property
    def validation_runner(self) -> ValidationRunner:
        return self._runner

    def cancel(self) -> bool:
        """Abort the active run, if any."""

        stopped = self._session.cancel_active()
        if stopped:
            self._events.status("Stopped")
            self._events.log(RUN_STOPPED)
            self._logger.info("run_stopped", session_id=self._session.session_id)
        return stopped

    async def run(
        self,
        instruction: str,
        *,
        active_file: str | None = None,
        history: Sequence[HistoryItem] | None = None,
    ) -> RunReport:
        state = self._session.begin_run()
        progress = _Progress(instruction=instruction)
        subscription = self._events.subscribe(
            RunEventKind.LOG, lambda event: _collect(progress.messages, event)
        )
        trace = self._client.trace
        if trace is not None and self._settings.trace_enabled:
            trace.start()
        if history is None:
            history = list(self._session.history)

        self._logger.info("run_started", run_id=state.run_id, session_id=self._session.session_id)
        try:
            with correlation_scope(run_id=state.run_id, session_id=self._session.session_id):
                try:
                    outcome = await self._execute(state, progress, active_file, history)
                except asyncio.CancelledError:
                    if not state.token.is_cancelled:
                        raise
                    outcome = "cancelled"
                    self._events.status("Cancelled")
                except StageError as exc:
                    outcome = "error"
                    progress.error = exc
                    self._events.log(f"{exc.stage.capitalize()} failed: {exc.cause}")
                    self._events.status("Error")
                    self._logger.warning(
                        "run_stage_failed", stage=exc.stage, error_type=type(exc.cause).__name__
                    )
                await self._remember(state, progress, outcome)
                if not state.token.is_cancelled:
                    self._events.log(f"Done in {format_duration(state.elapsed_ms)}.")
                    self._events.status("Done")
        finally:
            self._events.unsubscribe(subscription)
            self._session.end_run(state)

        entries = trace.stop() if trace is not None and trace.active else ()
        self._session.remember_turn(instruction, progress.answer or progress.summary or None)
        self._logger.info(
            "run_finished", run_id=state.run_id, outcome=outcome, elapsed_ms=state.elapsed_ms
        )
        return RunReport(
            outcome=outcome,
            intent=progress.intent,
            files_changed=state.files_changed,
            validation=progress.validation,
            verification=progress.verification,
            messages=tuple(progress.messages),
            elapsed_ms=state.elapsed_ms,
            partial_apply=progress.partial_apply,
            answer=progress.answer,
            run_id=state.run_id,
            trace=entries,
            error_stage=progress.error.stage if progress.error is not None else None,
            error=progress.error.cause if progress.error is not None else None,
        )

    async def _execute(
        self,
        state: RunState,
        progress: _Progress,
        active_file: str | None,
        history: Sequence[HistoryItem],
    ) -> ReportOutcome:
        token = state.token
        events = self._events
        events.status("Starting...")

        resume = self._clarifier.resume(progress.instruction, self._session)
        for message in resume.messages:
            events.log(message)
        if resume.kind == "blocked":
            events.status("Waiting for clarification")
            return "blocked"
        instruction = resume.instruction
        progress.instruction = instruction
        if resume.kind == "merged":
            state.constraints.append("Clarification answers merged into the instruction.")

        if active_file:
            self._session.last_active_file = active_file
        active = active_file or self._session.last_active_file
        context = harvest_project_context(self._root, active_file=active)

        events.status("Classifying...")
        with self._stage("classification"):
            intent = await determine_intent(self._classifier, instruction, history, token=token)
        if resume.force_edit:
            intent = Intent.EDIT
        progress.intent = intent
        state.decisions.append(f"Intent: {intent.value}")
        events.log(f"Intent: {intent.value}")

        if intent is Intent.QUESTION:
            events.status("Answering...")
            with self._stage("question"):
                progress.answer = await self._answerer.answer(
                    instruction, context, events, history=history, token=token
                )
            progress.summary = progress.answer or ""
            return "completed"

        if intent is Intent.FIX:
            with self._stage("validation"):
                loop_report = await run_validation_first_fix(
                    self._loop,
                    self._runner,
                    instruction,
                    events=events,
                    files=context.files,
                    history=history,
                    token=token,
                )
            state.applied_updates.extend(loop_report.updates)
            progress.partial_apply = loop_report.partial_apply
            progress.validation = loop_report.validation
            progress.verification = loop_report.verification
            progress.summary = build_change_summary(loop_report.updates)
            return "completed"

        return await self._edit(
            state, progress, context, active, history, skip_clarification=resume.skip_clarification
        )

    async def _edit(
        self,
        state: RunState,
        progress: _Progress,
        context: ProjectContext,
        active: str | None,
        history: Sequence[HistoryItem],
        *,
        skip_clarification: bool = False,
    ) -> ReportOutcome:
        token = state.token
        events = self._events
        settings = self._settings
        instruction = progress.instruction

        if settings.clarify_before_edit and not skip_clarification:
            events.status("Checking clarity...")
            with self._stage("clarification"):
                decision = await self._clarifier.gate(
                    instruction,
                    self._session,
                    context,
                    active_path=active,
                    history=history,
                    token=token,
                )
            for message in decision.messages:
                events.log(message)
            if decision.blocked:
                events.status("Waiting for clarification")
                return "blocked"
            if decision.instruction != instruction:
                state.constraints.extend(
                    line[2:] for line in decision.messages if line.startswith("- ")
                )
            instruction = decision.instruction
            progress.instruction = instruction

        memory_context = self._memory.load_context() if self._memory is not None else None
        update_history: list[HistoryItem] = list(history)
        if memory_context:
            update_history.insert(0, {"role": "system", "content": f"Project memory:\n{memory_context}"})

        if settings.plan_summary_enabled:
            events.status("Planning...")
            plan = await self._summaries.summarize_plan(
                instruction, context, memory_context=memory_context, history=history, token=token
            )
            if plan:
                events.log("Plan:")
                for step in plan:
                    events.log(f"- {step}")
                state.decisions.extend(plan)

        with self._stage("update"):
            updates = await self._request_updates(state, instruction, context, active, update_history)
        if updates is None:
            return "no_changes"
        changed = [update for update in updates if update.is_change()]
        if not changed:
            events.log(NO_CHANGES)
            return "no_changes"

        publish_update_previews(events, changed)
        if settings.action_purpose_enabled:
            await self._summaries.explain_action_purpose(
                instruction, [update.path for update in changed], events=events, token=token
            )

        if not settings.skip_confirmations and self._confirmer is not None:
            events.status("Waiting for confirmation")
            approved = await self._confirmer.confirm(_confirm_message(len(changed)))
            token.raise_if_cancelled()
            if not approved:
                events.log(CHANGES_NOT_APPLIED)
                return "no_changes"

        events.status("Applying changes...")
        report = apply_file_updates(changed, token=token, logger=self._logger)
        written = set(report.written)
        state.applied_updates.extend(update for update in changed if update.path in written)
        if not report.ok:
            progress.partial_apply = report.partial
            if report.partial:
                events.log(f"Partially applied: {', '.join(report.written)}.")
            raise StageError("apply", OSError(report.error or f"could not write {report.failed}"))
        events.log(f"Applied changes to {len(report.written)} file(s).")

        change_summary = build_change_summary(state.applied_updates)
        with self._stage("validation"):
            loop_report = await self._loop.run(
                instruction,
                files=context.files,
                change_summary=change_summary,
                history=history,
                token=token,
            )
        state.applied_updates.extend(loop_report.updates)
        progress.partial_apply = progress.partial_apply or loop_report.partial_apply
        progress.validation = loop_report.validation
        progress.verification = loop_report.verification
        change_summary = build_change_summary(state.applied_updates)
        progress.summary = change_summary

        if settings.enable_git_workflow and loop_report.passed and self._version_control is not None:
            events.status("Git workflow...")
            with self._stage("git"):
                await self._git_workflow(state, instruction)

        if settings.human_summary_enabled:
            events.status("Summarizing...")
            summary = await self._summaries.summarize_changes(
                instruction, change_summary, history=history, token=token
            )
            if summary:
                events.stream_start("summary")
                events.stream_append(summary)
                events.stream_end()
                progress.summary = summary
        return "completed"

    async def _request_updates(
        self,
        state: RunState,
        instruction: str,
        context: ProjectContext,
        active: str | None,
        history: Sequence[HistoryItem],
    ) -> list[FileUpdate] | None:
        token = state.token
        if self._settings.enable_multi_file:
            batch = await self._orchestrator.request_multi_file_update(
                instruction,
                context.files,
                session=self._session,
                active_file=active,
                history=history,
                token=token,
            )
            if batch.status == "cancelled":
                return None
            state.decisions.append("Targets: " + ", ".join(batch.requested))
            return list(batch.updates)

        target = await self._single_target(instruction, context, active, token=state.token)
        if target is None:
            self._events.log(NO_SINGLE_TARGET)
            return None
        state.decisions.append(f"Target: {target.path}")
        update = await self._orchestrator.request_single_file_update(
            target, instruction, history=history, token=token
        )
        return [update] if update is not None else []

    async def _single_target(
        self,
        instruction: str,
        context: ProjectContext,
        active: str | None,
        *,
        token: CancellationToken | None,
    ) -> FileTarget | None:
        if active:
            targets, rejected = self._resolver.guard([active])
            for note in rejected:
                self._events.log(note)
            if targets:
                return targets[0]
        resolution = await self._resolver.resolve(
            instruction,
            context.files,
            session=self._session,
            allow_new_files=should_allow_new_files(instruction),
            token=token,
        )
        for message in resolution.messages:
            self._events.log(message)
        return resolution.targets[0] if resolution.targets else None

    async def _git_workflow(self, state: RunState, instruction: str) -> None:
        assert self._version_control is not None
        token = state.token
        vcs = self._version_control
        interactive = not self._settings.skip_confirmations and self._confirmer is not None

        if interactive and not await self._ask("Start Git workflow (commit, optional push)?", state):
            self._events.log("Git workflow skipped.")
            return
        if not await vcs.has_changes(token=token):
            self._events.log("No changes to commit.")
            return
        stat = await vcs.diff_stat(token=token)
        if stat:
            self._events.log("Diff summary:")
            self._events.log(stat)

        message = build_commit_message(instruction)
        if interactive and not await self._ask(f'Commit with message: "{message}"?', state):
            self._events.log("Commit cancelled.")
            return
        await vcs.commit(state.files_changed, message, token=token)
        self._events.log("Commit created.")
        if interactive and await self._ask("Push to remote?", state):
            await vcs.push(token=token)
            self._events.log("Pushed to remote.")

    async def _ask(self, message: str, state: RunState) -> bool:
        assert self._confirmer is not None
        approved = await self._confirmer.confirm(message)
        state.token.raise_if_cancelled()
        return approved

    async def _remember(self, state: RunState, progress: _Progress, outcome: ReportOutcome) -> None:
        memory_outcome = _MEMORY_OUTCOMES.get(outcome)
        if self._memory is None or memory_outcome is None:
            return
        validation = progress.validation
        verification = progress.verification
        entry = MemoryEntry(
            instruction=progress.instruction,
            intent=progress.intent.value if progress.intent is not None else "unknown",
            outcome=memory_outcome,
            files_changed=state.files_changed,
            summary=progress.summary[:MEMORY_SUMMARY_MAX_CHARS],
            decisions=tuple(state.decisions),
            constraints=tuple(state.constraints),
            validation=(
                f"{validation.label}: {'pass' if validation.ok else 'fail'}"
                if validation is not None and validation.label
                else None
            ),
            verification=(
                f"{verification.status.value} ({verification.confidence.value})"
                if verification is not None
                else None
            ),
        )
        # A cancelled token would abort compaction.
        token = None if memory_outcome is RunOutcome.CANCELLED else state.token
        try:
            await self._memory.append(entry, token=token)
        except asyncio.CancelledError:
            if not state.token.is_cancelled:
                raise
            self._logger.info("memory_append_cancelled", run_id=state.run_id)

    @contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        try:
            yield
        except _RECOVERABLE as exc:
            raise StageError(name, exc) from exc


def _collect(messages: list[str], event: RunEvent) -> None:
    messages.append(event.text)


__all__ = [
    "CHANGES_NOT_APPLIED",
    "NO_CHANGES",
    "NO_SINGLE_TARGET",
    "RUN_STOPPED",
    "RunCoordinator",
    "RunReport",
    "StageError",
    "build_commit_message",
    "format_duration",
]
