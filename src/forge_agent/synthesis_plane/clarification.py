"""
forge-agent — clarification gate

File: src/forge_agent/synthesis_plane/clarification.py
Last updated: 2026-10-19

Purpose
- Decide whether an edit instruction is under-specified, ask the user for details,
  optionally propose best-guess answers, and carry that state across turns.

Functional requirements
- States: idle -> questioning -> (proposing | blocked) -> resolved.
- The gate blocks under policy ``always``, or ``very-unclear`` with two or more
  questions, until the per-session round limit is reached.
- At the limit, explicit default assumptions are appended and the run proceeds,
  except under ``always`` with auto-assume disabled, which stays blocked.
- A reply to a pending proposal is accept, reject or free-text answers; a merged
  instruction skips the gate on its next pass and forces ``edit``.
- A numeric reply picks a pending disambiguation option.

Non-functional requirements
- Model failures during the ambiguity check are logged and treated as "proceed".
- Session state lives on the injected session object, never in module globals.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog

from forge_agent.synthesis_plane.intent import merge_chat_history
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError
from forge_agent.synthesis_plane.schemas import (
    CLARIFICATION,
    CLARIFICATION_SUGGESTION,
    DISAMBIGUATION,
)

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.control_plane.session import SessionContext
    from forge_agent.knowledge_plane.workspace import ProjectContext
    from forge_agent.synthesis_plane.intent import HistoryItem
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

ACCEPT_REPLY: Final[re.Pattern[str]] = re.compile(r"^(accept|yes|y|ok|okay|proceed|continue|run)$")
REJECT_REPLY: Final[re.Pattern[str]] = re.compile(r"^(reject|no|n|cancel|stop)$")

FILES_PREVIEW_LIMIT: Final[int] = 120
DISAMBIGUATION_FILES_LIMIT: Final[int] = 80
MAX_DISAMBIGUATION_OPTIONS: Final[int] = 4

NEED_CLARIFICATION: Final[str] = "Need clarification before editing:"
REPLY_WITH_ANSWERS: Final[str] = "Reply with your answers to continue."
REPLY_ACCEPT_OR_CORRECT: Final[str] = 'Reply "accept" to proceed, or reply with corrections/answers.'
USING_PROPOSED: Final[str] = "Using proposed answers. Continuing..."
RECEIVED_ANSWERS: Final[str] = "Received clarification answers. Continuing..."
PLEASE_ANSWER: Final[str] = "Please answer the clarification questions to continue:"
PICK_OPTION: Final[str] = "Pick one option by replying with its number:"

ClarificationDecision = Literal["accept", "reject", "answer"]


@dataclass(frozen=True, slots=True)
class Suggestion:
    answers: tuple[str, ...]
    plan: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PendingClarification:
    instruction: str
    questions: tuple[str, ...]
    rounds: int


@dataclass(frozen=True, slots=True)
class PendingProposal:
    instruction: str
    questions: tuple[str, ...]
    answers: tuple[str, ...]
    plan: tuple[str, ...]
    rounds: int


@dataclass(frozen=True, slots=True)
class DisambiguationOption:
    label: str
    instruction: str


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Outcome of the clarification gate for one instruction."""

    blocked: bool
    instruction: str
    messages: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()

    @classmethod
    def proceed(cls, instruction: str, messages: Sequence[str] = ()) -> GateDecision:
        return cls(False, instruction, tuple(messages))

    @classmethod
    def block(
        cls, instruction: str, messages: Sequence[str], questions: Sequence[str] = ()
    ) -> GateDecision:
        return cls(True, instruction, tuple(messages), tuple(questions))


@dataclass(frozen=True, slots=True)
class ResumeDecision:
    """How the next user turn interacts with pending session state.

    ``kind`` is ``none`` when nothing was pending, ``merged`` when the reply produced
    an amended instruction, ``blocked`` when the run must stop and wait again, and
    ``picked`` when a disambiguation option replaced the instruction.
    """

    kind: Literal["none", "merged", "blocked", "picked"]
    instruction: str
    messages: tuple[str, ...] = ()
    rounds: int = 0

    @property
    def skip_clarification(self) -> bool:
        return self.kind == "merged"

    @property
    def force_edit(self) -> bool:
        return self.kind == "merged"


def parse_clarification_decision(reply: str) -> ClarificationDecision:
    trimmed = reply.strip().lower()
    if not trimmed:
        return "answer"
    if ACCEPT_REPLY.match(trimmed):
        return "accept"
    if REJECT_REPLY.match(trimmed):
        return "reject"
    return "answer"


def format_clarification_followup(
    original_instruction: str, questions: Sequence[str], answers: str
) -> str:
    """Merge free-text answers into the instruction; blank lines and "copy" are dropped."""

    cleaned = "\n".join(
        line.strip()
        for line in answers.splitlines()
        if line.strip() and line.strip().lower() != "copy"
    ).strip()
    question_block = "\n".join(f"- {item}" for item in questions)
    return (
        f"{original_instruction}\n\nClarification questions:\n{question_block}\n\n"
        f"Clarification answers:\n{cleaned or '(no answer provided)'}"
    )


def format_clarification_proposal(
    original_instruction: str,
    questions: Sequence[str],
    answers: Sequence[str],
    plan: Sequence[str],
) -> str:
    question_block = "\n".join(f"- {item}" for item in questions)
    answer_block = "\n".join(f"- {item}" for item in answers) or "- (no proposed answers)"
    plan_block = "\n".join(f"- {item}" for item in plan) or "- (no plan)"
    return (
        f"{original_instruction}\n\nClarification questions:\n{question_block}\n\n"
        f"Proposed answers:\n{answer_block}\n\nProposed plan:\n{plan_block}"
    )


def build_default_assumptions(questions: Sequence[str], active_path: str | None) -> list[str]:
    """Keyword heuristics over unanswered questions."""

    joined = " ".join(questions).lower()
    assumptions: list[str] = []
    if "file" in joined:
        if active_path:
            assumptions.append(f"Apply changes to the active file ({active_path}).")
        else:
            assumptions.append("Apply changes to the most relevant files based on the prompt.")
    if "style" in joined:
        assumptions.append("Follow the existing code style in the file.")
    if "comments" in joined:
        assumptions.append("Add concise comments only where logic is non-obvious.")
    if not assumptions:
        assumptions.append("Proceed with minimal, safe changes based on the prompt.")
    return assumptions


def append_assumptions(instruction: str, assumptions: Sequence[str]) -> str:
    bullets = "\n".join(f"- {line}" for line in assumptions)
    return f"{instruction}\n\nAssumptions:\n{bullets}"


def parse_disambiguation_pick(reply: str, option_count: int) -> int | None:
    """Zero-based index for a reply that is exactly a valid 1-based option number."""

    trimmed = reply.strip()
    if not trimmed.isdigit():
        return None
    index = int(trimmed)
    if index < 1 or index > option_count:
        return None
    return index - 1


def _files_block(files: Sequence[str], limit: int) -> str:
    preview = "\n".join(files[:limit])
    truncated = "\n...(truncated)" if len(files) > limit else ""
    return f"Files (partial list):\n{preview}{truncated}"


def _clean_strings(values: object) -> list[str]:
    if not isinstance(values, list):
        return []
    return [text for text in (str(item).strip() for item in values) if text]


class ClarificationEngine:
    """Ambiguity check, answer suggestion and the cross-turn clarification gate."""

    def __init__(
        self,
        client: JsonRetryClient,
        settings: ForgeSettings,
        *,
        logger: Any | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def check(
        self,
        instruction: str,
        context: ProjectContext,
        *,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> list[str] | None:
        """Return clarification questions, or ``None`` when the instruction is clear."""

        max_questions = max(1, self._settings.clarify_max_questions)
        messages = merge_chat_history(
            history,
            self._check_messages(instruction, context, max_questions),
            max_messages=self._settings.chat_history_max_messages,
            max_chars=self._settings.chat_history_max_chars,
        )
        try:
            payload = await self._client.request_json(
                messages,
                CLARIFICATION,
                max_retries=self._settings.json_max_retries,
                token=token,
                label="Clarification",
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("clarification_check_failed", error=str(exc))
            return None

        if str(payload.get("kind", "")).lower() != "clarification":
            return None
        questions = _clean_strings(payload.get("questions"))[:max_questions]
        return questions or None

    async def suggest(
        self,
        instruction: str,
        questions: Sequence[str],
        context: ProjectContext,
        *,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> Suggestion | None:
        messages = merge_chat_history(
            history,
            self._suggest_messages(instruction, questions, context),
            max_messages=self._settings.chat_history_max_messages,
            max_chars=self._settings.chat_history_max_chars,
        )
        try:
            payload = await self._client.request_json(
                messages,
                CLARIFICATION_SUGGESTION,
                max_retries=self._settings.json_max_retries,
                token=token,
                label="Clarification suggestions",
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("clarification_suggest_failed", error=str(exc))
            return None
        return Suggestion(
            answers=tuple(_clean_strings(payload.get("answers"))),
            plan=tuple(_clean_strings(payload.get("plan"))),
        )

    async def propose_disambiguation(
        self,
        instruction: str,
        session: SessionContext,
        context: ProjectContext,
        *,
        token: CancellationToken | None = None,
    ) -> list[str] | None:
        """Store 2-4 numbered interpretations in the session; return the lines to show."""

        messages = [
            ChatMessage.system(
                "Propose 2-4 possible interpretations of the instruction as short options. "
                'Return ONLY valid JSON: {"options":[{"label":"...","instruction":"..."}]}.'
            ),
            ChatMessage.user(
                f"Instruction: {instruction}\n\nProject context:\n{context.prompt_json()}\n\n"
                + _files_block(context.files, DISAMBIGUATION_FILES_LIMIT)
            ),
        ]
        try:
            payload = await self._client.request_json(
                messages,
                DISAMBIGUATION,
                max_retries=self._settings.json_max_retries,
                token=token,
                label="Disambiguation",
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("disambiguation_failed", error=str(exc))
            return None

        options: list[DisambiguationOption] = []
        for raw in payload.get("options", []):
            if not isinstance(raw, dict):
                continue
            label = str(raw.get("label", "")).strip()
            if not label:
                continue
            detail = raw.get("instruction")
            text = detail.strip() if isinstance(detail, str) and detail.strip() else label
            options.append(DisambiguationOption(f"{len(options) + 1}. {label}", text))
            if len(options) >= MAX_DISAMBIGUATION_OPTIONS:
                break
        if len(options) < 2:
            return None
        session.set_pending_disambiguation(tuple(options))
        return [PICK_OPTION, *(option.label for option in options)]

    async def gate(
        self,
        instruction: str,
        session: SessionContext,
        context: ProjectContext,
        *,
        active_path: str | None = None,
        rounds: int = 0,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> GateDecision:
        settings = self._settings
        questions = await self.check(instruction, context, history=history, token=token)
        if not questions:
            return GateDecision.proceed(instruction)

        policy = settings.clarify_only_if
        should_block = policy == "always" or (policy == "very-unclear" and len(questions) >= 2)
        if not should_block:
            return GateDecision.proceed(instruction)

        max_rounds = max(1, settings.clarify_max_rounds)
        reached_limit = rounds >= max_rounds
        self._logger.info(
            "clarification_gate",
            questions=len(questions),
            policy=policy,
            rounds=rounds,
            max_rounds=max_rounds,
        )

        if not reached_limit:
            if settings.clarify_suggest_answers:
                suggestion = await self.suggest(
                    instruction, questions, context, history=history, token=token
                )
                if suggestion is not None and suggestion.answers:
                    return self._handle_suggestion(
                        instruction, questions, suggestion, session, rounds
                    )
                options = await self.propose_disambiguation(
                    instruction, session, context, token=token
                )
                if options:
                    return GateDecision.block(instruction, options, questions)
            return self._block_with_questions(instruction, questions, session, rounds + 1)

        messages = [f"Clarification limit reached ({max_rounds}). Proceeding with best effort."]
        if policy == "always" and not settings.clarify_auto_assume:
            return self._block_with_questions(instruction, questions, session, rounds)

        assumptions = build_default_assumptions(questions, active_path)
        messages.append("Ambiguous prompt detected. Proceeding with assumptions:")
        messages.extend(f"- {line}" for line in assumptions)
        return GateDecision.proceed(append_assumptions(instruction, assumptions), messages)

    def resume(self, reply: str, session: SessionContext) -> ResumeDecision:
        """Consume pending clarification, proposal or disambiguation for this reply."""

        proposal = session.pending_proposal
        if proposal is not None:
            session.clear_pending()
            decision = parse_clarification_decision(reply)
            if decision == "accept":
                merged = format_clarification_proposal(
                    proposal.instruction, proposal.questions, proposal.answers, proposal.plan
                )
                return ResumeDecision("merged", merged, (USING_PROPOSED,), proposal.rounds)
            if decision == "reject":
                session.set_pending_clarification(
                    PendingClarification(proposal.instruction, proposal.questions, proposal.rounds)
                )
                lines = [PLEASE_ANSWER, *(f"- {item}" for item in proposal.questions)]
                return ResumeDecision("blocked", proposal.instruction, tuple(lines), proposal.rounds)
            merged = format_clarification_followup(proposal.instruction, proposal.questions, reply)
            return ResumeDecision("merged", merged, (RECEIVED_ANSWERS,), proposal.rounds)

        pending = session.pending_clarification
        if pending is not None:
            session.clear_pending()
            merged = format_clarification_followup(pending.instruction, pending.questions, reply)
            return ResumeDecision("merged", merged, (RECEIVED_ANSWERS,), pending.rounds)

        options = session.pending_disambiguation
        if options:
            pick = parse_disambiguation_pick(reply, len(options))
            if pick is not None:
                chosen = options[pick]
                session.clear_pending()
                return ResumeDecision(
                    "picked", chosen.instruction, (f"Selected option {pick + 1}: {chosen.label}",)
                )
        return ResumeDecision("none", reply)

    def _handle_suggestion(
        self,
        instruction: str,
        questions: Sequence[str],
        suggestion: Suggestion,
        session: SessionContext,
        rounds: int,
    ) -> GateDecision:
        if self._settings.clarify_confirm_suggestions:
            session.set_pending_proposal(
                PendingProposal(
                    instruction=instruction,
                    questions=tuple(questions),
                    answers=suggestion.answers,
                    plan=suggestion.plan,
                    rounds=rounds + 1,
                )
            )
            lines = ["Proposed answers:", *(f"- {item}" for item in suggestion.answers)]
            if suggestion.plan:
                lines.append("Proposed plan:")
                lines.extend(f"- {step}" for step in suggestion.plan)
            lines.append(REPLY_ACCEPT_OR_CORRECT)
            return GateDecision.block(instruction, lines, questions)

        session.clear_pending()
        merged = format_clarification_proposal(
            instruction, questions, suggestion.answers, suggestion.plan
        )
        return GateDecision.proceed(merged, (USING_PROPOSED,))

    def _block_with_questions(
        self,
        instruction: str,
        questions: Sequence[str],
        session: SessionContext,
        rounds: int,
    ) -> GateDecision:
        session.set_pending_clarification(
            PendingClarification(instruction, tuple(questions), rounds)
        )
        lines = [NEED_CLARIFICATION, *(f"- {item}" for item in questions), REPLY_WITH_ANSWERS]
        return GateDecision.block(instruction, lines, questions)

    def _check_messages(
        self, instruction: str, context: ProjectContext, max_questions: int
    ) -> list[ChatMessage]:
        return [
            ChatMessage.system(
                "You are checking whether a coding instruction is ambiguous. "
                'If it is clear, return {"kind":"proceed"}. '
                'If it is ambiguous, return {"kind":"clarification","questions":[...]} '
                f"with up to {max_questions} questions. "
                "Err on the side of asking questions if any key requirements are missing "
                "(files, stack, scope, constraints, acceptance). "
                "If the instruction is to create a website or UI, ask about stack, "
                "layout/sections, content, style/tone, and assets. "
                "Return ONLY valid JSON."
            ),
            ChatMessage.user(
                f"Instruction: {instruction}\n\nProject context:\n{context.prompt_json()}\n\n"
                + _files_block(context.files, FILES_PREVIEW_LIMIT)
            ),
        ]

    def _suggest_messages(
        self, instruction: str, questions: Sequence[str], context: ProjectContext
    ) -> list[ChatMessage]:
        question_block = "\n".join(f"- {item}" for item in questions)
        return [
            ChatMessage.system(
                "You are proposing best-guess answers to clarification questions for a coding task. "
                'Return ONLY valid JSON in the form {"answers":[...],"plan":[...]}. '
                "Answers must align with the questions in order. "
                "If information is missing, make reasonable defaults and label them as assumptions."
            ),
            ChatMessage.user(
                f"Instruction: {instruction}\n\nClarification questions:\n{question_block}\n\n"
                f"Project context:\n{context.prompt_json()}\n\n"
                + _files_block(context.files, FILES_PREVIEW_LIMIT)
            ),
        ]


__all__ = [
    "ClarificationDecision",
    "ClarificationEngine",
    "DisambiguationOption",
    "GateDecision",
    "PendingClarification",
    "PendingProposal",
    "ResumeDecision",
    "Suggestion",
    "append_assumptions",
    "build_default_assumptions",
    "format_clarification_followup",
    "format_clarification_proposal",
    "parse_clarification_decision",
    "parse_disambiguation_pick",
]
