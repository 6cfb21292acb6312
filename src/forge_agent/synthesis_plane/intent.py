"""
forge-agent — intent classification

File: src/forge_agent/synthesis_plane/intent.py
Last updated: 2026-10-19

Purpose
- Classify an instruction as ``edit``, ``question`` or ``fix`` before any other stage runs.

Functional requirements
- Two strategies behind one interface: a deterministic rule pass and a model-assisted
  pass that falls back to the rules on any failure.
- A model ``fix`` is accepted only when the instruction mentions validation failures.
- Naming concrete files together with an edit verb always forces ``edit``.

Non-functional requirements
- The rule pass is pure and has no I/O.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog

from forge_agent.domain.models import Intent
from forge_agent.knowledge_plane.file_search import extract_explicit_paths
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError, as_messages
from forge_agent.synthesis_plane.schemas import INTENT

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

HistoryItem = ChatMessage | Mapping[str, str]

DEFAULT_HISTORY_MAX_MESSAGES: Final[int] = 8
DEFAULT_HISTORY_MAX_CHARS: Final[int] = 8000

_EDIT_VERBS: Final[re.Pattern[str]] = re.compile(
    r"\b(edit|update|change|fix|refactor|remove|delete|add|implement|guard|default|modify|adjust|rename)\b"
)
_RETURN_FULL: Final[re.Pattern[str]] = re.compile(r"\breturn (the )?full file content(s)?\b")
_EXPLICIT_FILE_LIST: Final[re.Pattern[str]] = re.compile(
    r"\bedit these files\b|\bupdate these files\b|\bfiles:\s*-"
)
_FIX_PHRASING: Final[re.Pattern[str]] = re.compile(
    r"(resolve|fix|repair).*(error|errors|failing|failure|tests|test|build|lint|typecheck)"
)
_ACTION_VERBS: Final[re.Pattern[str]] = re.compile(
    r"(add|update|change|fix|refactor|remove|delete|create|implement|comment|comments|document)\b"
)
_WH_WORDS: Final[re.Pattern[str]] = re.compile(r"(^|\s)(how|what|why|where|when|which|who)\b")
_LISTING_LEAD: Final[re.Pattern[str]] = re.compile(r"^(show|list|count)\b")
_REVIEW_LEAD: Final[re.Pattern[str]] = re.compile(
    r"^(check|inspect|review|summarize|summary|describe)\b"
)
_SHORT_EDIT_VERBS: Final[re.Pattern[str]] = re.compile(r"\b(add|edit|fix|update|create|remove|delete)\b")
_CHATTY: Final[re.Pattern[str]] = re.compile(
    r"\b(my name is|my friend|i am|i'm|hello|hi|hey|thanks|thank you)\b"
)
_CODE_NOUNS: Final[re.Pattern[str]] = re.compile(
    r"\b(file|files|component|module|class|function|code)\b"
)
_BROAD_EDIT_VERBS: Final[re.Pattern[str]] = re.compile(
    r"\b(add|edit|fix|update|create|remove|delete|implement|refactor|rename)\b"
)
_VALIDATION_TERMS: Final[re.Pattern[str]] = re.compile(
    r"\b(error|errors|failing|failure|test|tests|build|lint|typecheck|compile|ci|pipeline)\b",
    re.IGNORECASE,
)
_READ_VERBS: Final[re.Pattern[str]] = re.compile(r"\b(show|open|read|view|display)\b")
_READ_TARGET: Final[re.Pattern[str]] = re.compile(
    r"\bfile|files|content\b|[a-z0-9_-]+\.(py|ts|tsx|js|jsx|json|md|css|html|toml|yaml|yml)\b"
)

INTENT_SYSTEM_PROMPT: Final[str] = (
    "Classify the user intent into one of: edit, question, fix. "
    'Return ONLY valid JSON in the form {"intent":"edit|question|fix","confidence":0-1}.'
)


def is_casual_chat_prompt(lowered: str) -> bool:
    """Small talk, greetings and prompts with no code noun or edit verb."""

    if not lowered:
        return True
    if len(lowered) <= 12 and not _SHORT_EDIT_VERBS.search(lowered):
        return True
    if _CHATTY.search(lowered):
        return True
    if not re.search(r"[/\\]", lowered) and not _CODE_NOUNS.search(lowered):
        if not _BROAD_EDIT_VERBS.search(lowered):
            return True
    return False


def classify_intent(instruction: str) -> Intent:
    """Deterministic rule pass; rules are checked in order and the first match wins."""

    trimmed = instruction.strip()
    lowered = trimmed.lower()
    if is_casual_chat_prompt(lowered):
        return Intent.QUESTION
    if _FIX_PHRASING.search(lowered):
        return Intent.FIX
    if _ACTION_VERBS.search(lowered):
        return Intent.EDIT
    if trimmed.endswith("?"):
        return Intent.QUESTION
    if _WH_WORDS.search(lowered):
        return Intent.QUESTION
    if _LISTING_LEAD.search(lowered) or _REVIEW_LEAD.search(lowered):
        return Intent.QUESTION
    if "in points" in lowered or "point form" in lowered:
        return Intent.QUESTION
    return Intent.EDIT


def is_validation_fix_request(instruction: str) -> bool:
    return _VALIDATION_TERMS.search(instruction) is not None


def is_explicit_edit_request(instruction: str) -> bool:
    """Concrete file paths plus an edit verb, a full-content request or a file list."""

    if not extract_explicit_paths(instruction):
        return False
    lowered = instruction.lower()
    return bool(
        _RETURN_FULL.search(lowered)
        or _EDIT_VERBS.search(lowered)
        or _EXPLICIT_FILE_LIST.search(lowered)
    )


def should_continue_after_validation_pass(instruction: str) -> bool:
    """In fix mode, keep editing after a clean validation when the user asked for edits."""

    if is_explicit_edit_request(instruction):
        return True
    lowered = instruction.lower()
    return bool(_EDIT_VERBS.search(lowered) or _RETURN_FULL.search(lowered))


def is_file_read_question(lowered: str) -> bool:
    if _READ_VERBS.search(lowered):
        return _READ_TARGET.search(lowered) is not None
    return "what is in" in lowered


def merge_chat_history(
    history: Sequence[HistoryItem] | None,
    messages: Sequence[HistoryItem],
    *,
    max_messages: int = DEFAULT_HISTORY_MAX_MESSAGES,
    max_chars: int = DEFAULT_HISTORY_MAX_CHARS,
) -> list[ChatMessage]:
    """Insert the most recent history turns before the final message.

    Turns are taken newest first until ``max_chars`` would be exceeded; a turn that
    does not fit is skipped and older, shorter turns may still be kept. System items
    in ``history`` are pinned context: always kept, after the leading system messages.
    """

    base = list(as_messages(messages))
    if not history:
        return base

    pinned: list[ChatMessage] = []
    usable: list[ChatMessage] = []
    for message in as_messages(history):
        if not message.content.strip():
            continue
        if message.role == "system":
            pinned.append(ChatMessage("system", message.content.strip()))
        elif message.role in {"user", "assistant"}:
            usable.append(message)
    tail = usable[-max_messages:] if max_messages > 0 else []

    kept: list[ChatMessage] = []
    used = 0
    for message in reversed(tail):
        content = message.content.strip()
        if max_chars > 0 and used + len(content) > max_chars:
            continue
        kept.insert(0, ChatMessage(message.role, content))
        used += len(content)

    if not base:
        return [*pinned, *kept]
    lead = 0
    while lead < len(base) - 1 and base[lead].role == "system":
        lead += 1
    return [*base[:lead], *pinned, *base[lead:-1], *kept, base[-1]]


@runtime_checkable
class IntentClassifier(Protocol):
    async def classify(
        self,
        instruction: str,
        history: Sequence[HistoryItem] | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> Intent: ...


class RuleBasedClassifier:
    """Regex rules only; never calls a model."""

    async def classify(
        self,
        instruction: str,
        history: Sequence[HistoryItem] | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> Intent:
        if token is not None:
            token.raise_if_cancelled()
        return classify_intent(instruction)


class ModelAssistedClassifier:
    """Ask the model first; fall back to the rules when its answer is unusable."""

    def __init__(
        self,
        client: JsonRetryClient,
        *,
        fallback: RuleBasedClassifier | None = None,
        max_retries: int | None = None,
        logger: Any | None = None,
    ) -> None:
        self._client = client
        self._fallback = fallback if fallback is not None else RuleBasedClassifier()
        self._max_retries = max_retries
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def classify(
        self,
        instruction: str,
        history: Sequence[HistoryItem] | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> Intent:
        messages = [ChatMessage.system(INTENT_SYSTEM_PROMPT), ChatMessage.user(instruction)]
        try:
            payload = await self._client.request_json(
                messages, INTENT, max_retries=self._max_retries, token=token, label="Intent"
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("intent_model_failed", error=str(exc))
            return await self._fallback.classify(instruction, history, token=token)

        raw = str(payload.get("intent", "")).strip().lower()
        try:
            intent = Intent(raw)
        except ValueError:
            self._logger.info("intent_model_invalid", value=raw)
            return await self._fallback.classify(instruction, history, token=token)

        if intent is Intent.FIX and not is_validation_fix_request(instruction):
            self._logger.info("intent_fix_coerced", instruction_chars=len(instruction))
            return Intent.EDIT
        return intent


def build_classifier(
    settings: ForgeSettings, client: JsonRetryClient | None, *, logger: Any | None = None
) -> IntentClassifier:
    if settings.intent_use_llm and client is not None:
        return ModelAssistedClassifier(
            client, max_retries=settings.json_max_retries, logger=logger
        )
    return RuleBasedClassifier()


async def determine_intent(
    classifier: IntentClassifier,
    instruction: str,
    history: Sequence[HistoryItem] | None = None,
    *,
    token: CancellationToken | None = None,
) -> Intent:
    """Classify, then apply the explicit-edit override."""

    intent = await classifier.classify(instruction, history, token=token)
    if intent is not Intent.EDIT and is_explicit_edit_request(instruction):
        return Intent.EDIT
    return intent


__all__ = [
    "DEFAULT_HISTORY_MAX_CHARS",
    "DEFAULT_HISTORY_MAX_MESSAGES",
    "HistoryItem",
    "INTENT_SYSTEM_PROMPT",
    "IntentClassifier",
    "ModelAssistedClassifier",
    "RuleBasedClassifier",
    "build_classifier",
    "classify_intent",
    "determine_intent",
    "is_casual_chat_prompt",
    "is_explicit_edit_request",
    "is_file_read_question",
    "is_validation_fix_request",
    "merge_chat_history",
    "should_continue_after_validation_pass",
]
