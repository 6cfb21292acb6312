"""
forge-agent — approximate input token budgeting for chat requests

File: src/forge_agent/synthesis_plane/providers/token_budget.py
Last updated: 2026-10-19

Purpose
- Keep a request's messages under a model's input limit before sending, and
  recover the limit from a provider's "maximum context length" rejection.

Functional requirements
- Token counts are estimated as ``ceil(chars / 4)`` plus a fixed per-message overhead.
- The working budget is 90% of the limit, never below 200 tokens.
- System messages keep their order and take at most 35% of the budget; the
  remaining budget is filled with the newest non-system messages, so the oldest
  are dropped first. A message that only partly fits is cut and marked.

Non-functional requirements
- Deterministic; no tokenizer dependency.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from forge_agent.synthesis_plane.providers.base import ChatMessage

CHARS_PER_TOKEN: Final[int] = 4
MESSAGE_OVERHEAD_TOKENS: Final[int] = 6
MIN_BUDGET_TOKENS: Final[int] = 200
BUDGET_RATIO: Final[float] = 0.9
SYSTEM_SHARE: Final[float] = 0.35
MIN_TRIMMED_CHARS: Final[int] = 32
TRIMMED_MARKER: Final[str] = "\n... (trimmed)"

_CONTEXT_LIMIT_PATTERN = re.compile(r"maximum context length is\s+(\d+)", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class BudgetResult:
    messages: tuple[ChatMessage, ...]
    trimmed: bool
    estimated_tokens: int


def estimate_message_tokens(message: ChatMessage, ratio: int = CHARS_PER_TOKEN) -> int:
    return math.ceil(len(message.content) / ratio) + MESSAGE_OVERHEAD_TOKENS


def estimate_messages_tokens(
    messages: Sequence[ChatMessage], ratio: int = CHARS_PER_TOKEN
) -> int:
    return sum(estimate_message_tokens(message, ratio) for message in messages)


def trim_messages_to_token_budget(
    messages: Sequence[ChatMessage], max_tokens: int, ratio: int = CHARS_PER_TOKEN
) -> BudgetResult:
    """Fit ``messages`` into ``max_tokens`` (approximate)."""

    budget = max(MIN_BUDGET_TOKENS, math.floor(max_tokens * BUDGET_RATIO))
    system = [message for message in messages if message.role == "system"]
    others = [message for message in messages if message.role != "system"]

    system_budget = min(
        estimate_messages_tokens(system, ratio), math.floor(budget * SYSTEM_SHARE)
    )
    kept_system = _fit_from_start(system, system_budget, ratio)
    remaining = max(0, budget - estimate_messages_tokens(kept_system, ratio))
    kept_others = _fit_from_end(others, remaining, ratio)

    combined = (*kept_system, *kept_others)
    estimated = estimate_messages_tokens(combined, ratio)
    trimmed = combined != tuple(messages) or estimated > budget
    return BudgetResult(messages=combined, trimmed=trimmed, estimated_tokens=estimated)


def parse_token_limit_from_error(detail: str) -> int | None:
    """Return N from "maximum context length is N", if present."""

    match = _CONTEXT_LIMIT_PATTERN.search(detail or "")
    if match is None:
        return None
    return int(match.group(1))


def _fit_from_start(
    messages: Sequence[ChatMessage], budget: int, ratio: int
) -> list[ChatMessage]:
    if budget <= 0:
        return []
    kept: list[ChatMessage] = []
    used = 0
    for message in messages:
        tokens = estimate_message_tokens(message, ratio)
        if used + tokens <= budget:
            kept.append(message)
            used += tokens
            continue
        if budget - used > 0:
            kept.append(_cut(message, budget - used, ratio))
        break
    return kept


def _fit_from_end(
    messages: Sequence[ChatMessage], budget: int, ratio: int
) -> list[ChatMessage]:
    if budget <= 0:
        return []
    kept: list[ChatMessage] = []
    used = 0
    for message in reversed(messages):
        tokens = estimate_message_tokens(message, ratio)
        if used + tokens <= budget:
            kept.append(message)
            used += tokens
            continue
        if budget - used > 0:
            kept.append(_cut(message, budget - used, ratio))
        break
    kept.reverse()
    return kept


def _cut(message: ChatMessage, available_tokens: int, ratio: int) -> ChatMessage:
    max_chars = max(MIN_TRIMMED_CHARS, available_tokens * ratio)
    if len(message.content) <= max_chars:
        return message
    return replace(message, content=message.content[:max_chars] + TRIMMED_MARKER)


__all__ = [
    "BudgetResult",
    "CHARS_PER_TOKEN",
    "MESSAGE_OVERHEAD_TOKENS",
    "TRIMMED_MARKER",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "parse_token_limit_from_error",
    "trim_messages_to_token_budget",
]
