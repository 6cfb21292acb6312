from __future__ import annotations

import pytest

from forge_agent.synthesis_plane.providers import ChatMessage
from forge_agent.synthesis_plane.providers.token_budget import (
    TRIMMED_MARKER,
    estimate_message_tokens,
    estimate_messages_tokens,
    parse_token_limit_from_error,
    trim_messages_to_token_budget,
)


def test_estimates_use_four_chars_per_token_plus_overhead() -> None:
    assert estimate_message_tokens(ChatMessage.user("")) == 6
    assert estimate_message_tokens(ChatMessage.user("abcde")) == 8
    assert estimate_messages_tokens([ChatMessage.user("abcd"), ChatMessage.system("ab")]) == 14


def test_messages_within_budget_are_untouched() -> None:
    messages = (ChatMessage.system("rules"), ChatMessage.user("hello"), ChatMessage.assistant("hi"))

    result = trim_messages_to_token_budget(messages, 1000)

    assert result.messages == messages
    assert not result.trimmed
    assert result.estimated_tokens == estimate_messages_tokens(messages)


def test_oldest_non_system_messages_are_dropped_first() -> None:
    old = ChatMessage.user("a" * 3576)
    new = ChatMessage.user("b" * 3576)

    result = trim_messages_to_token_budget((old, new), 1000)

    assert result.messages == (new,)
    assert result.trimmed
    assert result.estimated_tokens == 900


def test_partly_fitting_message_is_cut_and_marked() -> None:
    old = ChatMessage.user("a" * 2000)
    new = ChatMessage.assistant("b" * 400)

    result = trim_messages_to_token_budget((old, new), 500)

    # 450 budget; the newest message keeps 106 tokens and the older one gets the rest.
    assert result.messages[1] == new
    assert result.messages[0].role == "user"
    assert result.messages[0].content == "a" * (344 * 4) + TRIMMED_MARKER


def test_system_messages_are_capped_at_their_share_and_stay_first() -> None:
    system = ChatMessage.system("s" * 4000)
    user = ChatMessage.user("u" * 40)

    result = trim_messages_to_token_budget((user, system), 1000)

    assert [message.role for message in result.messages] == ["system", "user"]
    assert result.messages[0].content == "s" * 1260 + TRIMMED_MARKER
    assert result.messages[1] == user
    assert result.trimmed


def test_budget_has_a_floor() -> None:
    messages = (ChatMessage.user("x" * 400),)
    result = trim_messages_to_token_budget(messages, 10)
    assert result.messages == messages
    assert not result.trimmed


@pytest.mark.parametrize(
    ("detail", "expected"),
    [
        ("This model's maximum context length is 8192 tokens. However, you requested 9000.", 8192),
        ("Maximum Context Length is  128000", 128000),
        ("rate limited", None),
        ("", None),
    ],
)
def test_parse_token_limit_from_error(detail: str, expected: int | None) -> None:
    assert parse_token_limit_from_error(detail) == expected
