"""
Unit tests for synthesis-plane provider abstractions and the OpenAI adapter.

Coverage:
- Shared request/message models and the error taxonomy.
- Deterministic bounded backoff behavior.
- OpenAI adapter payload shape, response normalization and retry classification.
- Input token budget and the context-limit retry.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from types import SimpleNamespace

import pytest

from forge_agent.config.schema import ProviderSettings
from forge_agent.synthesis_plane.providers import (
    BackoffConfig,
    ChatMessage,
    CompletionRequest,
    OpenAIProvider,
    ProviderAuthenticationError,
    ProviderContextLengthError,
    ProviderError,
    ProviderResponseError,
    ProviderUnavailableError,
    StructuredOutput,
    as_messages,
    build_provider,
    compute_backoff_delay,
    is_retryable_error,
)
from forge_agent.synthesis_plane.providers.token_budget import TRIMMED_MARKER


@dataclass(slots=True)
class _ScriptedOpenAIResponses:
    outcomes: deque[object | Exception]
    calls: list[dict[str, object]] = field(default_factory=list)

    async def create(self, **kwargs: object) -> object:
        self.calls.append(dict(kwargs))
        if not self.outcomes:
            raise RuntimeError("scripted openai outcomes exhausted")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@dataclass(slots=True)
class _FakeOpenAIClient:
    responses: _ScriptedOpenAIResponses


@dataclass(slots=True)
class _SleepRecorder:
    calls: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RateLimitError(Exception):
    status_code = 429


class AuthenticationError(Exception):
    status_code = 401


class ContextLengthError(Exception):
    status_code = 413


def _provider(
    *outcomes: object, max_retries: int = 2
) -> tuple[OpenAIProvider, _ScriptedOpenAIResponses, _SleepRecorder]:
    responses = _ScriptedOpenAIResponses(deque(outcomes))
    sleeper = _SleepRecorder()
    provider = OpenAIProvider(
        model="gpt-test",
        client=_FakeOpenAIClient(responses),
        backoff=BackoffConfig(max_retries=max_retries, initial_delay_seconds=0.5),
        sleep=sleeper,
    )
    return provider, responses, sleeper


def _request(structured: StructuredOutput | None = None) -> CompletionRequest:
    return CompletionRequest(
        (ChatMessage.system("be terse"), ChatMessage.user("hi")), structured_output=structured
    )


def test_message_models_validate() -> None:
    with pytest.raises(ValueError):
        ChatMessage("tool", "x")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        CompletionRequest(())
    assert as_messages([{"role": "assistant", "content": "ok"}]) == (ChatMessage.assistant("ok"),)


def test_error_taxonomy_is_machine_readable() -> None:
    error = ProviderAuthenticationError("missing   key", provider="openai", http_status=401)
    assert error.code == "auth"
    assert not error.retryable
    assert str(error) == "provider=openai code=auth http_status=401 detail=missing key"
    assert not is_retryable_error(error)
    assert not is_retryable_error(ValueError("x"))


def test_backoff_is_bounded() -> None:
    config = BackoffConfig(max_retries=5, initial_delay_seconds=1.0, max_delay_seconds=3.0)
    delays = [compute_backoff_delay(retry_number=n, config=config) for n in (1, 2, 3, 4)]
    assert delays == [1.0, 2.0, 3.0, 3.0]
    with pytest.raises(ValueError):
        compute_backoff_delay(retry_number=0, config=config)


async def test_structured_payload_and_output_text() -> None:
    provider, responses, _ = _provider(
        SimpleNamespace(output_text='{"files": []}', model="gpt-test-2024", id="resp_1")
    )
    structured = StructuredOutput("file_selection", {"type": "object"})

    response = await provider.complete(_request(structured))

    assert response.content == '{"files": []}'
    assert response.model == "gpt-test-2024"
    assert response.request_id == "resp_1"
    (call,) = responses.calls
    assert call["model"] == "gpt-test"
    assert call["input"] == [
        {"role": "system", "content": "be terse"},
        {"role": "user", "content": "hi"},
    ]
    assert call["text"] == {
        "format": {
            "type": "json_schema",
            "name": "file_selection",
            "schema": {"type": "object"},
            "strict": False,
        }
    }


async def test_output_items_and_chat_choices_are_read() -> None:
    message_shaped = {
        "output": [
            {"type": "reasoning", "content": [{"type": "text", "text": "hidden"}]},
            {"type": "message", "content": [{"type": "output_text", "text": "hello"}]},
        ]
    }
    chat_shaped = {"choices": [{"message": {"content": "from chat"}}]}
    provider, responses, _ = _provider(message_shaped, chat_shaped)

    assert (await provider.complete(_request())).content == "hello"
    assert (await provider.complete(_request())).content == "from chat"
    assert "text" not in responses.calls[0]


async def test_retryable_errors_back_off_then_succeed() -> None:
    provider, responses, sleeper = _provider(RateLimitError("slow down"), {"output_text": "ok"})

    response = await provider.complete(_request())

    assert response.content == "ok"
    assert len(responses.calls) == 2
    assert sleeper.calls == [0.5]


async def test_auth_errors_are_not_retried() -> None:
    provider, responses, sleeper = _provider(AuthenticationError("bad key"))

    with pytest.raises(ProviderAuthenticationError) as excinfo:
        await provider.complete(_request())

    assert excinfo.value.http_status == 401
    assert len(responses.calls) == 1
    assert sleeper.calls == []


async def test_context_length_is_classified() -> None:
    provider, _, _ = _provider(ContextLengthError("maximum context length exceeded"))
    with pytest.raises(ProviderContextLengthError):
        await provider.complete(_request())


async def test_retries_are_bounded() -> None:
    provider, responses, sleeper = _provider(
        RateLimitError("1"), RateLimitError("2"), RateLimitError("3"), max_retries=2
    )
    with pytest.raises(ProviderError) as excinfo:
        await provider.complete(_request())
    assert excinfo.value.code == "rate_limit"
    assert len(responses.calls) == 3
    assert sleeper.calls == [0.5, 1.0]


async def test_empty_response_is_a_response_error() -> None:
    provider, _, _ = _provider({"output_text": "   ", "error": {"message": "filtered"}})
    with pytest.raises(ProviderResponseError, match="filtered"):
        await provider.complete(_request())


async def test_missing_api_key_is_an_auth_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FORGE_TEST_MISSING_KEY", raising=False)
    provider = OpenAIProvider(model="gpt-test", api_key_env="FORGE_TEST_MISSING_KEY")
    try:
        import openai  # noqa: F401
    except ModuleNotFoundError:
        with pytest.raises(ProviderUnavailableError):
            await provider.complete(_request())
        return
    with pytest.raises(ProviderAuthenticationError, match="FORGE_TEST_MISSING_KEY"):
        await provider.complete(_request())


def test_build_provider_uses_settings() -> None:
    settings = ProviderSettings(
        kind="openai",
        model="gpt-test",
        api_key_env="OPENAI_API_KEY",
        base_url=None,
        timeout_seconds=30.0,
        max_retries=1,
        max_input_tokens=4000,
    )
    provider = build_provider(settings)
    assert isinstance(provider, OpenAIProvider)
    assert provider.model == "gpt-test"
    assert provider.max_input_tokens == 4000

    with pytest.raises(ProviderUnavailableError):
        build_provider(
            ProviderSettings("other", "m", "OPENAI_API_KEY", None, 30.0, 1)
        )


def test_provider_rejects_bad_arguments() -> None:
    with pytest.raises(ValueError):
        OpenAIProvider(model=" ")
    with pytest.raises(ValueError):
        OpenAIProvider(model="m", timeout_seconds=0)
    with pytest.raises(ValueError):
        OpenAIProvider(model="m", max_input_tokens=0)


async def test_context_limit_rejection_is_retried_once_with_trimmed_messages() -> None:
    rejection = ContextLengthError(
        "This model's maximum context length is 300 tokens, but you requested 2014 tokens."
    )
    provider, responses, sleeper = _provider(rejection, {"output_text": "ok"})
    request = CompletionRequest((ChatMessage.system("be terse"), ChatMessage.user("x" * 8000)))

    response = await provider.complete(request)

    assert response.content == "ok"
    assert len(responses.calls) == 2
    assert responses.calls[0]["input"][1]["content"] == "x" * 8000  # type: ignore[index]
    assert responses.calls[1]["input"] == [
        {"role": "system", "content": "be terse"},
        {"role": "user", "content": "x" * 1048 + TRIMMED_MARKER},
    ]
    assert sleeper.calls == []


async def test_repeated_context_limit_rejection_is_raised() -> None:
    rejection = "maximum context length is 300 tokens"
    provider, responses, _ = _provider(
        ContextLengthError(rejection), ContextLengthError(rejection)
    )

    with pytest.raises(ProviderContextLengthError):
        await provider.complete(CompletionRequest((ChatMessage.user("x" * 8000),)))
    assert len(responses.calls) == 2


async def test_max_input_tokens_trims_before_sending() -> None:
    responses = _ScriptedOpenAIResponses(deque([{"output_text": "ok"}]))
    provider = OpenAIProvider(
        model="gpt-test", client=_FakeOpenAIClient(responses), max_input_tokens=300
    )

    await provider.complete(
        CompletionRequest((ChatMessage.system("be terse"), ChatMessage.user("x" * 8000)))
    )

    (call,) = responses.calls
    assert call["input"][1]["content"] == "x" * 1048 + TRIMMED_MARKER  # type: ignore[index]
