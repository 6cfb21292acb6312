"""
forge-agent — provider base models and shared utilities

File: src/forge_agent/synthesis_plane/providers/base.py
Last updated: 2026-10-19

Purpose
- Abstract completion interface and the request/response records every pipeline
  stage uses to talk to a chat model.

Functional requirements
- Requests carry role-tagged messages and an optional JSON schema for structured output.
- A normalized error taxonomy with retryability classification.
- Bounded exponential backoff for retryable transport failures.
- Optional input token budget, with one trimmed retry on context-length rejections.

Non-functional requirements
- Adding a provider must not touch pipeline code; stages depend only on
  ``CompletionProvider``.
"""

from __future__ import annotations

import abc
import asyncio
import random as random_module
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Final, Literal, Protocol, TypeAlias, TypeVar, runtime_checkable

import structlog

from forge_agent.synthesis_plane.providers.token_budget import (
    parse_token_limit_from_error,
    trim_messages_to_token_budget,
)

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]

MessageRole = Literal["system", "user", "assistant"]
MESSAGE_ROLES: Final[frozenset[str]] = frozenset({"system", "user", "assistant"})


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _validate_optional_str(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    return _validate_non_empty_str(value, field_name)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: MessageRole
    content: str

    def __post_init__(self) -> None:
        if self.role not in MESSAGE_ROLES:
            raise ValueError(f"unsupported message role {self.role!r}")
        if not isinstance(self.content, str):
            raise TypeError("ChatMessage.content must be a string")

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls("system", content)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls("user", content)

    @classmethod
    def assistant(cls, content: str) -> ChatMessage:
        return cls("assistant", content)


@dataclass(frozen=True, slots=True)
class StructuredOutput:
    """JSON schema contract passed to providers that can enforce it."""

    name: str
    json_schema: Mapping[str, object]
    strict: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _validate_non_empty_str(self.name, "name"))
        if not isinstance(self.json_schema, Mapping):
            raise TypeError("json_schema must be a mapping")


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    messages: tuple[ChatMessage, ...]
    structured_output: StructuredOutput | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        messages = tuple(self.messages)
        if not messages:
            raise ValueError("CompletionRequest.messages cannot be empty")
        for message in messages:
            if not isinstance(message, ChatMessage):
                raise TypeError("CompletionRequest.messages entries must be ChatMessage")
        object.__setattr__(self, "messages", messages)
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")

    def message_dicts(self) -> list[dict[str, str]]:
        return [message.to_dict() for message in self.messages]


@dataclass(frozen=True, slots=True)
class CompletionResponse:
    content: str
    model: str = ""
    request_id: str | None = None
    latency_ms: int = 0
    metadata: dict[str, JSONValue] = field(default_factory=dict)


@runtime_checkable
class CompletionProvider(Protocol):
    """Structured-completion collaborator used by every pipeline stage."""

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


class BaseProvider(abc.ABC):
    """Convenience base for concrete providers.

    ``complete`` fits the request into ``max_input_tokens`` when one is set, and
    retries once with trimmed messages when the provider rejects the request
    with a parseable "maximum context length" error.
    """

    provider_name: str = "provider"
    max_input_tokens: int | None = None

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        prepared = _fit_request(request, self.max_input_tokens)
        try:
            return await self._complete(prepared)
        except (ProviderContextLengthError, ProviderInvalidRequestError) as exc:
            limit = parse_token_limit_from_error(exc.detail)
            if limit is None:
                raise
            structlog.get_logger(__name__).info(
                "provider_context_limit_retry", provider=self.provider_name, limit=limit
            )
            return await self._complete(_fit_request(request, limit))

    @abc.abstractmethod
    async def _complete(self, request: CompletionRequest) -> CompletionResponse:
        raise NotImplementedError


def _fit_request(request: CompletionRequest, max_tokens: int | None) -> CompletionRequest:
    if not max_tokens:
        return request
    result = trim_messages_to_token_budget(request.messages, max_tokens)
    if not result.trimmed or not result.messages:
        return request
    return replace(request, messages=result.messages)



class ProviderError(RuntimeError):
    """Base normalized provider error with machine-readable fields."""

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        self.provider = _validate_non_empty_str(provider, "provider")
        self.code = _validate_non_empty_str(code, "code")
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [f"provider={self.provider}", f"code={self.code}"]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class ProviderUnavailableError(ProviderError):
    """Raised when the provider SDK or endpoint is not usable."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="unavailable", detail=detail, retryable=False)


class ProviderAuthenticationError(ProviderError):
    def __init__(
        self, detail: str, *, provider: str = "provider", http_status: int | None = None
    ) -> None:
        super().__init__(
            provider=provider, code="auth", detail=detail, retryable=False, http_status=http_status
        )


class ProviderInvalidRequestError(ProviderError):
    def __init__(
        self, detail: str, *, provider: str = "provider", http_status: int | None = None
    ) -> None:
        super().__init__(
            provider=provider,
            code="invalid_request",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderContextLengthError(ProviderError):
    def __init__(
        self, detail: str, *, provider: str = "provider", http_status: int | None = None
    ) -> None:
        super().__init__(
            provider=provider,
            code="context_length",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderRateLimitError(ProviderError):
    """Rate-limit responses (retryable)."""

    def __init__(
        self, detail: str, *, provider: str = "provider", http_status: int | None = 429
    ) -> None:
        super().__init__(
            provider=provider,
            code="rate_limit",
            detail=detail,
            retryable=True,
            http_status=http_status,
        )


class ProviderTimeoutError(ProviderError):
    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="timeout", detail=detail, retryable=True)


class ProviderServiceError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="service",
            detail=detail,
            retryable=retryable,
            http_status=http_status,
        )


class ProviderResponseError(ProviderError):
    """Raised when a response carries no usable content."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="response_invalid", detail=detail, retryable=False)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    max_retries: int = 2
    initial_delay_seconds: float = 0.25
    multiplier: float = 2.0
    max_delay_seconds: float = 4.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Return the delay before retry N (1-based)."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    base_delay = config.initial_delay_seconds * (config.multiplier ** (retry_number - 1))
    bounded_delay = min(base_delay, config.max_delay_seconds)
    if config.jitter_ratio == 0.0:
        return bounded_delay

    max_jitter = bounded_delay * config.jitter_ratio
    jitter = ((random_fn() * 2.0) - 1.0) * max_jitter
    return max(0.0, min(config.max_delay_seconds, bounded_delay + jitter))


_ResultT = TypeVar("_ResultT")
RetryCallback: TypeAlias = Callable[[int, ProviderError, float], None]


async def run_with_retries(
    operation: Callable[[], Awaitable[_ResultT]],
    *,
    map_exception: Callable[[Exception], ProviderError],
    backoff: BackoffConfig,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    on_retry: RetryCallback | None = None,
) -> _ResultT:
    """Run ``operation`` with bounded retries driven by ``ProviderError.retryable``."""

    retry_count = 0
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            mapped = exc if isinstance(exc, ProviderError) else map_exception(exc)
            if not mapped.retryable or retry_count >= backoff.max_retries:
                if mapped is exc:
                    raise
                raise mapped from exc

            retry_count += 1
            delay_seconds = compute_backoff_delay(
                retry_number=retry_count, config=backoff, random_fn=random_fn
            )
            if on_retry is not None:
                on_retry(retry_count, mapped, delay_seconds)
            await sleep(delay_seconds)


def as_messages(messages: Sequence[ChatMessage | Mapping[str, str]]) -> tuple[ChatMessage, ...]:
    """Accept ``ChatMessage`` objects or ``{"role", "content"}`` dicts."""

    out: list[ChatMessage] = []
    for message in messages:
        if isinstance(message, ChatMessage):
            out.append(message)
            continue
        role = str(message.get("role", "user"))
        out.append(ChatMessage(role, str(message.get("content", ""))))  # type: ignore[arg-type]
    return tuple(out)


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


__all__ = [
    "BackoffConfig",
    "BaseProvider",
    "ChatMessage",
    "CompletionProvider",
    "CompletionRequest",
    "CompletionResponse",
    "JSONValue",
    "MessageRole",
    "ProviderAuthenticationError",
    "ProviderContextLengthError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "RandomFn",
    "SleepFn",
    "StructuredOutput",
    "as_messages",
    "compute_backoff_delay",
    "is_retryable_error",
    "run_with_retries",
]
