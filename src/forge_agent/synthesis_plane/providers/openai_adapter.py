"""
forge-agent — OpenAI provider adapter

File: src/forge_agent/synthesis_plane/providers/openai_adapter.py
Last updated: 2026-10-19

Purpose
- ``CompletionProvider`` backed by the OpenAI Responses API (or any compatible
  endpoint reachable through ``base_url``).

Functional requirements
- The SDK is optional and loaded lazily; an injected client is used as-is.
- Structured requests pass the JSON schema as ``text.format``; conformance is still
  checked by the caller's retry contract.
- SDK exceptions map onto the normalized ``ProviderError`` taxonomy.
- ``max_input_tokens`` enables the shared input budget from ``BaseProvider``.

Non-functional requirements
- Never hardcode keys; read them from the configured env var at first use.
"""

from __future__ import annotations

import asyncio
import importlib
import os
import random as random_module
import time
from collections.abc import Mapping, Sequence
from typing import Protocol, cast

from forge_agent.synthesis_plane.providers.base import (
    BackoffConfig,
    BaseProvider,
    CompletionRequest,
    CompletionResponse,
    ProviderAuthenticationError,
    ProviderContextLengthError,
    ProviderError,
    ProviderInvalidRequestError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RandomFn,
    SleepFn,
    run_with_retries,
)


class _OpenAIResponsesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _OpenAIClient(Protocol):
    responses: _OpenAIResponsesAPI


class OpenAIProvider(BaseProvider):
    """OpenAI responses adapter with optional SDK dependency and injected client support."""

    provider_name = "openai"

    def __init__(
        self,
        *,
        model: str,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_input_tokens: int | None = None,
        client: _OpenAIClient | None = None,
        backoff: BackoffConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
        random_fn: RandomFn = random_module.random,
    ) -> None:
        if not isinstance(model, str) or not model.strip():
            raise ValueError("model cannot be empty")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if max_input_tokens is not None and max_input_tokens <= 0:
            raise ValueError("max_input_tokens must be > 0")
        self.model = model.strip()
        self._api_key_env = api_key_env
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self.max_input_tokens = max_input_tokens
        self._client = client
        self._backoff = backoff if backoff is not None else BackoffConfig()
        self._sleep = sleep
        self._random_fn = random_fn

    async def _complete(self, request: CompletionRequest) -> CompletionResponse:
        payload = self._build_payload(request)

        async def operation() -> CompletionResponse:
            client = self._ensure_client()
            started = time.perf_counter()
            raw_response = await client.responses.create(**payload)
            latency_ms = int((time.perf_counter() - started) * 1000)
            return self._normalize_response(raw_response, latency_ms=latency_ms)

        return await run_with_retries(
            operation,
            map_exception=self._map_exception,
            backoff=self._backoff,
            sleep=self._sleep,
            random_fn=self._random_fn,
        )

    def _ensure_client(self) -> _OpenAIClient:
        if self._client is None:
            self._client = self._create_default_client()
        return self._client

    def _create_default_client(self) -> _OpenAIClient:
        try:
            openai_module = importlib.import_module("openai")
        except ImportError as exc:
            raise ProviderUnavailableError(
                provider=self.provider_name,
                detail="openai SDK is not installed; install forge-agent[openai]",
            ) from exc

        async_openai = getattr(openai_module, "AsyncOpenAI", None)
        if async_openai is None:
            raise ProviderUnavailableError(
                provider=self.provider_name, detail="openai SDK does not expose AsyncOpenAI"
            )

        init_kwargs: dict[str, object] = {"api_key": self._resolve_api_key()}
        if self._base_url:
            init_kwargs["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            init_kwargs["timeout"] = self._timeout_seconds
        return cast("_OpenAIClient", async_openai(**init_kwargs))

    def _resolve_api_key(self) -> str:
        env_name = self._api_key_env or "OPENAI_API_KEY"
        configured = os.getenv(env_name)
        if configured is None or not configured.strip():
            raise ProviderAuthenticationError(
                provider=self.provider_name,
                detail=f"missing API key in env var {env_name}",
                http_status=401,
            )
        return configured.strip()

    def _build_payload(self, request: CompletionRequest) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "input": request.message_dicts(),
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_output_tokens"] = request.max_tokens
        if request.structured_output is not None:
            payload["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": request.structured_output.name,
                    "schema": dict(request.structured_output.json_schema),
                    "strict": bool(request.structured_output.strict),
                }
            }
        return payload

    def _normalize_response(self, raw_response: object, *, latency_ms: int) -> CompletionResponse:
        text = _extract_output_text(raw_response)
        if not text.strip():
            error = _read_value(raw_response, "error")
            detail = _read_str(error, "message") if error is not None else None
            raise ProviderResponseError(
                provider=self.provider_name, detail=detail or "No content returned by LLM."
            )
        return CompletionResponse(
            content=text,
            model=_read_str(raw_response, "model") or self.model,
            request_id=_read_str(raw_response, "id"),
            latency_ms=latency_ms,
        )

    def _map_exception(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc

        status_code = _read_status_code(exc)
        class_name = exc.__class__.__name__.lower()
        detail = _exception_detail(exc)
        detail_lower = detail.lower()

        if status_code in {401, 403} or "auth" in class_name or "permission" in class_name:
            return ProviderAuthenticationError(
                provider=self.provider_name, detail=detail, http_status=status_code
            )
        if status_code == 429 or "ratelimit" in class_name:
            return ProviderRateLimitError(
                provider=self.provider_name, detail=detail, http_status=status_code
            )
        if isinstance(exc, TimeoutError) or "timeout" in class_name:
            return ProviderTimeoutError(provider=self.provider_name, detail=detail)
        if (
            status_code in {400, 413, 422} and "context" in detail_lower and "length" in detail_lower
        ) or "contextlength" in class_name:
            return ProviderContextLengthError(
                provider=self.provider_name, detail=detail, http_status=status_code
            )
        if status_code in {400, 404, 409, 422} or "badrequest" in class_name:
            return ProviderInvalidRequestError(
                provider=self.provider_name, detail=detail, http_status=status_code
            )
        if status_code is not None and status_code >= 500:
            return ProviderServiceError(
                provider=self.provider_name, detail=detail, http_status=status_code
            )
        return ProviderServiceError(provider=self.provider_name, detail=detail, retryable=True)


def _extract_output_text(raw_response: object) -> str:
    direct = _read_str(raw_response, "output_text")
    if direct:
        return direct

    chunks: list[str] = []
    for item in _read_sequence(raw_response, "output"):
        if (_read_str(item, "type") or "").lower() != "message":
            continue
        for part in _read_sequence(item, "content"):
            if (_read_str(part, "type") or "").lower() in {"output_text", "text"}:
                value = _read_str(part, "text")
                if value:
                    chunks.append(value)

    # Chat-completions shaped payloads from compatible endpoints.
    for choice in _read_sequence(raw_response, "choices"):
        content = _read_str(_read_value(choice, "message"), "content")
        if content:
            chunks.append(content)
    return "\n".join(chunks)


def _exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


def _read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int):
            return nested
    return None


def _read_value(value: object, key: str) -> object | None:
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key))
    return cast("object | None", getattr(value, key, None))


def _read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = _read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def _read_str(value: object, key: str) -> str | None:
    candidate = _read_value(value, key)
    if isinstance(candidate, str) and candidate.strip():
        return candidate
    return None


__all__ = ["OpenAIProvider"]
