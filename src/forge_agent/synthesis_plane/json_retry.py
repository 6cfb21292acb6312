"""
forge-agent — structured JSON requests with escalating strictness

File: src/forge_agent/synthesis_plane/json_retry.py
Last updated: 2026-10-19

Purpose
- Wrap a model call in a JSON-schema contract. Responses are parsed, repaired when
  slightly malformed, validated with ``jsonschema`` and retried with stricter
  instructions when they do not conform.

Functional requirements
- Attempt ``k`` uses strictness level ``min(k, 3)`` regardless of why attempt ``k-1``
  failed.
- Cancellation is checked before and after every model call and propagates at once
  without consuming a retry.
- Every attempt's prompt and raw response is recorded to the run trace.
- After ``max_retries + 1`` failed attempts ``JsonParseError`` is raised with the
  last failure as its cause.

Non-functional requirements
- Non-retryable provider failures (missing credentials, unavailable SDK) are raised
  immediately; repeating them cannot succeed.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final

import structlog
from jsonschema import ValidationError, validate

from forge_agent.synthesis_plane.providers.base import (
    ChatMessage,
    CompletionRequest,
    ProviderError,
    StructuredOutput,
    as_messages,
)
from forge_agent.utils.concurrency import await_cancellable

if TYPE_CHECKING:
    from forge_agent.observability.trace import TraceRecorder
    from forge_agent.synthesis_plane.providers.base import CompletionProvider
    from forge_agent.synthesis_plane.schemas import JsonContract
    from forge_agent.utils.concurrency import CancellationToken

DEFAULT_MAX_JSON_RETRIES: Final[int] = 3
MAX_STRICTNESS_LEVEL: Final[int] = 3

_FENCED_JSON: Final[re.Pattern[str]] = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA: Final[re.Pattern[str]] = re.compile(r",\s*([}\]])")


class JsonParseError(ValueError):
    """Raised when no attempt produced schema-valid JSON."""

    def __init__(self, label: str, attempts: int, last_error: BaseException | None) -> None:
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "no response"
        super().__init__(f"{label}: no valid JSON after {attempts} attempt(s): {detail}")


def strictness_for_attempt(attempt: int) -> int:
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(attempt, MAX_STRICTNESS_LEVEL)


def build_attempt_messages(
    messages: Sequence[ChatMessage], attempt: int, contract: JsonContract
) -> list[ChatMessage]:
    """Prepend the strictness instruction for ``attempt`` to the caller's messages."""

    level = strictness_for_attempt(attempt)
    if level == 0:
        return list(messages)
    if level == 1:
        strict = (
            f"Return ONLY valid JSON with the exact schema {contract.hint}. "
            "Do not include code fences, trailing commas, or extra text."
        )
    elif level == 2:
        strict = (
            "Return ONLY JSON. The response must be parseable by a standard JSON parser. "
            f"Use the exact schema {contract.hint}. "
            'Escape all newlines as \\n and all quotes inside strings as \\". '
            "No code fences, no comments, no markdown."
        )
    else:
        strict = (
            f"Output ONLY minified JSON with the exact schema {contract.hint}. "
            "No whitespace outside strings. No extra keys. "
            "All newline characters inside strings must be escaped as \\n. "
            f"If unsure, return {contract.fallback} only."
        )
    return [ChatMessage.system(strict), *messages]


def extract_json_payload(text: str) -> object:
    """Parse model output as JSON, unwrapping fences and repairing common damage."""

    content = text.strip()
    if not content:
        raise ValueError("No content returned by LLM.")

    fenced = _FENCED_JSON.search(content)
    raw = fenced.group(1).strip() if fenced else content
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        repaired = repair_json(raw)
        if repaired != raw:
            try:
                return json.loads(repaired)
            except json.JSONDecodeError:
                pass
        raise ValueError(f"Invalid JSON from LLM: {exc}") from exc


def repair_json(text: str) -> str:
    """Trim to the outer object, drop trailing commas, escape raw control chars and stray quotes."""

    start = text.find("{")
    end = text.rfind("}")
    trimmed = text[start : end + 1] if 0 <= start < end else text
    trimmed = _TRAILING_COMMA.sub(r"\1", trimmed)
    return _escape_inside_strings(trimmed)


def validate_payload(payload: object, schema: Mapping[str, Any]) -> None:
    try:
        validate(instance=payload, schema=dict(schema))
    except ValidationError as exc:
        where = "/".join(str(part) for part in exc.absolute_path) or "(root)"
        raise ValueError(f"JSON did not match schema: {where} {exc.message}") from exc


class JsonRetryClient:
    """Structured-output client shared by every stage that needs JSON from the model."""

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        trace: TraceRecorder | None = None,
        max_retries: int = DEFAULT_MAX_JSON_RETRIES,
        logger: Any | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._provider = provider
        self._trace = trace
        self._max_retries = max_retries
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def trace(self) -> TraceRecorder | None:
        return self._trace

    async def request_json(
        self,
        messages: Sequence[ChatMessage | Mapping[str, str]],
        contract: JsonContract,
        *,
        max_retries: int | None = None,
        token: CancellationToken | None = None,
        label: str | None = None,
    ) -> dict[str, Any]:
        """Return a schema-valid JSON object for ``contract`` or raise ``JsonParseError``."""

        base_messages = as_messages(messages)
        retries = self._max_retries if max_retries is None else max(0, max_retries)
        title = label or contract.name
        structured = StructuredOutput(contract.name, contract.schema)
        last_error: BaseException | None = None

        for attempt in range(retries + 1):
            if token is not None:
                token.raise_if_cancelled()
            attempt_messages = build_attempt_messages(base_messages, attempt, contract)
            self._record_prompt(f"{title} prompt (attempt {attempt + 1})", attempt_messages)
            request = CompletionRequest(tuple(attempt_messages), structured_output=structured)
            try:
                response = await await_cancellable(self._provider.complete(request), token)
            except ProviderError as exc:
                if not exc.retryable and exc.code in {"auth", "unavailable"}:
                    raise
                last_error = exc
                self._log_failure(title, attempt, retries, exc)
                continue

            self._record_response(f"{title} response (attempt {attempt + 1})", response.content)
            try:
                payload = extract_json_payload(response.content)
                validate_payload(payload, contract.schema)
            except ValueError as exc:
                last_error = exc
                self._log_failure(title, attempt, retries, exc)
                continue
            if not isinstance(payload, dict):
                last_error = ValueError("JSON is not an object.")
                self._log_failure(title, attempt, retries, last_error)
                continue
            return payload

        raise JsonParseError(title, retries + 1, last_error) from last_error

    async def request_text(
        self,
        messages: Sequence[ChatMessage | Mapping[str, str]],
        *,
        token: CancellationToken | None = None,
        label: str = "completion",
    ) -> str:
        """Plain-text completion with the same tracing and cancellation contract."""

        base_messages = as_messages(messages)
        if token is not None:
            token.raise_if_cancelled()
        self._record_prompt(f"{label} prompt", base_messages)
        response = await await_cancellable(
            self._provider.complete(CompletionRequest(base_messages)), token
        )
        self._record_response(f"{label} response", response.content)
        return response.content.strip()

    def _record_prompt(self, title: str, messages: Sequence[ChatMessage]) -> None:
        if self._trace is not None:
            self._trace.record_prompt(title, [message.to_dict() for message in messages])

    def _record_response(self, title: str, content: str) -> None:
        if self._trace is not None:
            self._trace.record_response(title, content)

    def _log_failure(self, title: str, attempt: int, retries: int, error: BaseException) -> None:
        will_retry = attempt < retries
        self._logger.info(
            "json_attempt_failed",
            label=title,
            attempt=attempt + 1,
            max_attempts=retries + 1,
            next_strictness=strictness_for_attempt(attempt + 1) if will_retry else None,
            error=str(error),
        )


def _escape_inside_strings(text: str) -> str:
    result: list[str] = []
    in_string = False
    escape_next = False

    for index, char in enumerate(text):
        if not in_string:
            if char == '"':
                in_string = True
            result.append(char)
            continue
        if escape_next:
            escape_next = False
            result.append(char)
            continue
        if char == "\\":
            escape_next = True
            result.append(char)
            continue
        if char == '"':
            following = _next_non_whitespace(text, index + 1)
            if following is not None and following not in ",}]:":
                result.append('\\"')
                continue
            in_string = False
            result.append(char)
            continue
        if char == "\n":
            result.append("\\n")
        elif char == "\r":
            result.append("\\r")
        elif char == "\t":
            result.append("\\t")
        else:
            result.append(char)
    return "".join(result)


def _next_non_whitespace(text: str, start: int) -> str | None:
    for char in text[start:]:
        if not char.isspace():
            return char
    return None


__all__ = [
    "DEFAULT_MAX_JSON_RETRIES",
    "JsonParseError",
    "JsonRetryClient",
    "MAX_STRICTNESS_LEVEL",
    "build_attempt_messages",
    "extract_json_payload",
    "repair_json",
    "strictness_for_attempt",
    "validate_payload",
]
