"""Model provider adapters and the provider factory used by the CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

from forge_agent.synthesis_plane.providers.base import (
    BackoffConfig,
    BaseProvider,
    ChatMessage,
    CompletionProvider,
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
    StructuredOutput,
    as_messages,
    compute_backoff_delay,
    is_retryable_error,
    run_with_retries,
)
from forge_agent.synthesis_plane.providers.openai_adapter import OpenAIProvider
from forge_agent.synthesis_plane.providers.token_budget import (
    BudgetResult,
    parse_token_limit_from_error,
    trim_messages_to_token_budget,
)

if TYPE_CHECKING:
    from forge_agent.config.schema import ProviderSettings


def build_provider(settings: ProviderSettings) -> CompletionProvider:
    """Create the configured provider; the SDK itself is only imported on first call."""

    if settings.kind == "openai":
        return OpenAIProvider(
            model=settings.model,
            api_key_env=settings.api_key_env,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            max_input_tokens=settings.max_input_tokens,
            backoff=BackoffConfig(max_retries=settings.max_retries),
        )
    raise ProviderUnavailableError(f"unsupported provider kind {settings.kind!r}")


__all__ = [
    "BackoffConfig",
    "BaseProvider",
    "BudgetResult",
    "ChatMessage",
    "CompletionProvider",
    "CompletionRequest",
    "CompletionResponse",
    "OpenAIProvider",
    "ProviderAuthenticationError",
    "ProviderContextLengthError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "StructuredOutput",
    "as_messages",
    "build_provider",
    "compute_backoff_delay",
    "is_retryable_error",
    "parse_token_limit_from_error",
    "run_with_retries",
    "trim_messages_to_token_budget",
]
