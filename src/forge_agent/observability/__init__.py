"""Observability: structured logging, the run event channel and run traces."""

from forge_agent.observability.events import (
    DispatchError,
    RunEvent,
    RunEventChannel,
    RunEventKind,
)
from forge_agent.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    get_correlation_context,
    setup_structured_logging,
    shutdown_logging,
)
from forge_agent.observability.trace import TraceRecorder

__all__ = [
    "DispatchError",
    "LoggingConfig",
    "RunEvent",
    "RunEventChannel",
    "RunEventKind",
    "StructuredLoggingHandle",
    "TraceRecorder",
    "configure_structlog",
    "correlation_scope",
    "get_correlation_context",
    "setup_structured_logging",
    "shutdown_logging",
]
