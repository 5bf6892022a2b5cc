"""Observability: structured logging and per-run event diagnostics."""

from pctest_orchestrator.observability.events import EventCode, EventLevel, EventLog
from pctest_orchestrator.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    correlation_scope,
    register_secret_values,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "EventCode",
    "EventLevel",
    "EventLog",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "register_secret_values",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
