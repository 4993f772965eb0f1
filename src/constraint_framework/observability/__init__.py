"""Logging and metrics for the constraint framework."""

from constraint_framework.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from constraint_framework.observability.metrics import MetricsRegistry

__all__ = [
    "LoggingConfig",
    "MetricsRegistry",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
