"""JSON-lines log output and correlation scopes for sqlpatch events."""

from sqlpatch.observability.logging import (
    CORRELATION_KEYS,
    LOG_FILENAME,
    LoggingHandle,
    LoggingSettings,
    configure_logging,
    correlation_scope,
    get_correlation_context,
    shutdown_logging,
)

__all__ = [
    "CORRELATION_KEYS",
    "LOG_FILENAME",
    "LoggingHandle",
    "LoggingSettings",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "shutdown_logging",
]
