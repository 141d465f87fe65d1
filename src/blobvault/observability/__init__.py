"""Observability module for blobvault.

Structured logging with backend/blob context.
"""

from blobvault.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    backend_var,
    blob_var,
    configure_logging,
    configure_logging_from_settings,
    get_logger,
)

__all__ = [
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "LogContext",
    "JsonFormatter",
    "ConsoleFormatter",
    "backend_var",
    "blob_var",
]
