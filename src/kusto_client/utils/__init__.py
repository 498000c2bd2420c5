"""Shared utility helpers for kusto-client."""

from .logging import (
    LoggingOptions,
    configure_logging,
    get_logger,
    log_file_path,
    sanitize_log_message,
)

__all__ = [
    "LoggingOptions",
    "configure_logging",
    "get_logger",
    "log_file_path",
    "sanitize_log_message",
]
