"""
Structured logging module.

Provides JSON logging with run/form context propagation across asyncio
tasks, plus helpers for structured `extra` fields.
"""

from core.logging.context import clear_log_context, get_log_context, set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import generate_run_id, setup_logging
from core.logging.utilities import (
    LoggedClass,
    get_logger,
    log_exception,
    log_with_context,
    logged_operation,
)

__all__ = [
    "ConsoleFormatter",
    "JSONFormatter",
    "LoggedClass",
    "clear_log_context",
    "generate_run_id",
    "get_log_context",
    "get_logger",
    "log_exception",
    "log_with_context",
    "logged_operation",
    "set_log_context",
    "setup_logging",
]
