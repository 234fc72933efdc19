"""
Exception hierarchy shared by HTTP, storage and pull code.

Every PipelineError carries an ErrorCategory so callers and log records can
tell transient server trouble from permanent failures.
"""

from core.errors.exceptions import (
    # Enums
    ErrorCategory,
    # Base classes
    PipelineError,
    AuthError,
    TransientError,
    PermanentError,
    # Transient errors
    ConnectionError,
    TimeoutError,
    # Permanent errors
    NotFoundError,
    # HTTP errors
    HttpError,
    # Classification utilities
    classify_http_status,
    classify_exception,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "AuthError",
    "TransientError",
    "PermanentError",
    # Transient errors
    "ConnectionError",
    "TimeoutError",
    # Permanent errors
    "NotFoundError",
    # HTTP errors
    "HttpError",
    # Classification utilities
    "classify_http_status",
    "classify_exception",
    "wrap_exception",
]
