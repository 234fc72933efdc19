"""
Security validation module.

Provides validation and sanitizing for server URLs.
"""

from core.security.url_validation import (
    ALLOWED_SCHEMES,
    SENSITIVE_PARAMS,
    sanitize_url,
    validate_server_url,
)

__all__ = [
    "validate_server_url",
    "sanitize_url",
    "ALLOWED_SCHEMES",
    "SENSITIVE_PARAMS",
]
