"""
URL validation and sanitizing for remote collection servers.

Server URLs come from configuration and from server-provided manifests, so
they are checked before use and stripped of secrets before being logged.
"""

from typing import Set, Tuple
from urllib.parse import urlparse, urlunparse

# Allowed schemes for server URLs
ALLOWED_SCHEMES: Set[str] = {"https", "http"}

# Query parameters that must never reach the logs
SENSITIVE_PARAMS: Set[str] = {
    "token",
    "access_token",
    "password",
    "st",  # Central app-user session token
}


def validate_server_url(url: str, require_https: bool = False) -> Tuple[bool, str]:
    """
    Validate a server base URL.

    Args:
        url: URL to validate
        require_https: Reject plain HTTP

    Returns:
        (is_valid, error_message)
        - (True, "") if valid
        - (False, "error description") if invalid

    Examples:
        >>> validate_server_url("https://collect.example.org/aggregate")
        (True, "")

        >>> validate_server_url("ftp://collect.example.org")
        (False, 'Unsupported scheme: ftp')
    """
    if not url:
        return False, "Empty URL"

    try:
        parsed = urlparse(url)
    except ValueError as e:
        return False, f"Invalid URL format: {e}"

    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return False, f"Unsupported scheme: {parsed.scheme or '(none)'}"

    if require_https and scheme != "https":
        return False, f"Must be HTTPS, got {parsed.scheme}"

    if not parsed.hostname:
        return False, "No hostname in URL"

    if parsed.query:
        return False, "Server URL must not contain a query string"

    return True, ""


def sanitize_url(url: str) -> str:
    """
    Remove credentials and sensitive query parameters from a URL.

    Preserves the path and structure for debugging.

    Args:
        url: URL that may contain sensitive parameters

    Returns:
        URL with userinfo dropped and sensitive parameters replaced
        with [REDACTED]
    """
    if not url:
        return url

    try:
        parsed = urlparse(url)
    except ValueError:
        return url

    netloc = parsed.netloc
    if "@" in netloc:
        netloc = netloc.rsplit("@", 1)[1]

    sanitized_params = []
    if parsed.query:
        for param in parsed.query.split("&"):
            if "=" in param:
                key, _ = param.split("=", 1)
                if key.lower() in SENSITIVE_PARAMS:
                    sanitized_params.append(f"{key}=[REDACTED]")
                    continue
            sanitized_params.append(param)

    return urlunparse(parsed._replace(netloc=netloc, query="&".join(sanitized_params)))
