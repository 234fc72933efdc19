"""
Pull-engine exceptions.

Builds on the core hierarchy so every error carries an ErrorCategory.
"""

from typing import Optional

from core.download.http_client import Response
from core.errors.exceptions import (
    ErrorCategory,
    HttpError,
    PermanentError,
    PipelineError,
    classify_http_status,
)


class ParsingError(PermanentError):
    """A server payload or local file could not be parsed."""

    pass


class CursorError(ParsingError):
    """A resumption token doesn't match any known cursor format."""

    pass


class SubmissionKeyError(ParsingError):
    """A form definition lacks what is needed to build submission keys."""

    pass


class BatchFetchError(PipelineError):
    """
    Fetching a page of instance IDs failed.

    Carries the raw response when the server answered (bad status or
    unparseable body); response is None when the request never completed.
    """

    def __init__(
        self,
        message: str,
        response: Optional[Response] = None,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.response = response
        if response is not None and not response.is_success:
            self.category = classify_http_status(response.status_code)
        elif isinstance(cause, PipelineError):
            self.category = cause.category
        else:
            self.category = ErrorCategory.PERMANENT


class CryptoError(PipelineError):
    """Decrypting or verifying one submission failed."""

    category = ErrorCategory.PERMANENT


__all__ = [
    "BatchFetchError",
    "CryptoError",
    "CursorError",
    "HttpError",
    "ParsingError",
    "SubmissionKeyError",
]
