"""Download task and outcome values."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from core.download.http_client import Request
from core.errors.exceptions import ErrorCategory


@dataclass(frozen=True)
class DownloadTask:
    """
    One file to fetch.

    Attributes:
        request: Request to execute
        destination: Final path of the file
    """

    request: Request
    destination: Path

    @property
    def url(self) -> str:
        return self.request.url


@dataclass(frozen=True)
class DownloadOutcome:
    """
    Result of running a DownloadTask.

    Use the classmethod constructors rather than building directly.
    """

    success: bool
    file_path: Optional[Path] = None
    bytes_downloaded: int = 0
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @classmethod
    def success_outcome(
        cls,
        file_path: Path,
        bytes_downloaded: int,
        status_code: int,
    ) -> "DownloadOutcome":
        return cls(
            success=True,
            file_path=file_path,
            bytes_downloaded=bytes_downloaded,
            status_code=status_code,
        )

    @classmethod
    def download_failure(
        cls,
        error_message: str,
        error_category: ErrorCategory,
        status_code: Optional[int] = None,
    ) -> "DownloadOutcome":
        return cls(
            success=False,
            status_code=status_code,
            error_message=error_message,
            error_category=error_category,
        )
