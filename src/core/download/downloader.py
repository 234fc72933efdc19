"""
Attachment downloader with a DownloadTask -> DownloadOutcome interface.

Wraps an Http implementation so that every failure (bad status, timeout,
connection error, disk error) comes back as a failed outcome instead of an
exception. Callers report the outcome; they never need a try block.
"""

import asyncio
from pathlib import Path

import aiofiles

from core.download.http_client import Http
from core.download.models import DownloadOutcome, DownloadTask
from core.errors.exceptions import ErrorCategory, PipelineError, classify_http_status


class AttachmentDownloader:
    """
    Downloads files described by DownloadTask values.

    Usage:
        downloader = AttachmentDownloader(http)
        outcome = await downloader.download(
            DownloadTask(request=request, destination=Path("media/photo.jpg"))
        )
        if not outcome.success:
            print(f"Failed: {outcome.error_message}")
    """

    def __init__(self, http: Http):
        self._http = http

    async def download(self, task: DownloadTask) -> DownloadOutcome:
        """
        Download a file according to task.

        Args:
            task: Download task specification

        Returns:
            DownloadOutcome with success/failure and metadata
        """
        try:
            response = await self._http.download(task.request, task.destination)
        except PipelineError as e:
            return DownloadOutcome.download_failure(
                error_message=str(e),
                error_category=e.category,
            )
        except OSError as e:
            return DownloadOutcome.download_failure(
                error_message=f"File write error: {e}",
                error_category=ErrorCategory.PERMANENT,
            )

        if not response.is_success:
            return DownloadOutcome.download_failure(
                error_message=response.status_phrase,
                error_category=classify_http_status(response.status_code),
                status_code=response.status_code,
            )

        return DownloadOutcome.success_outcome(
            file_path=task.destination,
            bytes_downloaded=response.bytes_written,
            status_code=response.status_code,
        )


async def write_file(path: Path, content: str) -> None:
    """
    Write text to path with create/truncate semantics.

    Parent directories are created as needed. The content lands in a temp
    file first and replaces path in one step.
    """
    await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".part")
    async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
        await f.write(content)
    await asyncio.to_thread(temp_path.replace, path)


async def read_file(path: Path) -> str:
    """Read a UTF-8 text file."""
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return await f.read()


__all__ = ["AttachmentDownloader", "read_file", "write_file"]
