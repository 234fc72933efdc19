"""
Async download module.

Provides HTTP request building and execution decoupled from any server
dialect, plus a DownloadTask -> DownloadOutcome downloader for files.
"""

from core.download.downloader import AttachmentDownloader, read_file, write_file
from core.download.http_client import (
    Credentials,
    Http,
    HttpClient,
    Request,
    RequestBuilder,
    Response,
    create_session,
    url_encode,
)
from core.download.models import DownloadOutcome, DownloadTask

__all__ = [
    "AttachmentDownloader",
    "Credentials",
    "DownloadOutcome",
    "DownloadTask",
    "Http",
    "HttpClient",
    "Request",
    "RequestBuilder",
    "Response",
    "create_session",
    "read_file",
    "url_encode",
    "write_file",
]
