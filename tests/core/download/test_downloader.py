"""
Tests for AttachmentDownloader with DownloadTask/DownloadOutcome interface.

Test coverage:
- Successful downloads
- HTTP errors (4xx, 5xx) classified by status
- Transport errors and disk errors turned into failed outcomes
- write_file/read_file helpers
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.download.downloader import AttachmentDownloader, read_file, write_file
from core.download.http_client import RequestBuilder
from core.download.models import DownloadTask
from core.errors.exceptions import ConnectionError, ErrorCategory


@pytest.fixture
def temp_output_dir(tmp_path):
    """Create temporary output directory for downloads."""
    output_dir = tmp_path / "downloads"
    output_dir.mkdir()
    return output_dir


@pytest.fixture
def sample_task(temp_output_dir):
    """Create sample download task."""
    return DownloadTask(
        request=RequestBuilder.get("https://collect.example.org/media/photo.jpg").build(),
        destination=temp_output_dir / "photo.jpg",
    )


class TestAttachmentDownloaderSuccess:
    """Test successful download scenarios."""

    @pytest.mark.asyncio
    async def test_download_success(self, fake_http, sample_task):
        """Test successful download writes the file and reports its size."""
        fake_http.stub(sample_task.url, body=b"JPEG bytes")

        outcome = await AttachmentDownloader(fake_http).download(sample_task)

        assert outcome.success is True
        assert outcome.file_path == sample_task.destination
        assert outcome.bytes_downloaded == len(b"JPEG bytes")
        assert outcome.status_code == 200
        assert outcome.error_message is None
        assert sample_task.destination.read_bytes() == b"JPEG bytes"


class TestAttachmentDownloaderHttpErrors:
    """Test non-2xx responses."""

    @pytest.mark.asyncio
    async def test_404_is_permanent(self, fake_http, sample_task):
        outcome = await AttachmentDownloader(fake_http).download(sample_task)

        assert outcome.success is False
        assert outcome.status_code == 404
        assert outcome.error_category == ErrorCategory.PERMANENT
        assert outcome.error_message == "Not Found"
        assert not sample_task.destination.exists()

    @pytest.mark.asyncio
    async def test_503_is_transient(self, fake_http, sample_task):
        fake_http.stub(sample_task.url, status=503, reason="Service Unavailable")

        outcome = await AttachmentDownloader(fake_http).download(sample_task)

        assert outcome.success is False
        assert outcome.error_category == ErrorCategory.TRANSIENT

    @pytest.mark.asyncio
    async def test_401_is_auth(self, fake_http, sample_task):
        fake_http.stub(sample_task.url, status=401, reason="Unauthorized")

        outcome = await AttachmentDownloader(fake_http).download(sample_task)

        assert outcome.error_category == ErrorCategory.AUTH


class TestAttachmentDownloaderExceptions:
    """Test failures that never produced a response."""

    @pytest.mark.asyncio
    async def test_connection_error(self, fake_http, sample_task):
        fake_http.stub_error(sample_task.url, ConnectionError("Connection refused"))

        outcome = await AttachmentDownloader(fake_http).download(sample_task)

        assert outcome.success is False
        assert outcome.error_category == ErrorCategory.TRANSIENT
        assert "Connection refused" in outcome.error_message

    @pytest.mark.asyncio
    async def test_disk_error(self, sample_task):
        http = MagicMock()
        http.download = AsyncMock(side_effect=PermissionError("read-only"))

        outcome = await AttachmentDownloader(http).download(sample_task)

        assert outcome.success is False
        assert outcome.error_category == ErrorCategory.PERMANENT
        assert outcome.error_message.startswith("File write error")


class TestFileHelpers:
    """write_file / read_file."""

    @pytest.mark.asyncio
    async def test_write_creates_parents(self, tmp_path):
        path = tmp_path / "a" / "b" / "form.xml"

        await write_file(path, "<h:html/>")

        assert await read_file(path) == "<h:html/>"

    @pytest.mark.asyncio
    async def test_write_truncates(self, tmp_path):
        path = tmp_path / "form.xml"
        path.write_text("a much longer previous content")

        await write_file(path, "short")

        assert path.read_text() == "short"
        assert not (tmp_path / "form.xml.part").exists()
