"""
pytest configuration for collect pipeline tests.

Adds src directory to Python path for imports and provides the FakeHttp
spy every pull test talks to instead of a real server.
"""

import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Union

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from core.download.http_client import Request, Response  # noqa: E402
from core.logging.context import clear_log_context  # noqa: E402

Handler = Union[Response, Exception, Callable[[Request], Response]]


class FakeHttp:
    """
    Http spy answering from canned routes.

    Routes are matched on the full URL first, then on the URL without its
    query string. Unknown URLs answer 404. Every request is recorded.
    """

    def __init__(self):
        self.routes: Dict[str, Handler] = {}
        self.requests: List[Request] = []

    def stub(self, url: str, body: Union[str, bytes] = b"", status: int = 200, reason: str = "OK") -> "FakeHttp":
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = Response(url=url, status_code=status, reason=reason, body=body)
        return self

    def stub_error(self, url: str, error: Exception) -> "FakeHttp":
        self.routes[url] = error
        return self

    def stub_handler(self, url: str, handler: Callable[[Request], Response]) -> "FakeHttp":
        self.routes[url] = handler
        return self

    def _answer(self, request: Request) -> Response:
        handler = self.routes.get(request.url)
        if handler is None:
            handler = self.routes.get(request.url.split("?", 1)[0])
        if handler is None:
            return Response(url=request.url, status_code=404, reason="Not Found")
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(request)
        return replace(handler, url=request.url)

    async def execute(self, request: Request) -> Response:
        self.requests.append(request)
        return self._answer(request)

    async def download(self, request: Request, destination: Path) -> Response:
        self.requests.append(request)
        response = self._answer(request)
        if not response.is_success:
            return response
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(response.body)
        return replace(response, body=b"", bytes_written=len(response.body))

    def requested_urls(self, fragment: str = "") -> List[str]:
        return [request.url for request in self.requests if fragment in request.url]


@pytest.fixture
def fake_http():
    """Http spy with no routes; every URL answers 404 until stubbed."""
    return FakeHttp()


@pytest.fixture(autouse=True)
def clean_log_context():
    """Keep log context from leaking between tests."""
    clear_log_context()
    yield
    clear_log_context()
