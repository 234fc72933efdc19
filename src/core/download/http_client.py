"""
Async HTTP client built on aiohttp.

Requests are plain values built with RequestBuilder so the pull engine can
describe every server call without touching a session; HttpClient executes
them. Anything with the same execute/download coroutines (see the Http
protocol) can stand in for HttpClient, which is how tests spy on traffic.
"""

import asyncio
import base64
import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import quote_plus, urlsplit

import aiofiles
import aiohttp

from core.errors.exceptions import ConnectionError, TimeoutError
from core.logging.utilities import LoggedClass

CHUNK_SIZE = 64 * 1024  # 64KB


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class Credentials:
    """Username/password pair sent as HTTP basic auth."""

    username: str
    password: str

    def basic_header(self) -> str:
        token = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8"))
        return f"Basic {token.decode('ascii')}"

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password=***)"


@dataclass(frozen=True)
class Request:
    """An HTTP request ready to be executed."""

    method: str
    url: str
    credentials: Optional[Credentials] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None

    def all_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.credentials is not None and "Authorization" not in headers:
            headers["Authorization"] = self.credentials.basic_header()
        return headers


def url_encode(value: str) -> str:
    """
    Encode a query value the way Java's URLEncoder does.

    Spaces become '+', '*' is left alone and '~' is percent-encoded, so
    cursor tokens round-trip byte for byte with servers that decode them
    that way.
    """
    return quote_plus(value, safe="*").replace("~", "%7E")


class RequestBuilder:
    """
    Immutable builder for Request values.

    Usage:
        request = (
            RequestBuilder.get("https://collect.example.org")
            .with_path("/view/submissionList")
            .with_query(("formId", "census"), ("numEntries", "100"))
            .build()
        )
    """

    def __init__(
        self,
        method: str,
        base_url: str,
        credentials: Optional[Credentials] = None,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
    ):
        self.method = method
        self.base_url = base_url
        self.credentials = credentials
        self.headers = dict(headers or {})
        self.body = body

    @classmethod
    def get(cls, url: str) -> "RequestBuilder":
        return cls("GET", url)

    @classmethod
    def post(cls, url: str) -> "RequestBuilder":
        return cls("POST", url)

    def _copy(self, **changes: Any) -> "RequestBuilder":
        values = {
            "method": self.method,
            "base_url": self.base_url,
            "credentials": self.credentials,
            "headers": self.headers,
            "body": self.body,
        }
        values.update(changes)
        return RequestBuilder(**values)

    def with_path(self, path: str) -> "RequestBuilder":
        """Append a path, normalizing the slashes on both sides."""
        clean_path = path.strip("/")
        if not clean_path:
            return self
        return self._copy(base_url=f"{self.base_url.rstrip('/')}/{clean_path}")

    def with_query(self, *pairs: Tuple[str, str]) -> "RequestBuilder":
        """
        Set the query string from ordered key/value pairs.

        Raises:
            ValueError: If the URL already carries a query string
        """
        if urlsplit(self.base_url).query:
            raise ValueError("Can't apply with_query() twice")
        query = "&".join(f"{key}={url_encode(value)}" for key, value in pairs)
        return self._copy(base_url=f"{self.base_url}?{query}")

    def with_credentials(self, credentials: Optional[Credentials]) -> "RequestBuilder":
        return self._copy(credentials=credentials)

    def with_header(self, name: str, value: str) -> "RequestBuilder":
        headers = dict(self.headers)
        headers[name] = value
        return self._copy(headers=headers)

    def with_bearer_token(self, token: str) -> "RequestBuilder":
        return self.with_header("Authorization", f"Bearer {token}")

    def with_json_body(self, payload: Any) -> "RequestBuilder":
        return self._copy(body=json.dumps(payload).encode("utf-8")).with_header(
            "Content-Type", "application/json"
        )

    def build(self) -> Request:
        return Request(
            method=self.method,
            url=self.base_url,
            credentials=self.credentials,
            headers=dict(self.headers),
            body=self.body,
        )


# =============================================================================
# Responses
# =============================================================================


@dataclass(frozen=True)
class Response:
    """
    Result of executing a Request.

    For streamed downloads the body is empty and bytes_written holds the
    size of the file written to disk.
    """

    url: str
    status_code: int
    reason: str = ""
    body: bytes = b""
    content_type: Optional[str] = None
    bytes_written: int = 0

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body)

    @property
    def status_phrase(self) -> str:
        return self.reason or str(self.status_code)

    def without_body(self) -> "Response":
        return replace(self, body=b"")


class Http(Protocol):
    """What the pull engine needs from an HTTP client."""

    async def execute(self, request: Request) -> Response:
        ...

    async def download(self, request: Request, destination: Path) -> Response:
        ...


# =============================================================================
# aiohttp client
# =============================================================================


def create_session(
    max_connections: int = 8,
    max_connections_per_host: int = 8,
) -> aiohttp.ClientSession:
    """
    Create an aiohttp session with a bounded connection pool.

    Args:
        max_connections: Total connection pool size
        max_connections_per_host: Per-host connection limit
    """
    connector = aiohttp.TCPConnector(
        limit=max_connections,
        limit_per_host=max_connections_per_host,
    )
    return aiohttp.ClientSession(connector=connector)


class HttpClient(LoggedClass):
    """
    Executes Requests with a shared aiohttp session.

    Non-2xx responses are returned, not raised; callers decide what a failed
    status means for their step. Connection failures and timeouts raise
    ConnectionError / TimeoutError from core.errors.

    Usage:
        async with HttpClient(timeout_seconds=60) as http:
            response = await http.execute(request)
            if response.is_success:
                ...
    """

    log_component = "http"

    def __init__(
        self,
        timeout_seconds: float = 60,
        connect_timeout_seconds: float = 10,
        max_connections: int = 8,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.connect_timeout_seconds = connect_timeout_seconds
        self.max_connections = max_connections
        self._session = session
        self._owns_session = session is None
        super().__init__()

    async def __aenter__(self) -> "HttpClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = create_session(
                max_connections=self.max_connections,
                max_connections_per_host=self.max_connections,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=None,
            connect=self.connect_timeout_seconds,
            sock_read=self.timeout_seconds,
        )

    async def execute(self, request: Request) -> Response:
        """
        Execute a request and read the whole body.

        Raises:
            TimeoutError: On connect/read timeout
            ConnectionError: On any other client-side failure
        """
        session = self._ensure_session()
        try:
            async with session.request(
                request.method,
                request.url,
                headers=request.all_headers(),
                data=request.body,
                timeout=self._timeout(),
            ) as response:
                body = await response.read()
                self._log(
                    logging.DEBUG,
                    "HTTP request completed",
                    api_method=request.method,
                    url=request.url,
                    http_status=response.status,
                )
                return Response(
                    url=request.url,
                    status_code=response.status,
                    reason=response.reason or "",
                    body=body,
                    content_type=response.content_type,
                )
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Timeout after {self.timeout_seconds}s: {request.url}", cause=e
            ) from e
        except aiohttp.ClientError as e:
            raise ConnectionError(f"Connection error: {request.url}", cause=e) from e

    async def download(self, request: Request, destination: Path) -> Response:
        """
        Stream a response body into destination.

        The body goes to a sibling temp file that replaces destination only
        once fully written, so readers never see a truncated file. Failed
        responses leave destination untouched.

        Raises:
            TimeoutError: On connect/read timeout
            ConnectionError: On any other client-side failure
        """
        session = self._ensure_session()
        await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
        temp_path = destination.with_name(destination.name + ".part")
        try:
            async with session.request(
                request.method,
                request.url,
                headers=request.all_headers(),
                data=request.body,
                timeout=self._timeout(),
            ) as response:
                if not 200 <= response.status < 300:
                    return Response(
                        url=request.url,
                        status_code=response.status,
                        reason=response.reason or "",
                        body=await response.read(),
                        content_type=response.content_type,
                    )

                written = 0
                async with aiofiles.open(temp_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        await f.write(chunk)
                        written += len(chunk)

                await asyncio.to_thread(temp_path.replace, destination)
                self._log(
                    logging.DEBUG,
                    "HTTP download completed",
                    url=request.url,
                    file_path=str(destination),
                    http_status=response.status,
                )
                return Response(
                    url=request.url,
                    status_code=response.status,
                    reason=response.reason or "",
                    content_type=response.content_type,
                    bytes_written=written,
                )
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Timeout after {self.timeout_seconds}s: {request.url}", cause=e
            ) from e
        except aiohttp.ClientError as e:
            raise ConnectionError(f"Connection error: {request.url}", cause=e) from e
        finally:
            if temp_path.exists():
                temp_path.unlink()
