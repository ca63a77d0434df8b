"""
pytest configuration and fixtures.
"""

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

from edgeserver import EdgeConfig
from edgeserver.http import HTTPRequest, parse_request


INDEX_HTML = b"<html><body>home</body></html>"
BLOG_HTML = b"<html><body>blog</body></html>"
STYLE_CSS = b"body { color: black; }"
DATA_BIN = bytes(range(256)) * 4


@pytest.fixture
def sample_get_request() -> bytes:
    """Sample HTTP GET request."""
    return (
        b"GET /blog/post?page=1&limit=10 HTTP/1.1\r\n"
        b"Host: example.com\r\n"
        b"User-Agent: pytest\r\n"
        b"Referer: https://search.example/\r\n"
        b"Accept-Language: en-GB,en;q=0.9\r\n"
        b"Connection: keep-alive\r\n"
        b"\r\n"
    )


@pytest.fixture
def sample_post_request() -> bytes:
    """Sample HTTP POST request with a body."""
    body = b'{"name": "John"}'
    head = (
        b"POST /api/users HTTP/1.1\r\n"
        b"Host: example.com\r\n"
        b"Content-Type: application/json\r\n"
        b"Content-Length: %d\r\n"
        b"Connection: close\r\n"
        b"\r\n"
    )
    return head % len(body) + body


@pytest.fixture
def static_root(tmp_path: Path) -> Path:
    """
    A small static tree:

        public/index.html
        public/style.css
        public/data.bin          1024 bytes
        public/blog/index.html
        public/empty/            directory without index
    """
    root = tmp_path / "public"
    root.mkdir()
    (root / "index.html").write_bytes(INDEX_HTML)
    (root / "style.css").write_bytes(STYLE_CSS)
    (root / "data.bin").write_bytes(DATA_BIN)
    (root / "blog").mkdir()
    (root / "blog" / "index.html").write_bytes(BLOG_HTML)
    (root / "empty").mkdir()
    (tmp_path / "secret.txt").write_bytes(b"outside the root")
    return root


@pytest.fixture
def make_config(static_root: Path) -> Callable[..., EdgeConfig]:
    """Factory for test configurations; keyword arguments override fields."""
    base = EdgeConfig(
        port=8080,
        host="127.0.0.1",
        static_root=str(static_root),
        proxy_base="http://upstream.test",
        tracking_enabled=False,
        tracking_endpoint="https://analytics.test/matomo.php",
        tracking_token="test-token",
        timeout=5.0,
        keep_alive_timeout=1.0,
        log_level="WARNING",
    )

    def factory(**overrides) -> EdgeConfig:
        return replace(base, **overrides)

    return factory


@pytest.fixture
def config(make_config) -> EdgeConfig:
    """Default test configuration: development mode, tracking disabled."""
    return make_config()


@pytest.fixture
def make_request() -> Callable[..., HTTPRequest]:
    """Build an HTTPRequest by parsing a synthesized request."""

    def factory(
        path: str = "/",
        method: str = "GET",
        headers: Optional[dict] = None,
        client: tuple = ("203.0.113.7", 51234),
    ) -> HTTPRequest:
        lines = [f"{method} {path} HTTP/1.1"]
        for name, value in (headers or {"Host": "example.com"}).items():
            lines.append(f"{name}: {value}")
        raw = ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1")
        return parse_request(raw, client)

    return factory


class RecordingUpstream:
    """
    httpx.MockTransport handler that records every request.

    Answers with `status`/`body`/`headers`, or raises `error` when set.
    `headers` is a dict, or a list of (name, value) pairs for repeated
    headers. When `gate` is set, answers wait until the event is set.
    """

    def __init__(self, status: int = 200, body: bytes = b"upstream", headers=None):
        self.status = status
        self.body = body
        self.headers = headers or {"Content-Type": "text/plain"}
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        pairs = list(self.headers.items()) if isinstance(self.headers, dict) else list(self.headers)
        if not any(name.lower() == "content-length" for name, _ in pairs):
            pairs.append(("Content-Length", str(len(self.body))))
        # A real stream, so the proxy can read it with aiter_raw()
        return httpx.Response(self.status, headers=pairs, stream=httpx.ByteStream(self.body))

    @property
    def calls(self) -> int:
        return len(self.requests)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def upstream() -> RecordingUpstream:
    """Mock upstream origin."""
    return RecordingUpstream()


@pytest.fixture
def analytics() -> RecordingUpstream:
    """Mock tracking endpoint (Matomo answers 204 with send_image=0)."""
    return RecordingUpstream(status=204, body=b"", headers={})


@pytest.fixture
def read_body():
    """Coroutine function reading a response body, streamed or not, and releasing it."""

    async def collect(response) -> bytes:
        if not response.is_streaming:
            return response.body
        chunks = []
        try:
            async for chunk in response.stream:
                chunks.append(chunk)
        finally:
            await response.aclose()
        return b"".join(chunks)

    return collect
