"""
Unit tests for the upstream proxy forwarder.
"""

import asyncio

import httpx
import pytest

from edgeserver.handlers.proxy import ProxyForwarder, ProxyError, HOP_BY_HOP_HEADERS
from edgeserver.pipeline import Outcome


@pytest.fixture
def forwarder(make_config, upstream) -> ProxyForwarder:
    return ProxyForwarder(make_config(proxy_base="http://upstream.test/"), client=upstream.client())


class TestProxyForwarder:
    """Tests for ProxyForwarder.forward()."""

    def test_upstream_url(self, forwarder):
        """Test that the base URL and request path join without a double slash."""
        assert forwarder.upstream_url("/blog/post?page=2") == "http://upstream.test/blog/post?page=2"

    def test_forwards_path_and_query(self, forwarder, upstream, read_body):
        """Test that the upstream sees the path and query unchanged."""
        async def scenario():
            response = await forwarder.forward("/blog/post?page=2&tag=a%20b")
            return response, await read_body(response)

        response, body = asyncio.run(scenario())

        assert upstream.calls == 1
        sent = upstream.requests[0]
        assert sent.method == "GET"
        assert sent.url.path == "/blog/post"
        assert sent.url.query == b"page=2&tag=a%20b"
        assert body == b"upstream"
        assert response.source == "proxy"

    def test_relays_status_and_headers(self, forwarder, upstream, read_body):
        """Test that error statuses and headers pass through untouched."""
        upstream.status = 404
        upstream.body = b"not here"
        upstream.headers = {"Content-Type": "text/html", "X-Origin": "yes"}

        async def scenario():
            response = await forwarder.forward("/missing")
            return response, await read_body(response)

        response, body = asyncio.run(scenario())

        assert response.status == 404
        assert response.get_header("X-Origin") == "yes"
        assert response.get_header("Content-Type") == "text/html"
        assert response.get_header("Content-Length") == "8"
        assert body == b"not here"

    def test_drops_hop_by_hop_headers(self, forwarder, upstream, read_body):
        """Test that connection-level headers are not relayed."""
        upstream.headers = {
            "Content-Type": "text/plain",
            "Connection": "close",
            "Keep-Alive": "timeout=5",
            "Upgrade": "h2c",
        }

        async def scenario():
            response = await forwarder.forward("/")
            await read_body(response)
            return response

        response = asyncio.run(scenario())

        relayed = {name.lower() for name in response.headers}
        assert not relayed & HOP_BY_HOP_HEADERS
        assert "content-type" in relayed

    def test_repeated_set_cookie_stays_separate(self, forwarder, upstream, read_body):
        """Test that each Set-Cookie keeps its own header line."""
        upstream.headers = [
            ("Content-Type", "text/plain"),
            ("Set-Cookie", "a=1; Expires=Wed, 21 Oct 2026 07:28:00 GMT"),
            ("Set-Cookie", "b=2"),
        ]

        async def scenario():
            response = await forwarder.forward("/login")
            await read_body(response)
            return response

        response = asyncio.run(scenario())

        assert response.headers["Set-Cookie"] == [
            "a=1; Expires=Wed, 21 Oct 2026 07:28:00 GMT",
            "b=2",
        ]
        head = response.head_bytes()
        assert b"\r\nSet-Cookie: a=1; Expires=Wed, 21 Oct 2026 07:28:00 GMT\r\n" in head
        assert b"\r\nSet-Cookie: b=2\r\n" in head

    def test_header_names_grouped_case_insensitively(self, forwarder, upstream, read_body):
        """Test that differently cased repeats collect under the first spelling."""
        upstream.headers = [("X-Trace", "one"), ("x-trace", "two"), ("CONNECTION", "close")]

        async def scenario():
            response = await forwarder.forward("/")
            await read_body(response)
            return response

        response = asyncio.run(scenario())

        assert response.headers["X-Trace"] == ["one", "two"]
        assert "x-trace" not in response.headers
        assert "CONNECTION" not in response.headers

    def test_unreachable_upstream(self, forwarder, upstream):
        """Test that a connection failure becomes ProxyError."""
        upstream.error = httpx.ConnectError("connection refused")

        with pytest.raises(ProxyError) as exc_info:
            asyncio.run(forwarder.forward("/blog"))

        assert exc_info.value.url == "http://upstream.test/blog"
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    def test_timeout_is_proxy_error(self, forwarder, upstream):
        """Test that an upstream timeout is reported the same way."""
        upstream.error = httpx.ReadTimeout("too slow")

        with pytest.raises(ProxyError):
            asyncio.run(forwarder.forward("/slow"))

    def test_no_retry(self, forwarder, upstream):
        """Test that a failed upstream request is attempted exactly once."""
        upstream.error = httpx.ConnectError("connection refused")

        with pytest.raises(ProxyError):
            asyncio.run(forwarder.forward("/"))

        assert upstream.calls == 1

    def test_aclose_leaves_borrowed_client_open(self, forwarder):
        """Test that a client passed in is not closed by the forwarder."""
        asyncio.run(forwarder.aclose())

        assert not forwarder.client.is_closed

    def test_owns_default_client(self, config):
        """Test that a self-created client is closed by aclose()."""
        async def scenario():
            forwarder = ProxyForwarder(config)
            await forwarder.aclose()
            return forwarder.client

        assert asyncio.run(scenario()).is_closed


class TestProxyStage:
    """Tests for the resolution-chain interface."""

    def test_resolve_handled(self, forwarder, make_request):
        """Test that any upstream answer is HANDLED."""
        result = asyncio.run(forwarder.resolve(make_request("/blog?x=1")))

        assert result.outcome is Outcome.HANDLED
        assert result.response.status == 200
        asyncio.run(result.response.aclose())

    def test_resolve_error(self, forwarder, upstream, make_request):
        """Test that an unreachable upstream is ERROR carrying ProxyError."""
        upstream.error = httpx.ConnectError("connection refused")

        result = asyncio.run(forwarder.resolve(make_request("/blog")))

        assert result.outcome is Outcome.ERROR
        assert isinstance(result.exception, ProxyError)
