"""
End-to-end tests: a real listening EdgeServer, a real HTTP client, and
mocked upstream and tracking endpoints.
"""

import asyncio

import httpx
import pytest

from edgeserver import EdgeServer


@pytest.fixture
def make_server(make_config, upstream, analytics):
    """Factory for servers wired to the mock upstream and tracking endpoint."""

    def factory(**overrides) -> EdgeServer:
        settings = {"tracking_enabled": True, **overrides}
        return EdgeServer(
            make_config(**settings),
            proxy_client=upstream.client(),
            tracking_client=analytics.client(),
        )

    return factory


def run_against(server: EdgeServer, scenario):
    """Start the server on a free port, run scenario(client, port), stop the server."""

    async def main():
        await server.start(port=0)
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server.port}") as client:
                return await scenario(client, server.port)
        finally:
            await server.stop()

    return asyncio.run(main())


async def raw_exchange(port: int, payload: bytes) -> bytes:
    """Send raw bytes and read until the server closes the connection."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(payload)
        await writer.drain()
        return await asyncio.wait_for(reader.read(), timeout=5)
    finally:
        writer.close()
        await writer.wait_closed()


class TestEdgeServer:
    """Tests for the full request path."""

    def test_static_file_served_and_tracked(self, make_server, upstream, analytics):
        """Test a local file: served from disk, no upstream call, one beacon."""
        async def scenario(client, port):
            return await client.get("/style.css?v=1", headers={"User-Agent": "pytest"})

        response = run_against(make_server(), scenario)

        assert response.status_code == 200
        assert response.content == b"body { color: black; }"
        assert response.headers["content-type"] == "text/css; charset=utf-8"
        assert "x-request-id" in response.headers
        assert upstream.calls == 0

        assert analytics.calls == 1
        params = dict(httpx.QueryParams(analytics.requests[0].url.query.decode("ascii")))
        assert params["url"] == "/style.css?v=1"
        assert params["ua"] == "pytest"
        assert params["cip"] == "127.0.0.1"

    def test_missing_file_proxied(self, make_server, upstream, analytics):
        """Test that a path absent locally is fetched from upstream with its query."""
        async def scenario(client, port):
            return await client.get("/blog/post?page=2")

        response = run_against(make_server(), scenario)

        assert response.status_code == 200
        assert response.content == b"upstream"
        assert upstream.calls == 1
        assert str(upstream.requests[0].url) == "http://upstream.test/blog/post?page=2"
        assert analytics.calls == 1

    def test_upstream_error_status_relayed_untracked(self, make_server, upstream, analytics):
        """Test that an upstream 404 reaches the client and is not tracked."""
        upstream.status = 404
        upstream.body = b"gone"

        async def scenario(client, port):
            return await client.get("/old-page")

        response = run_against(make_server(), scenario)

        assert response.status_code == 404
        assert response.content == b"gone"
        assert analytics.calls == 0

    def test_production_redirect(self, make_server, upstream, analytics):
        """Test the HTTPS redirect in production, without tracking."""
        async def scenario(client, port):
            response = await client.get("/blog?x=1", headers={"X-Forwarded-Proto": "http"})
            return response, port

        response, port = run_against(make_server(production=True), scenario)

        assert response.status_code == 301
        assert response.headers["location"] == f"https://127.0.0.1:{port}/blog"
        assert response.content == b""
        assert upstream.calls == 0
        assert analytics.calls == 0

    def test_unreachable_upstream_is_502(self, make_server, upstream, analytics):
        """Test that an upstream connection failure answers 502."""
        upstream.error = httpx.ConnectError("refused")

        async def scenario(client, port):
            return await client.get("/missing")

        response = run_against(make_server(), scenario)

        assert response.status_code == 502
        assert analytics.calls == 0

    def test_tracking_failure_invisible_to_client(self, make_server, analytics):
        """Test that a broken tracking endpoint does not affect the response."""
        analytics.error = httpx.ConnectError("refused")

        async def scenario(client, port):
            return await client.get("/")

        response = run_against(make_server(), scenario)

        assert response.status_code == 200
        assert response.content == b"<html><body>home</body></html>"
        assert analytics.calls == 1

    def test_tracking_disabled(self, make_server, analytics):
        """Test that no beacon is sent when tracking is off."""
        async def scenario(client, port):
            return await client.get("/")

        response = run_against(make_server(tracking_enabled=False), scenario)

        assert response.status_code == 200
        assert analytics.calls == 0

    def test_head_request(self, make_server):
        """Test that HEAD gets headers and no body."""
        async def scenario(client, port):
            return await client.head("/style.css")

        response = run_against(make_server(), scenario)

        assert response.status_code == 200
        assert response.headers["content-length"] == "22"
        assert response.content == b""

    def test_keep_alive(self, make_server):
        """Test that several requests share one connection."""
        async def scenario(client, port):
            first = await client.get("/")
            second = await client.get("/style.css")
            return first, second

        first, second = run_against(make_server(), scenario)

        assert first.headers["connection"] == "keep-alive"
        assert second.status_code == 200

    def test_malformed_request_is_400(self, make_server):
        """Test that garbage on the wire gets a 400 and a closed connection."""
        async def scenario(client, port):
            return await raw_exchange(port, b"GARBAGE\r\n\r\n")

        raw = run_against(make_server(), scenario)

        assert raw.startswith(b"HTTP/1.1 400 ")
        assert b"Connection: close\r\n" in raw

    def test_unknown_method_is_405(self, make_server, upstream):
        """Test that methods outside HTTP/1.1 are rejected before resolution."""
        async def scenario(client, port):
            return await raw_exchange(port, b"BREW /pot HTTP/1.1\r\nHost: x\r\n\r\n")

        raw = run_against(make_server(), scenario)

        assert raw.startswith(b"HTTP/1.1 405 ")
        assert upstream.calls == 0

    def test_http10_closes(self, make_server):
        """Test that an HTTP/1.0 request without keep-alive is answered then closed."""
        async def scenario(client, port):
            return await raw_exchange(port, b"GET /style.css HTTP/1.0\r\nHost: x\r\n\r\n")

        raw = run_against(make_server(), scenario)

        head, _, body = raw.partition(b"\r\n\r\n")
        assert head.startswith(b"HTTP/1.1 200 OK")
        assert b"Connection: close" in head
        assert body == b"body { color: black; }"

    def test_repeated_upstream_failure_is_502_each_time(self, make_server, upstream, analytics):
        """Test that the same request against a dead upstream fails the same way twice."""
        upstream.error = httpx.ConnectError("refused")

        async def scenario(client, port):
            first = await client.get("/missing")
            second = await client.get("/missing")
            return first, second

        first, second = run_against(make_server(), scenario)

        assert first.status_code == 502
        assert second.status_code == 502
        assert first.content == second.content
        assert upstream.calls == 2
        assert analytics.calls == 0

    def test_response_does_not_wait_for_beacon(self, make_server, analytics):
        """Test that the client is answered while the beacon is still blocked."""
        server = make_server()

        async def scenario(client, port):
            analytics.gate = asyncio.Event()
            response = await client.get("/style.css")

            # The beacon task reaches the tracking endpoint and stays blocked there
            for _ in range(100):
                if analytics.calls:
                    break
                await asyncio.sleep(0.01)
            blocked = server.dispatcher.pending

            analytics.gate.set()
            await server.dispatcher.drain(timeout=1.0)
            return response, blocked, server.dispatcher.pending

        response, blocked, after = run_against(server, scenario)

        assert response.status_code == 200
        assert response.content == b"body { color: black; }"
        assert analytics.calls == 1
        assert blocked == 1
        assert after == 0

    def test_chunked_request_rejected_without_smuggling(self, make_server, upstream):
        """Test that a chunked body is refused and its contents never parsed as a request."""
        payload = (
            b"POST /upload HTTP/1.1\r\n"
            b"Host: x\r\n"
            b"Transfer-Encoding: chunked\r\n"
            b"\r\n"
            b"0\r\n"
            b"\r\n"
            b"GET /smuggled HTTP/1.1\r\n"
            b"Host: x\r\n"
            b"\r\n"
        )

        async def scenario(client, port):
            return await raw_exchange(port, payload)

        raw = run_against(make_server(), scenario)

        assert raw.startswith(b"HTTP/1.1 501 ")
        assert raw.count(b"HTTP/1.1 ") == 1
        assert b"Connection: close\r\n" in raw
        assert upstream.calls == 0

    def test_transfer_encoding_with_content_length_is_400(self, make_server, upstream):
        """Test that conflicting body framing is a 400 and closes the connection."""
        payload = (
            b"POST /upload HTTP/1.1\r\n"
            b"Host: x\r\n"
            b"Content-Length: 5\r\n"
            b"Transfer-Encoding: chunked\r\n"
            b"\r\n"
            b"0\r\n"
            b"\r\n"
            b"GET /smuggled HTTP/1.1\r\n"
            b"Host: x\r\n"
            b"\r\n"
        )

        async def scenario(client, port):
            return await raw_exchange(port, payload)

        raw = run_against(make_server(), scenario)

        assert raw.startswith(b"HTTP/1.1 400 ")
        assert raw.count(b"HTTP/1.1 ") == 1
        assert upstream.calls == 0

    def test_running_until_stopped(self, make_server):
        """Test is_running across start() and stop()."""
        server = make_server()

        async def scenario(client, port):
            return server.is_running

        assert run_against(server, scenario) is True
        assert server.is_running is False
