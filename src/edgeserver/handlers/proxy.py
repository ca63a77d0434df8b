"""
=============================================================================
PROXY FORWARDER
=============================================================================

Last stage of the resolution chain: whatever the static tree does not have
is fetched from the upstream origin and relayed to the client.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   GET /blog/post?page=2                                             │
    │        │                                                             │
    │        ▼                                                             │
    │   GET {PROXY_BASE}/blog/post?page=2      (one attempt, no retry)    │
    │        │                                                             │
    │        ├── any status ──► relayed as-is (404s and 500s included)    │
    │        │                                                             │
    │        └── DNS / refused / timeout / bad URL ──► ProxyError ──► 502 │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
WHAT IS RELAYED
=============================================================================

Status and headers are copied from the upstream, except hop-by-hop headers
(RFC 7230 section 6.1). Those describe the upstream connection, not the
resource, and the connection writer frames the body again for the client
connection. A header the upstream repeats, such as Set-Cookie, goes out
once per value on its own line.

The body is streamed with aiter_raw(): bytes arrive exactly as the upstream
sent them, still compressed if Content-Encoding says so, so Content-Length
keeps matching. Nothing is buffered in memory.

The upstream connection returns to the pool when the response's aclose()
runs, which the connection writer guarantees even if the client hangs up.

=============================================================================
CONNECTION POOLING
=============================================================================

One httpx.AsyncClient is shared by all requests. It keeps connections to
the upstream alive between requests instead of paying a TCP (and TLS)
handshake every time. The forwarder owns the client it creates and closes
it in aclose(); a client passed in by the caller is left to the caller.

=============================================================================
"""

import logging
from typing import Optional, Dict

import httpx

from ..config import EdgeConfig
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse, HeaderValue, ResponseBuilder
from ..pipeline import StageResult


logger = logging.getLogger(__name__)


HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


class ProxyError(Exception):
    """
    The upstream could not be reached.

    Wraps the underlying httpx exception (available as __cause__) and
    records the URL that was attempted.
    """

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class ProxyForwarder:
    """Relays requests to the upstream origin over a pooled client."""

    name = "proxy"

    def __init__(self, config: EdgeConfig, client: Optional[httpx.AsyncClient] = None):
        self.base_url = config.proxy_base.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=config.proxy_timeout,
            follow_redirects=False,
        )

    def upstream_url(self, path_and_query: str) -> str:
        return f"{self.base_url}{path_and_query}"

    async def forward(self, path_and_query: str) -> HTTPResponse:
        """
        GET the upstream resource and wrap it as a streamed response.

        Raises:
            ProxyError: On any transport failure or an invalid URL.
        """
        url = self.upstream_url(path_and_query)

        try:
            upstream = await self.client.send(self.client.build_request("GET", url), stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProxyError(f"Upstream request failed: {e!r}", url) from e

        logger.debug(f"Proxied {url} -> {upstream.status_code}")

        return (ResponseBuilder()
            .status(upstream.status_code)
            .headers(_relayed_headers(upstream))
            .stream(upstream.aiter_raw(), on_close=upstream.aclose)
            .source(self.name)
            .build())

    async def resolve(self, request: HTTPRequest) -> StageResult:
        try:
            return StageResult.handled(await self.forward(request.path_and_query))
        except ProxyError as e:
            return StageResult.error(e)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def _relayed_headers(upstream: httpx.Response) -> Dict[str, HeaderValue]:
    """
    Upstream headers minus hop-by-hop ones.

    Names are matched case-insensitively and keep the case of their first
    occurrence. A repeated header becomes a list so each value goes out on
    its own line; Set-Cookie cannot be comma-joined.
    """
    headers: Dict[str, HeaderValue] = {}
    names: Dict[str, str] = {}
    for raw_name, raw_value in upstream.headers.raw:
        name = raw_name.decode("latin-1")
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS:
            continue
        value = raw_value.decode("latin-1")

        if lowered not in names:
            names[lowered] = name
            headers[name] = value
            continue

        first = names[lowered]
        existing = headers[first]
        if isinstance(existing, str):
            headers[first] = [existing, value]
        else:
            existing.append(value)
    return headers
