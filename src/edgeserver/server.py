"""
=============================================================================
EDGE SERVER
=============================================================================

The orchestrator that ties all components together: it owns the listening
socket, runs each request through the resolution pipeline, writes the
response and fires the tracking beacon afterwards.

=============================================================================
ARCHITECTURE OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │                        ┌─────────────────┐                          │
    │                        │   EdgeServer    │                          │
    │                        │ (Orchestrator)  │                          │
    │                        └────────┬────────┘                          │
    │                                 │                                    │
    │       ┌─────────────────┬───────┴─────────┬─────────────────┐       │
    │       ▼                 ▼                 ▼                 ▼       │
    │ ┌────────────┐  ┌──────────────┐  ┌──────────────┐  ┌───────────┐  │
    │ │AsyncSocket-│  │  Middleware  │  │  Resolution  │  │  Beacon   │  │
    │ │Server      │  │  Pipeline    │  │  Pipeline    │  │ Dispatcher│  │
    │ └─────┬──────┘  │ (access log) │  │ redirect →   │  │ (detached │  │
    │       ▼         └──────────────┘  │ static →     │  │  tasks)   │  │
    │ ┌────────────┐                    │ proxy        │  └───────────┘  │
    │ │ Connection │                    └──────────────┘                  │
    │ └────────────┘                                                      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
REQUEST LIFECYCLE
=============================================================================

    1. CLIENT CONNECTS
       └── AsyncSocketServer accepts, captures the peer address
    2. READ + PARSE
       └── Connection.read_request() → RequestParser → HTTPRequest
    3. MIDDLEWARE + RESOLUTION
       └── AccessLog → redirect / static / proxy
    4. SEND RESPONSE
       └── Connection.send_response() streams the body, then aclose()
    5. TRACK
       └── fully written 2xx → BeaconDispatcher.spawn() (not awaited)
    6. KEEP-ALIVE OR CLOSE

=============================================================================
WHAT THE CLIENT CAN SEE
=============================================================================

    ┌───────────────────────────────┬─────────────────────────────────────┐
    │ Situation                     │ Response                            │
    ├───────────────────────────────┼─────────────────────────────────────┤
    │ resolved normally             │ redirect / file / upstream response │
    │ upstream unreachable          │ 502 {"error": "Bad Gateway"}        │
    │ malformed request             │ 400 / 405 / 413 / 505 (parser)      │
    │ no request within timeout     │ 408                                 │
    │ unexpected exception          │ 500 {"error": ...}                  │
    └───────────────────────────────┴─────────────────────────────────────┘

Error responses close the connection. None of them stop the server.

=============================================================================
"""

import asyncio
import logging
from typing import Optional

import httpx

from .config import EdgeConfig
from .core import AsyncSocketServer, Connection
from .http import (
    HTTPRequest,
    HTTPResponse,
    HTTPStatus,
    RequestParser,
    HTTPParseError,
    error_response,
    bad_gateway,
    internal_error,
)
from .handlers import RedirectGuard, StaticFileHandler, StaticResolver, ProxyForwarder, ProxyError
from .middleware import MiddlewarePipeline, Middleware, AccessLogMiddleware, NextHandler
from .pipeline import ResolutionPipeline
from .tracking import TrackingBeacon, BeaconDispatcher


logger = logging.getLogger(__name__)

# Seconds pending beacons get to finish on shutdown.
BEACON_DRAIN_TIMEOUT = 5.0


class EdgeServer:
    """
    The edge server.

    =========================================================================
    USAGE
    =========================================================================

        config = EdgeConfig.from_env()
        EdgeServer(config).run()          # blocks until SIGTERM / Ctrl+C

    In tests, with mocked upstream and tracking endpoint:

        server = EdgeServer(config, proxy_client=..., tracking_client=...)
        await server.start(port=0)
        ...  # talk to 127.0.0.1:server.port
        await server.stop()

    =========================================================================
    """

    def __init__(
        self,
        config: EdgeConfig,
        proxy_client: Optional[httpx.AsyncClient] = None,
        tracking_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            config: Validated configuration.
            proxy_client: HTTP client for the upstream. Created (and
                          closed on stop) when not given.
            tracking_client: HTTP client for the tracking endpoint, same
                             ownership rule.
        """
        self.config = config

        self._socket_server = AsyncSocketServer(config)
        self._parser = RequestParser(max_request_size=config.max_request_size)

        self.static_files = StaticFileHandler(
            config.static_root,
            cache_max_age=config.cache_max_age,
        )
        self.proxy = ProxyForwarder(config, client=proxy_client)
        self.resolution = ResolutionPipeline([
            RedirectGuard(config),
            StaticResolver(self.static_files),
            self.proxy,
        ])

        self._middleware = MiddlewarePipeline()
        self._middleware.add(AccessLogMiddleware(log_format=config.log_format))

        self.beacon: Optional[TrackingBeacon] = None
        self.dispatcher: Optional[BeaconDispatcher] = None
        if config.tracking_enabled:
            self.beacon = TrackingBeacon(config, client=tracking_client)
            self.dispatcher = BeaconDispatcher(self.beacon)

        self._handler: Optional[NextHandler] = None

    def use(self, middleware: Middleware) -> "EdgeServer":
        """Add middleware inside the access log. Call before start()."""
        self._middleware.add(middleware)
        return self

    @property
    def port(self) -> int:
        """The port actually bound (useful after start(port=0))."""
        return self._socket_server.address[1]

    @property
    def is_running(self) -> bool:
        return self._socket_server.is_running

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, port: Optional[int] = None) -> None:
        """Bind the socket and start accepting. Returns once listening."""
        self._handler = self._middleware.wrap(self.resolution.resolve)

        logger.info(f"Serving path {self.config.static_path}")
        logger.info(f"Proxying to {self.config.proxy_base}")
        if self.beacon is not None:
            logger.info(f"Tracking to {self.beacon.endpoint} (site {self.beacon.site_id})")
        else:
            logger.info("Tracking disabled")

        await self._socket_server.start(self._handle_connection, port=port)

    async def serve(self) -> None:
        """Start, serve until SIGTERM / SIGINT, then stop."""
        await self.start()
        self._socket_server.install_signal_handlers()
        try:
            await self._socket_server.serve_forever()
        finally:
            await self.stop()

    def shutdown(self) -> None:
        """Ask serve() to return."""
        self._socket_server.shutdown()

    async def stop(self) -> None:
        """
        Graceful shutdown.

            1. Stop accepting, close open connections
            2. Give pending beacons a short grace period
            3. Close the pooled HTTP clients
        """
        logger.info("Shutting down server...")
        await self._socket_server.close()

        if self.dispatcher is not None:
            await self.dispatcher.drain(timeout=BEACON_DRAIN_TIMEOUT)
        if self.beacon is not None:
            await self.beacon.aclose()
        await self.proxy.aclose()

        logger.info("Server stopped")

    def run(self) -> None:
        """Run the server in a new event loop (blocking)."""
        try:
            asyncio.run(self.serve())
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")

    # =========================================================================
    # REQUEST HANDLING
    # =========================================================================

    async def handle(self, request: HTTPRequest) -> HTTPResponse:
        """
        Resolve one request to a response.

        ProxyError becomes 502 and any other exception 500; neither
        escapes to the connection loop.
        """
        if self._handler is None:
            self._handler = self._middleware.wrap(self.resolution.resolve)

        try:
            return await self._handler(request)
        except ProxyError as e:
            logger.error(f"Upstream unreachable for {e.url}: {e}")
            return bad_gateway()
        except Exception as e:
            logger.exception(f"Handler error for {request.method} {request.path}: {e}")
            return internal_error()

    async def _handle_connection(self, conn: Connection) -> None:
        """
        The keep-alive loop for one connection.

        Runs in its own task; closing the connection is left to the
        socket server.
        """
        while True:
            try:
                raw_request = await conn.read_request()
            except TimeoutError:
                await self._send_error(conn, HTTPStatus.REQUEST_TIMEOUT, "Request timeout")
                break
            except ValueError:
                await self._send_error(conn, HTTPStatus.PAYLOAD_TOO_LARGE, "Request too large")
                break

            if raw_request is None:
                break

            try:
                request = self._parser.parse(raw_request, conn.address)
            except HTTPParseError as e:
                logger.debug(f"[{conn.id}] Bad request: {e}")
                await self._send_error(conn, e.status_code, str(e))
                break

            response = await self.handle(request)

            keep_alive = (
                self.config.keep_alive
                and request.is_keep_alive
                and (response.get_header("Connection") or "").lower() != "close"
            )
            if keep_alive:
                response.set_header("Connection", "keep-alive")
                response.set_header("Keep-Alive", f"timeout={int(self.config.keep_alive_timeout)}")
            else:
                response.set_header("Connection", "close")

            sent = await conn.send_response(response, head_only=request.is_head)

            if sent and response.is_success:
                self._track(request)

            if not sent or not keep_alive:
                break

            conn.set_keep_alive()

    def _track(self, request: HTTPRequest) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.spawn(request.client_address, request.uri, request.headers)

    async def _send_error(self, conn: Connection, status: int, message: str) -> None:
        """Send an error for failures before resolution (parse errors, timeouts)."""
        await conn.send_response(error_response(status, message))
