"""
=============================================================================
ASYNC SOCKET SERVER
=============================================================================

Owns the listening socket: bind, listen, accept, hand every accepted
connection to a coroutine, and shut down cleanly on SIGTERM / SIGINT.

=============================================================================
ONE TASK PER CONNECTION
=============================================================================

asyncio.start_server() runs the accept loop inside the event loop and
starts one task per accepted connection:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   start()  ──► asyncio.start_server(_on_connect, host, port)        │
    │                    │                                                 │
    │                    │  accept()                                       │
    │                    ▼                                                 │
    │               _on_connect(reader, writer)      (new task)           │
    │                    │                                                 │
    │                    ├──► Connection.from_streams()  peer address     │
    │                    └──► await connection_handler(conn)              │
    │                                                                      │
    │   serve_forever()  waits for shutdown()                             │
    │   shutdown()       stop accepting, close open connections           │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A task waiting on a slow client costs a few kilobytes, not a thread, so
thousands of idle keep-alive connections are fine.

=============================================================================
SIGNALS
=============================================================================

    SIGTERM (docker stop, systemd stop, kill <pid>)  → graceful shutdown
    SIGINT  (Ctrl+C)                                 → graceful shutdown

Handlers are installed with loop.add_signal_handler, so they run as normal
event loop callbacks. Platforms without it (Windows) fall back to
KeyboardInterrupt.

=============================================================================
"""

import asyncio
import signal
import logging
from typing import Optional, Callable, Awaitable, Tuple, Set

from ..config import EdgeConfig
from .connection import Connection


logger = logging.getLogger(__name__)


ConnectionHandler = Callable[[Connection], Awaitable[None]]


class AsyncSocketServer:
    """
    Low-level TCP server on asyncio streams.

    Usage:
        async def handle_connection(conn: Connection):
            ...

        server = AsyncSocketServer(config)
        await server.start(handle_connection)
        await server.serve_forever()          # until shutdown()
    """

    def __init__(self, config: EdgeConfig):
        self.config = config
        self._server: Optional[asyncio.Server] = None
        self._handler: Optional[ConnectionHandler] = None
        self._connections: Set[Connection] = set()
        self._shutdown_event: Optional[asyncio.Event] = None
        self._signals_installed = False

    @property
    def is_running(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def address(self) -> Tuple[str, int]:
        """The bound (host, port); reflects the real port when bound to 0."""
        if self._server and self._server.sockets:
            sockname = self._server.sockets[0].getsockname()
            return sockname[0], sockname[1]
        return self.config.host, self.config.port

    async def start(self, connection_handler: ConnectionHandler, port: Optional[int] = None) -> None:
        """
        Bind and start accepting connections. Returns once listening.

        Args:
            connection_handler: Coroutine function run for each connection.
            port: Override config.port (0 binds an ephemeral port).

        Raises:
            OSError: The address could not be bound.
        """
        self._handler = connection_handler
        self._shutdown_event = asyncio.Event()
        bind_port = self.config.port if port is None else port

        try:
            self._server = await asyncio.start_server(
                self._on_connect,
                host=self.config.host,
                port=bind_port,
                backlog=self.config.backlog,
                reuse_address=True,
            )
        except OSError as e:
            logger.error(f"Failed to bind to {self.config.host}:{bind_port}: {e}")
            raise

        host, bound_port = self.address
        logger.info(f"Listening on port {bound_port} ({host})")

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = Connection.from_streams(
            reader,
            writer,
            buffer_size=self.config.buffer_size,
            timeout=self.config.timeout,
            keep_alive_timeout=self.config.keep_alive_timeout,
            max_request_size=self.config.max_request_size,
            server_name=self.config.server_name,
        )
        logger.debug(f"[{conn.id}] Accepted connection from {conn.client_ip}:{conn.client_port}")

        self._connections.add(conn)
        try:
            await self._handler(conn)
        finally:
            self._connections.discard(conn)
            await conn.close()

    def install_signal_handlers(self) -> None:
        """Route SIGTERM and SIGINT to shutdown(). Main thread only."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported here")
                continue
            self._signals_installed = True

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, initiating shutdown...")
        self.shutdown()

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        self._signals_installed = False

    async def serve_forever(self) -> None:
        """Block until shutdown() is called, then stop the listener."""
        if self._shutdown_event is None:
            raise RuntimeError("start() must be called before serve_forever()")
        await self._shutdown_event.wait()
        await self.close()

    def shutdown(self) -> None:
        """Ask serve_forever() to return. Idempotent."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def close(self) -> None:
        """Stop accepting, close open connections and release the socket."""
        self._remove_signal_handlers()

        if self._server is None:
            return

        logger.info("Shutting down socket server...")
        self._server.close()

        for conn in list(self._connections):
            await conn.close()

        await self._server.wait_closed()
        self._server = None
        logger.info("Socket server stopped")
