"""
=============================================================================
CONNECTION MANAGEMENT
=============================================================================

Wraps one accepted client connection (an asyncio StreamReader/StreamWriter
pair) with request-level reads and response-level writes.

=============================================================================
TCP IS A BYTE STREAM, NOT A MESSAGE PROTOCOL
=============================================================================

TCP only guarantees that bytes arrive in order and intact. One read() may
return half a request line, or one request plus the start of the next
(pipelining). So reads are BUFFERED:

    ┌─────────────────────────────────────────────────────────────────────┐
    │   read_request()                                                    │
    │                                                                      │
    │   while no b"\\r\\n\\r\\n" in buffer:   read() → buffer                  │
    │   content_length = Content-Length from the header block             │
    │   while body incomplete:           read() → buffer                  │
    │   return buffer[:request_end]      keep the rest for next call      │
    └─────────────────────────────────────────────────────────────────────┘

Timeouts: the first request gets `timeout` seconds, later requests on a
kept-alive connection get `keep_alive_timeout`. A keep-alive timeout simply
ends the connection; a first-request timeout is reported so the server can
answer 408.

=============================================================================
WRITING STREAMED BODIES
=============================================================================

    head_bytes()                           status line + headers
    body chunk, drain(), body chunk, ...   Content-Length framed, or
    "<hex len>\\r\\n<chunk>\\r\\n" ... "0\\r\\n\\r\\n"   chunked framing

drain() after every chunk applies backpressure: a slow client slows down
the file read or upstream read instead of filling memory.

send_response() ALWAYS calls response.aclose(), whether the body was sent,
the client disconnected or the upstream broke off, so no file handle or
upstream connection outlives the request.

=============================================================================
"""

import asyncio
import time
import logging
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional

import httpx

from ..http.response import HTTPResponse


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states, for logging and debugging."""
    NEW = "new"
    READING = "reading"
    PROCESSING = "processing"
    WRITING = "writing"
    KEEP_ALIVE = "keep_alive"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """
    Represents a client connection.

    Attributes:
        reader, writer: The asyncio stream pair from start_server().
        address: Client's (ip, port), captured at accept time.
        id: Short connection identifier (for logging).
        requests_handled: Number of requests read on this connection.
    """

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    address: tuple[str, int]

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    last_activity: float = field(default_factory=time.time)
    requests_handled: int = 0

    buffer_size: int = 8192
    timeout: float = 30.0
    keep_alive_timeout: float = 5.0
    max_request_size: int = 10 * 1024 * 1024
    server_name: str = "edgeserver"

    _buffer: bytes = field(default=b"", repr=False)

    @classmethod
    def from_streams(
        cls,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        **settings,
    ) -> "Connection":
        """Build a Connection, reading the peer address off the transport."""
        peer = writer.get_extra_info("peername") or ("", 0)
        # IPv6 peers come as (host, port, flowinfo, scope_id)
        return cls(reader=reader, writer=writer, address=(peer[0], peer[1]), **settings)

    @property
    def client_ip(self) -> str:
        return self.address[0]

    @property
    def client_port(self) -> int:
        return self.address[1]

    async def read_request(self) -> Optional[bytes]:
        """
        Read one complete HTTP request.

        Returns:
            Complete request bytes, or None if the client closed the
            connection or a keep-alive wait timed out.

        Raises:
            TimeoutError: The first request did not arrive in time.
            ValueError: The request exceeds max_request_size.
        """
        self.state = ConnectionState.READING
        self.last_activity = time.time()

        timeout = self.keep_alive_timeout if self.requests_handled > 0 else self.timeout

        try:
            while b"\r\n\r\n" not in self._buffer:
                if not await self._fill(timeout):
                    return None

            header_end = self._buffer.find(b"\r\n\r\n")
            body_start = header_end + 4
            content_length = self._parse_content_length(self._buffer[:header_end])

            while len(self._buffer) - body_start < content_length:
                if not await self._fill(timeout):
                    break  # Closed mid-body; the parser reports it

        except asyncio.TimeoutError:
            if self.requests_handled > 0:
                logger.debug(f"[{self.id}] Keep-alive timeout")
                return None
            raise TimeoutError("Request read timeout") from None

        request_end = body_start + content_length
        request_data = self._buffer[:request_end]
        self._buffer = self._buffer[request_end:]

        self.requests_handled += 1
        self.state = ConnectionState.PROCESSING
        self.last_activity = time.time()
        return request_data

    async def _fill(self, timeout: float) -> bool:
        """Read once into the buffer. False when the client has gone."""
        try:
            chunk = await asyncio.wait_for(self.reader.read(self.buffer_size), timeout)
        except (ConnectionResetError, BrokenPipeError):
            return False

        if not chunk:
            return False

        self._buffer += chunk
        self.last_activity = time.time()

        if len(self._buffer) > self.max_request_size:
            raise ValueError(f"Request too large: {len(self._buffer)} bytes")
        return True

    @staticmethod
    def _parse_content_length(headers: bytes) -> int:
        """
        Find Content-Length in the raw header block (0 when absent).

        Also 0 when Transfer-Encoding is present: the parser refuses such a
        request and the connection closes without reading a body.
        """
        lines = headers.decode("iso-8859-1").lower().split("\r\n")
        if any(line.startswith("transfer-encoding:") for line in lines):
            return 0
        try:
            for line in lines:
                if line.startswith("content-length:"):
                    return max(int(line.split(":", 1)[1].strip()), 0)
        except ValueError:
            pass  # The parser rejects it with a 400
        return 0

    async def send_response(self, response: HTTPResponse, head_only: bool = False) -> bool:
        """
        Write a response, streaming its body if it has one.

        Args:
            response: The response to send. Its aclose() is always called.
            head_only: Send status line and headers only (HEAD requests).

        Returns:
            True if the whole response was written, False if the client
            went away or the body stream failed part way.
        """
        self.state = ConnectionState.WRITING
        self.last_activity = time.time()

        try:
            self.writer.write(response.head_bytes(self.server_name))

            if head_only or not response.has_body:
                pass
            elif response.is_streaming:
                await self._write_stream(response)
            else:
                self.writer.write(response.body)

            await self.writer.drain()
            self.last_activity = time.time()
            return True

        except (OSError, httpx.HTTPError) as e:
            logger.warning(f"[{self.id}] Send failed: {e!r}")
            return False

        finally:
            await response.aclose()

    async def _write_stream(self, response: HTTPResponse) -> None:
        chunked = response.uses_chunked_encoding

        async for chunk in response.stream:
            if not chunk:
                continue
            if chunked:
                self.writer.write(f"{len(chunk):X}\r\n".encode("ascii") + chunk + b"\r\n")
            else:
                self.writer.write(chunk)
            await self.writer.drain()

        if chunked:
            self.writer.write(b"0\r\n\r\n")

    def set_keep_alive(self) -> None:
        self.state = ConnectionState.KEEP_ALIVE

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self.state == ConnectionState.CLOSED:
            return

        self.state = ConnectionState.CLOSING
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass  # Peer already reset the connection

        self.state = ConnectionState.CLOSED
        logger.debug(f"[{self.id}] Connection closed after {self.requests_handled} requests")

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
