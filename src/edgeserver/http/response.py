"""
=============================================================================
HTTP RESPONSE
=============================================================================

The response object every resolution stage produces, and the builder the
stages use to make one.

=============================================================================
TWO KINDS OF BODY
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │  IN-MEMORY BODY (body: bytes)                                       │
    │  ───────────────────────────────────────────────────────────────── │
    │  Redirects, error responses, 304s. Serialized in one go with       │
    │  to_bytes(); Content-Length is computed automatically.              │
    ├─────────────────────────────────────────────────────────────────────┤
    │  STREAMED BODY (stream: async iterator of bytes)                    │
    │  ───────────────────────────────────────────────────────────────── │
    │  Static files and proxied upstream bodies. The connection writes    │
    │  head_bytes() and then each chunk as it arrives. If the producer    │
    │  knows the length it sets Content-Length; otherwise the writer      │
    │  uses Transfer-Encoding: chunked.                                   │
    │                                                                      │
    │  A streamed response owns a resource (open file, upstream           │
    │  connection). aclose() releases it and MUST be called whether the   │
    │  body was fully sent or the client went away half way.             │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Union, AsyncIterator, Callable, Awaitable
import json

from .status_codes import HTTPStatus, reason_phrase


BodyStream = AsyncIterator[bytes]

# A header that occurs once, or every value of a repeated header in order
HeaderValue = Union[str, List[str]]

# Responses that never carry a body, whatever the headers say.
BODYLESS_STATUSES = {HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED}


@dataclass
class HTTPResponse:
    """
    Represents an HTTP response to be sent to the client.

        status:   Integer status code. Upstream codes outside HTTPStatus
                  are allowed and relayed as-is.
        headers:  Header name → value. Names keep the case they were given
                  with; lookups through get_header() are case-insensitive.
                  A repeated header (Set-Cookie from the upstream) maps to
                  a list and is written as one line per value.
        body:     In-memory body.
        stream:   Optional streamed body (takes precedence over body).
        source:   Which stage produced the response ("redirect", "static",
                  "proxy", "error"). Used by the access log.
        on_close: Coroutine function releasing the stream's resource.
    """

    status: int = HTTPStatus.OK
    headers: Dict[str, HeaderValue] = field(default_factory=dict)
    body: bytes = b""
    stream: Optional[BodyStream] = field(default=None, repr=False)
    version: str = "HTTP/1.1"
    source: str = ""
    on_close: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False)

    @property
    def status_line(self) -> str:
        """
        Get the HTTP status line, e.g. "HTTP/1.1 200 OK".

        Unknown upstream codes get an empty reason phrase; the space before
        it is still required.
        """
        return f"{self.version} {int(self.status)} {reason_phrase(self.status)}"

    @property
    def is_success(self) -> bool:
        return 200 <= int(self.status) < 300

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None

    @property
    def has_body(self) -> bool:
        """False for 1xx, 204 and 304, which are bodyless by definition."""
        return int(self.status) >= 200 and int(self.status) not in BODYLESS_STATUSES

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup. Repeated values come back comma-joined."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value if isinstance(value, str) else ", ".join(value)
        return default

    def has_header(self, name: str) -> bool:
        return self.get_header(name) is not None

    def remove_header(self, name: str) -> None:
        lowered = name.lower()
        for key in [k for k in self.headers if k.lower() == lowered]:
            del self.headers[key]

    def set_header(self, name: str, value: str) -> "HTTPResponse":
        """Set a response header, replacing any differently-cased copy."""
        self.remove_header(name)
        self.headers[name] = value
        return self

    @property
    def uses_chunked_encoding(self) -> bool:
        """True when the writer must frame the body with chunked encoding."""
        return self.is_streaming and self.has_body and not self.has_header("Content-Length")

    def head_bytes(self, server_name: str = "edgeserver") -> bytes:
        """
        Serialize the status line and headers.

        Adds the framing headers the connection writer relies on:

            Content-Length     in-memory bodies (if not already set)
            Transfer-Encoding  streamed bodies without a known length
            Date, Server       if not already present
        """
        response_headers = dict(self.headers)

        if self.uses_chunked_encoding:
            response_headers["Transfer-Encoding"] = "chunked"
        elif not self.is_streaming and not self.has_header("Content-Length") and self.has_body:
            response_headers["Content-Length"] = str(len(self.body))

        if not self.has_header("Date"):
            response_headers["Date"] = format_http_date(datetime.now(timezone.utc))

        if not self.has_header("Server"):
            response_headers["Server"] = server_name

        lines = [self.status_line]
        for name, value in response_headers.items():
            for item in ([value] if isinstance(value, str) else value):
                lines.append(f"{name}: {item}")
        lines.append("")

        return "\r\n".join(lines).encode("iso-8859-1", errors="replace") + b"\r\n"

    def to_bytes(self, server_name: str = "edgeserver") -> bytes:
        """
        Serialize an in-memory response (status line, headers, body).

        Streamed responses are written chunk by chunk by the connection,
        never through this method.
        """
        if self.is_streaming:
            raise ValueError("Streamed responses cannot be serialized in one piece")

        body = self.body if self.has_body else b""
        return self.head_bytes(server_name) + body

    async def aclose(self) -> None:
        """Release the stream's resource. Safe to call more than once."""
        on_close, self.on_close = self.on_close, None
        stream_close = getattr(self.stream, "aclose", None)
        if stream_close is not None:
            await stream_close()
        if on_close is not None:
            await on_close()


class ResponseBuilder:
    """
    Fluent builder for constructing HTTP responses.

        response = (ResponseBuilder()
            .status(HTTPStatus.OK)
            .header("ETag", '"123-45"')
            .stream(chunks, on_close=fp.close)
            .build())
    """

    def __init__(self):
        self._status: int = HTTPStatus.OK
        self._headers: Dict[str, HeaderValue] = {}
        self._body: bytes = b""
        self._stream: Optional[BodyStream] = None
        self._on_close: Optional[Callable[[], Awaitable[None]]] = None
        self._source = ""

    def status(self, status: int) -> "ResponseBuilder":
        self._status = status
        return self

    def header(self, name: str, value: str) -> "ResponseBuilder":
        self._headers[name] = value
        return self

    def headers(self, headers: Dict[str, HeaderValue]) -> "ResponseBuilder":
        self._headers.update(headers)
        return self

    def source(self, source: str) -> "ResponseBuilder":
        """Record which resolution stage built this response."""
        self._source = source
        return self

    def json(self, data: Any) -> "ResponseBuilder":
        self._body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self._headers["Content-Type"] = "application/json; charset=utf-8"
        return self

    def stream(
        self,
        chunks: BodyStream,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> "ResponseBuilder":
        """
        Use an async iterator as the body.

        Args:
            chunks: Async iterator producing body bytes.
            on_close: Coroutine function releasing the underlying resource.
        """
        self._stream = chunks
        self._on_close = on_close
        return self

    def redirect(self, location: str, permanent: bool = False) -> "ResponseBuilder":
        """
        Create a redirect response.

        301 Moved Permanently (permanent=True): browsers and search
        engines update their links. Used for the HTTPS upgrade.
        302 Found: temporary.
        """
        self._status = HTTPStatus.MOVED_PERMANENTLY if permanent else HTTPStatus.FOUND
        self._headers["Location"] = location
        return self

    def close_connection(self) -> "ResponseBuilder":
        self._headers["Connection"] = "close"
        return self

    def build(self) -> HTTPResponse:
        return HTTPResponse(
            status=self._status,
            headers=self._headers,
            body=self._body,
            stream=self._stream,
            source=self._source,
            on_close=self._on_close,
        )


def format_http_date(dt: datetime) -> str:
    """
    Format a datetime as an HTTP-date (RFC 7231).

    Format: Day, DD Mon YYYY HH:MM:SS GMT
    Example: Wed, 01 Jan 2026 12:00:00 GMT

    HTTP dates are ALWAYS in GMT (UTC), never local time.
    """
    days = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
    months = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

    dt = dt.astimezone(timezone.utc)
    return (
        f"{days[dt.weekday()]}, "
        f"{dt.day:02d} {months[dt.month - 1]} {dt.year} "
        f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d} GMT"
    )


def redirect(location: str, permanent: bool = False) -> HTTPResponse:
    """Create a redirect response (301 or 302) with an empty body."""
    return ResponseBuilder().redirect(location, permanent).source("redirect").build()


def error_response(status: int, message: str) -> HTTPResponse:
    """
    Create a JSON error response that closes the connection.

    Used for parse errors, timeouts, upstream failures and unexpected
    exceptions. The message is generic; internal details stay in the log.
    """
    return (ResponseBuilder()
        .status(status)
        .json({"error": message})
        .close_connection()
        .source("error")
        .build())


def bad_gateway(message: str = "Bad Gateway") -> HTTPResponse:
    """502: the upstream origin could not be reached."""
    return error_response(HTTPStatus.BAD_GATEWAY, message)


def internal_error(message: str = "Internal Server Error") -> HTTPResponse:
    return error_response(HTTPStatus.INTERNAL_SERVER_ERROR, message)
