"""
=============================================================================
HTTP REQUEST PARSER
=============================================================================

Parses raw HTTP/1.1 request bytes into immutable HTTPRequest objects.
Implements the parts of RFC 7230 an edge server needs.

=============================================================================
REQUEST TARGET FORMS
=============================================================================

The second token of the request line is the "request-target". Clients and
load balancers send it in one of these forms:

    ┌──────────────────┬──────────────────────────────────────────────────┐
    │ origin-form      │ GET /blog/post?page=2 HTTP/1.1                   │
    │                  │ └── path="/blog/post", query="page=2"            │
    ├──────────────────┼──────────────────────────────────────────────────┤
    │ absolute-form    │ GET http://example.com/blog HTTP/1.1             │
    │                  │ └── uri_host="example.com", path="/blog"         │
    ├──────────────────┼──────────────────────────────────────────────────┤
    │ asterisk-form    │ OPTIONS * HTTP/1.1                               │
    │                  │ └── path="*"                                     │
    └──────────────────┴──────────────────────────────────────────────────┘

The redirect guard prefers uri_host over the Host header, so the
absolute-form host is kept rather than thrown away.

=============================================================================
WHAT IS KEPT VERBATIM
=============================================================================

The path and the query string are stored EXACTLY as received (still
percent-encoded). The proxy forwards them unchanged and the tracking beacon
reports them unchanged. Only the static file handler decodes the path, and
it does its own containment check against the static root.

Header values are decoded as ISO-8859-1, which maps every byte to one
character, so no header can fail to decode here. Whether a value is
usable (e.g. visible ASCII for the beacon) is decided by the consumer.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Optional, Dict
from urllib.parse import urlsplit, unquote
import re


class HTTPParseError(Exception):
    """
    Raised when HTTP request parsing fails.

    Carries the HTTP status code returned to the client:

        400 Bad Request              - Malformed request syntax
        405 Method Not Allowed       - Unknown method
        413 Payload Too Large        - Request exceeds size limit
        501 Not Implemented          - Transfer-Encoding framed body
        505 HTTP Version Not Supported
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class HTTPRequest:
    """
    A parsed HTTP request.

    Frozen: the resolution pipeline, the proxy forwarder and the tracking
    beacon all read the same instance and none of them may change it.

    =========================================================================
    ATTRIBUTES
    =========================================================================

        method:         GET, HEAD, POST, ...
        target:         The request-target exactly as sent
        path:           Raw path, percent-encoding intact ("/" if empty)
        query:          Raw query string without "?" ("" if absent)
        version:        "HTTP/1.1" or "HTTP/1.0"
        headers:        Header dict with LOWERCASE names
        body:           Raw body bytes (Content-Length framed)
        client_address: (ip, port) of the peer, captured at accept time
        uri_host:       Host from an absolute-form target, else None

    =========================================================================
    """

    method: str
    path: str
    query: str = ""
    version: str = "HTTP/1.1"
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_address: tuple[str, int] = ("", 0)
    uri_host: Optional[str] = None
    target: str = ""

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def path_and_query(self) -> str:
        """
        Path plus "?query" when a query string is present.

        This is what gets appended to the proxy base URL.
        """
        if self.query:
            return f"{self.path}?{self.query}"
        return self.path

    @property
    def uri(self) -> str:
        """
        The request URI as reported to analytics.

        For origin-form targets this is the path and query; for
        absolute-form targets the full target the client sent.
        """
        return self.target or self.path_and_query

    @property
    def decoded_path(self) -> str:
        """Percent-decoded path, for filesystem lookups."""
        return unquote(self.path)

    @property
    def client_ip(self) -> str:
        return self.client_address[0]

    @property
    def host(self) -> str:
        """The Host header value ("" when missing)."""
        return self.headers.get("host", "")

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent")

    @property
    def referer(self) -> Optional[str]:
        return self.headers.get("referer")

    @property
    def accept_language(self) -> Optional[str]:
        return self.headers.get("accept-language")

    @property
    def forwarded_proto(self) -> Optional[str]:
        """
        X-Forwarded-Proto, as set by the fronting load balancer.

        This is a trust-boundary header: it tells us which scheme the
        ORIGINAL client used before TLS was terminated upstream of us.
        """
        return self.headers.get("x-forwarded-proto")

    @property
    def is_head(self) -> bool:
        return self.method == "HEAD"

    @property
    def is_keep_alive(self) -> bool:
        """
        Check if this connection should be kept alive.

        HTTP/1.1 keeps alive unless "Connection: close".
        HTTP/1.0 closes unless "Connection: keep-alive".
        """
        connection = self.headers.get("connection", "").lower()

        if self.version == "HTTP/1.1":
            return connection != "close"
        return connection == "keep-alive"

    def get_header(self, name: str, default: str = "") -> str:
        """Get a header value (case-insensitive lookup)."""
        return self.headers.get(name.lower(), default)


class RequestParser:
    """
    Parses raw HTTP request bytes into HTTPRequest objects.

    ==========================================================================
    PARSER STEPS
    ==========================================================================

        1. Size check                     → 413 if too large
        2. Split at \\r\\n\\r\\n              → 400 if missing
        3. Request line                   → 400 / 405 / 505
        4. Request-target forms           → path, query, uri_host
        5. Headers (lowercased names)
        6. Framing                        → 400 / 501 on Transfer-Encoding
        7. Body (exactly Content-Length bytes)

    ==========================================================================
    """

    VALID_METHODS = {
        "GET",
        "POST",
        "PUT",
        "DELETE",
        "PATCH",
        "HEAD",
        "OPTIONS",
        "TRACE",
        "CONNECT",
    }

    REQUEST_LINE_PATTERN = re.compile(r"^([A-Z]+) ([^ ]+) (HTTP/\d\.\d)$")
    HEADER_PATTERN = re.compile(r"^([^:]+):\s*(.*)$")

    def __init__(self, max_request_size: int = 10 * 1024 * 1024):
        self.max_request_size = max_request_size

    def parse(
        self,
        data: bytes,
        client_address: tuple[str, int] = ("", 0)
    ) -> HTTPRequest:
        """
        Parse raw HTTP request data into an HTTPRequest object.

        Args:
            data: Raw HTTP request bytes from the connection.
            client_address: Peer (ip, port) captured when the connection
                            was accepted.

        Returns:
            Parsed HTTPRequest object.

        Raises:
            HTTPParseError: If the request is malformed.
        """
        if len(data) > self.max_request_size:
            raise HTTPParseError(
                f"Request too large: {len(data)} bytes",
                status_code=413
            )

        header_end = data.find(b"\r\n\r\n")
        if header_end == -1:
            raise HTTPParseError("Incomplete request: no header terminator")

        header_section = data[:header_end].decode("iso-8859-1")
        body = data[header_end + 4:]

        lines = header_section.split("\r\n")
        method, target, version = self._parse_request_line(lines[0])
        path, query, uri_host = self._parse_target(method, target)
        headers = self._parse_headers(lines[1:])
        self._check_framing(headers)

        try:
            content_length = int(headers.get("content-length", 0))
        except ValueError:
            raise HTTPParseError("Invalid Content-Length header") from None

        if content_length < 0:
            raise HTTPParseError("Invalid Content-Length header")

        if len(body) < content_length:
            raise HTTPParseError(
                f"Incomplete body: expected {content_length} bytes, got {len(body)}"
            )

        return HTTPRequest(
            method=method,
            path=path,
            query=query,
            version=version,
            headers=headers,
            body=body[:content_length],
            client_address=client_address,
            uri_host=uri_host,
            target=target,
        )

    @staticmethod
    def _check_framing(headers: Dict[str, str]) -> None:
        """
        Refuse bodies framed by Transfer-Encoding.

        Only Content-Length framing is read. A request carrying both headers
        is the classic smuggling shape (RFC 7230 section 3.3.3) and gets a
        400; Transfer-Encoding alone gets a 501. Either way the connection
        closes, so bytes after the header block are never parsed as a
        request of their own.
        """
        if "transfer-encoding" not in headers:
            return
        if "content-length" in headers:
            raise HTTPParseError("Both Transfer-Encoding and Content-Length present")
        raise HTTPParseError(
            f"Unsupported Transfer-Encoding: {headers['transfer-encoding']}",
            status_code=501
        )

    def _parse_request_line(self, line: str) -> tuple[str, str, str]:
        """
        Parse "METHOD SP REQUEST-TARGET SP HTTP-VERSION".

        Returns:
            Tuple of (method, target, version)
        """
        match = self.REQUEST_LINE_PATTERN.match(line)
        if not match:
            raise HTTPParseError(f"Invalid request line: {line}")

        method, target, version = match.groups()

        if method not in self.VALID_METHODS:
            raise HTTPParseError(f"Invalid method: {method}", status_code=405)

        if version not in ("HTTP/1.0", "HTTP/1.1"):
            raise HTTPParseError(
                f"Unsupported HTTP version: {version}",
                status_code=505
            )

        return method, target, version

    def _parse_target(self, method: str, target: str) -> tuple[str, str, Optional[str]]:
        """
        Split a request-target into (path, query, uri_host).

        Path and query stay percent-encoded.
        """
        if target == "*":
            return "*", "", None

        if target.startswith("/"):
            path, _, query = target.partition("?")
            return path or "/", query, None

        if method == "CONNECT":
            # authority-form: "example.com:443"
            host = target.rsplit(":", 1)[0]
            return "/", "", host or None

        parsed = urlsplit(target)
        if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
            raise HTTPParseError(f"Invalid request target: {target}")

        return parsed.path or "/", parsed.query, parsed.hostname

    def _parse_headers(self, lines: list[str]) -> Dict[str, str]:
        """
        Parse header lines into a dict with lowercase names.

        Repeated headers are folded into one comma-separated value and
        obsolete line folding (continuation lines) is joined with a space.
        Malformed lines are skipped.
        """
        headers: Dict[str, str] = {}
        current_name = None

        for line in lines:
            if not line:
                continue

            if line[0] in (" ", "\t"):
                if current_name is not None:
                    headers[current_name] += " " + line.strip()
                continue

            match = self.HEADER_PATTERN.match(line)
            if not match:
                continue

            name, value = match.groups()
            name = name.strip().lower()
            value = value.strip()
            current_name = name

            if name in headers:
                headers[name] += ", " + value
            else:
                headers[name] = value

        return headers


def parse_request(
    data: bytes,
    client_address: tuple[str, int] = ("", 0),
    max_size: int = 10 * 1024 * 1024
) -> HTTPRequest:
    """Parse one request with a throwaway RequestParser."""
    parser = RequestParser(max_request_size=max_size)
    return parser.parse(data, client_address)
