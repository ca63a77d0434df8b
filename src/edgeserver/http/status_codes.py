"""
=============================================================================
HTTP STATUS CODES
=============================================================================

Status codes the edge server produces itself, plus a reason-phrase lookup
for arbitrary codes relayed from the upstream origin.

=============================================================================
WHO PRODUCES WHICH CODE
=============================================================================

    ┌────────┬───────────────────────────────────────────────────────────┐
    │  200   │ Static file served / proxied upstream success            │
    │  206   │ Static file range request                                │
    │  301   │ Redirect guard (force HTTPS)                             │
    │  304   │ Static file conditional request (ETag / Last-Modified)   │
    │  4xx   │ Malformed request (parser), 408 read timeout             │
    │  416   │ Unsatisfiable range on a static file                     │
    │  500   │ Unexpected handler failure                               │
    │  502   │ Upstream unreachable (terminal proxy failure)            │
    │  any   │ Whatever the upstream returned, relayed verbatim         │
    └────────┴───────────────────────────────────────────────────────────┘

Upstream responses can carry codes this enum does not list, so response
serialization goes through reason_phrase(int) rather than the enum.

=============================================================================
"""

from enum import IntEnum


class HTTPStatus(IntEnum):
    """
    Status codes with their reason phrases. Members compare equal to ints:

        >>> HTTPStatus.BAD_GATEWAY == 502
        True
        >>> HTTPStatus.BAD_GATEWAY.phrase
        'Bad Gateway'
    """

    def __new__(cls, code: int, phrase: str):
        member = int.__new__(cls, code)
        member._value_ = code
        member.phrase = phrase
        return member

    OK = 200, "OK"
    NO_CONTENT = 204, "No Content"
    PARTIAL_CONTENT = 206, "Partial Content"

    MOVED_PERMANENTLY = 301, "Moved Permanently"
    FOUND = 302, "Found"
    NOT_MODIFIED = 304, "Not Modified"

    BAD_REQUEST = 400, "Bad Request"
    NOT_FOUND = 404, "Not Found"
    METHOD_NOT_ALLOWED = 405, "Method Not Allowed"
    REQUEST_TIMEOUT = 408, "Request Timeout"
    PAYLOAD_TOO_LARGE = 413, "Payload Too Large"
    RANGE_NOT_SATISFIABLE = 416, "Range Not Satisfiable"

    INTERNAL_SERVER_ERROR = 500, "Internal Server Error"
    NOT_IMPLEMENTED = 501, "Not Implemented"
    BAD_GATEWAY = 502, "Bad Gateway"
    HTTP_VERSION_NOT_SUPPORTED = 505, "HTTP Version Not Supported"

    @property
    def is_success(self) -> bool:
        return 200 <= self < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self < 400

    @property
    def is_error(self) -> bool:
        return self >= 400


def reason_phrase(code: int, default: str = "") -> str:
    """
    Reason phrase for any integer status code.

    Codes missing from HTTPStatus (418, 429, 599, whatever the upstream
    sends) get `default`; HTTP/1.1 allows an empty phrase.
    """
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return default


def is_success(code: int) -> bool:
    return 200 <= int(code) < 300
