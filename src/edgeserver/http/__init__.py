"""
=============================================================================
HTTP PROTOCOL LAYER
=============================================================================

Turns bytes from a connection into HTTPRequest objects and HTTPResponse
objects back into bytes.

    ┌─────────────────────────────────────────────────────────────────────┐
    │ request.py       bytes → HTTPRequest (frozen, query kept verbatim)  │
    │ response.py      HTTPResponse, ResponseBuilder, error helpers       │
    │ status_codes.py  HTTPStatus enum, reason_phrase() for any code      │
    │ mime_types.py    file extension → Content-Type                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from .request import HTTPRequest, RequestParser, HTTPParseError, parse_request
from .response import (
    HTTPResponse,
    ResponseBuilder,
    redirect,           # 301/302 Redirect
    error_response,     # JSON error, Connection: close
    bad_gateway,        # 502 Bad Gateway
    internal_error,     # 500 Internal Server Error
    format_http_date,
)
from .status_codes import HTTPStatus, reason_phrase, is_success
from .mime_types import get_mime_type, get_content_type

__all__ = [
    "HTTPRequest",
    "RequestParser",
    "HTTPParseError",
    "parse_request",

    "HTTPResponse",
    "ResponseBuilder",
    "redirect",
    "error_response",
    "bad_gateway",
    "internal_error",
    "format_http_date",

    "HTTPStatus",
    "reason_phrase",
    "is_success",

    "get_mime_type",
    "get_content_type",
]
