"""
=============================================================================
ACCESS LOG MIDDLEWARE
=============================================================================

One log line per request, on the "edgeserver.access" logger, with a
request ID that is also returned to the client.

=============================================================================
LOG FORMATS
=============================================================================

    APACHE COMBINED LOG FORMAT (default), plus stage and duration:
    ┌─────────────────────────────────────────────────────────────────────┐
    │ 203.0.113.7 - - [19/Oct/2026:10:55:36 +0000] "GET /blog HTTP/1.1"  │
    │ 200 5120 "https://example.com/" "Mozilla/5.0 ..." proxy 41.27ms    │
    └─────────────────────────────────────────────────────────────────────┘

    JSON FORMAT (for log aggregators):
    ┌─────────────────────────────────────────────────────────────────────┐
    │ {"request_id": "a1b2c3d4", "method": "GET", "path": "/blog",       │
    │  "status_code": 200, "source": "proxy", "duration_ms": 41.27, ...} │
    └─────────────────────────────────────────────────────────────────────┘

"source" is the stage that produced the response: redirect, static, proxy,
or error when the server loop had to build an error response itself.

The line is written when the response has been RESOLVED, before its body
is streamed to the client. Size is the Content-Length when known and "-"
for bodies of unknown length.

=============================================================================
"""

import time
import json
import uuid
import logging
from typing import Optional
from dataclasses import dataclass, asdict

from .base import Middleware, NextHandler
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse


# Namespaced so deployments can route access logs separately:
#   logging.getLogger("edgeserver.access").addHandler(file_handler)
logger = logging.getLogger("edgeserver.access")


@dataclass
class RequestLog:
    """Structured log entry for one request."""

    request_id: str
    method: str
    uri: str
    version: str
    client_ip: str
    referer: str
    user_agent: str
    status_code: int
    content_length: Optional[int]
    source: str
    duration_ms: float
    timestamp: str

    def to_dict(self) -> dict:
        entry = asdict(self)
        entry["duration_ms"] = round(self.duration_ms, 2)
        return entry

    def to_text(self) -> str:
        """Apache combined log format with stage and duration appended."""
        size = "-" if self.content_length is None else str(self.content_length)
        return (
            f'{self.client_ip} - - [{self.timestamp}] '
            f'"{self.method} {self.uri} {self.version}" {self.status_code} {size} '
            f'"{self.referer}" "{self.user_agent}" '
            f'{self.source or "-"} {self.duration_ms:.2f}ms'
        )


class AccessLogMiddleware(Middleware):
    """
    Request logging middleware. Add it FIRST so it sees every request.

        pipeline.add(AccessLogMiddleware(log_format="json"))
    """

    def __init__(
        self,
        log_format: str = "text",
        include_request_id: bool = True,
        log_level: int = logging.INFO,
    ):
        """
        Args:
            log_format: "text" (combined) or "json".
            include_request_id: Add X-Request-ID to every response.
            log_level: Level the access lines are logged at.
        """
        self.log_format = log_format
        self.include_request_id = include_request_id
        self.log_level = log_level

    async def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.monotonic()

        try:
            response = await next(request)
        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.error(
                f"[{request_id}] Request failed: {request.method} {request.uri} "
                f"- {type(e).__name__}: {e} ({duration_ms:.2f}ms)"
            )
            raise

        duration_ms = (time.monotonic() - start_time) * 1000

        log_entry = RequestLog(
            request_id=request_id,
            method=request.method,
            uri=request.uri,
            version=request.version,
            client_ip=request.client_ip,
            referer=request.referer or "-",
            user_agent=request.user_agent or "-",
            status_code=int(response.status),
            content_length=_response_size(response),
            source=response.source,
            duration_ms=duration_ms,
            timestamp=time.strftime("%d/%b/%Y:%H:%M:%S %z"),
        )

        if self.log_format == "json":
            logger.log(self.log_level, json.dumps(log_entry.to_dict()))
        else:
            logger.log(self.log_level, log_entry.to_text())

        if self.include_request_id:
            response.set_header("X-Request-ID", request_id)

        return response


def _response_size(response: HTTPResponse) -> Optional[int]:
    length = response.get_header("Content-Length")
    if length is not None:
        try:
            return int(length)
        except ValueError:
            return None
    if response.is_streaming:
        return None
    return len(response.body)
