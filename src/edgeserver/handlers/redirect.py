"""
=============================================================================
HTTPS REDIRECT GUARD
=============================================================================

First stage of the resolution chain. In production, any request that did
not reach the load balancer over HTTPS is answered with a permanent
redirect to the HTTPS version of the same URL.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   browser ──http──► load balancer ──http──► edgeserver              │
    │                     (sets X-Forwarded-Proto: http)                  │
    │                                                                      │
    │   edgeserver: 301 Location: https://<host><path>                    │
    │                                                                      │
    │   browser ──https─► load balancer ──http──► edgeserver              │
    │                     (sets X-Forwarded-Proto: https) → fall through  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Host selection, in order:

    1. host of an absolute-form request target (GET http://host/path)
    2. the Host header
    3. "" (the redirect is still sent, with an empty host segment)

The query string is NOT carried over to the redirect target.

When X-Forwarded-Proto occurs more than once, or lists several
comma-separated values, only the first value counts. It is the one set by
the proxy nearest the client, so "https, https" passes and "http, https"
is redirected.

=============================================================================
"""

import logging
from typing import Optional

from ..config import EdgeConfig
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse, redirect
from ..pipeline import StageResult


logger = logging.getLogger(__name__)


class RedirectGuard:
    """Decides whether a request must be bounced to HTTPS."""

    name = "redirect"

    def __init__(self, config: EdgeConfig):
        self.config = config

    async def resolve(self, request: HTTPRequest) -> StageResult:
        response = self.decide(request)
        if response is None:
            return StageResult.not_applicable()
        return StageResult.handled(response)

    def decide(self, request: HTTPRequest) -> Optional[HTTPResponse]:
        """
        Return a 301 response, or None to let the chain continue.

        None is the normal outcome outside production and for requests
        whose first X-Forwarded-Proto value is exactly "https".
        """
        if not self.config.production:
            return None

        if self.client_proto(request) == "https":
            return None

        location = self.redirect_target(request)
        logger.debug(f"Redirecting: {request.target or request.path!r} => {location!r}")
        return redirect(location, permanent=True)

    @staticmethod
    def client_proto(request: HTTPRequest) -> Optional[str]:
        """First X-Forwarded-Proto value, or None when the header is absent."""
        if request.forwarded_proto is None:
            return None
        return request.forwarded_proto.split(",", 1)[0].strip()

    @staticmethod
    def redirect_target(request: HTTPRequest) -> str:
        """Build "https://" + effective host + path."""
        host = request.uri_host or request.host or ""
        return f"https://{host}{request.path}"
