"""
=============================================================================
MIDDLEWARE CHAIN
=============================================================================

Async middleware wrapped around the resolution pipeline. Each layer gets
the request and a `next` coroutine function; it may act before and after
awaiting `next`, or answer on its own without calling it.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   request ──► AccessLog ──► (extra layers) ──► resolution.resolve   │
    │                  │                                   │               │
    │            start timer                    redirect / static / proxy │
    │                  │                                   │               │
    │   response ◄── log line,   ◄─────────────────────────┘               │
    │                X-Request-ID                                          │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A layer sees the response before the connection writes it. It may change
headers; it must leave a streamed body alone.

=============================================================================
"""

from abc import ABC, abstractmethod
from functools import partial
from typing import Callable, Awaitable, List, Iterator
import logging

from ..http.request import HTTPRequest
from ..http.response import HTTPResponse


logger = logging.getLogger(__name__)


NextHandler = Callable[[HTTPRequest], Awaitable[HTTPResponse]]


class Middleware(ABC):
    """
    One layer of the chain.

        class ServerTiming(Middleware):
            async def __call__(self, request, next):
                started = time.monotonic()
                response = await next(request)
                response.set_header("Server-Timing", f"edge;dur={...}")
                return response
    """

    @abstractmethod
    async def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        """Return a response, normally the one produced by `await next(request)`."""

    @property
    def name(self) -> str:
        return type(self).__name__


class MiddlewarePipeline:
    """
    Ordered list of middleware layers. The first one added sees the request
    first and the response last.

        chain = MiddlewarePipeline().use(AccessLogMiddleware())
        handler = chain.wrap(resolution.resolve)
        response = await handler(request)
    """

    def __init__(self):
        self._layers: List[Middleware] = []

    def add(self, middleware: Middleware) -> "MiddlewarePipeline":
        logger.debug(f"Middleware registered: {middleware.name}")
        self._layers.append(middleware)
        return self

    def use(self, *layers: Middleware) -> "MiddlewarePipeline":
        for layer in layers:
            self.add(layer)
        return self

    def wrap(self, handler: NextHandler) -> NextHandler:
        """Build a single coroutine function running every layer, then `handler`."""
        wrapped = handler
        # Innermost first, so the first layer added ends up outermost
        for layer in self._layers[::-1]:
            wrapped = partial(layer, next=wrapped)
        return wrapped

    def __len__(self) -> int:
        return len(self._layers)

    def __iter__(self) -> Iterator[Middleware]:
        return iter(self._layers)
