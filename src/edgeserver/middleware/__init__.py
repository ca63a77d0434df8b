"""
=============================================================================
MIDDLEWARE MODULE
=============================================================================

Cross-cutting concerns wrapped around the resolution pipeline.

    ┌─────────────────────────────────────────────────────────────────────┐
    │ Middleware           │ What it does                                 │
    ├──────────────────────┼──────────────────────────────────────────────┤
    │ AccessLogMiddleware  │ combined / JSON access line, X-Request-ID   │
    └──────────────────────┴──────────────────────────────────────────────┘

New middleware subclasses Middleware and is added with
MiddlewarePipeline.add(); first added is outermost.

=============================================================================
"""

from .base import Middleware, MiddlewarePipeline, NextHandler
from .logging import AccessLogMiddleware, RequestLog

__all__ = [
    "Middleware",
    "MiddlewarePipeline",
    "NextHandler",

    "AccessLogMiddleware",
    "RequestLog",
]
