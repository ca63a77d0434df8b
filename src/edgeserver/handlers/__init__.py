"""
=============================================================================
HANDLERS MODULE
=============================================================================

The three stages of the resolution chain, in the order they run.

    ┌─────────────────────────────────────────────────────────────────────┐
    │ Stage            │ Class            │ Answers with                  │
    ├──────────────────┼──────────────────┼───────────────────────────────┤
    │ redirect         │ RedirectGuard    │ 301 to HTTPS (production)     │
    │ static           │ StaticResolver   │ file from STATIC_ROOT         │
    │                  │ (wraps Static-   │                               │
    │                  │  FileHandler)    │                               │
    │ proxy            │ ProxyForwarder   │ upstream response, or         │
    │                  │                  │ ProxyError                    │
    └──────────────────┴──────────────────┴───────────────────────────────┘

Each stage has a `name` and an async `resolve(request)` returning a
StageResult (see edgeserver.pipeline).

=============================================================================
"""

from .redirect import RedirectGuard
from .static import StaticFileHandler, StaticResolver, StaticResult
from .proxy import ProxyForwarder, ProxyError

__all__ = [
    "RedirectGuard",
    "StaticFileHandler",
    "StaticResolver",
    "StaticResult",
    "ProxyForwarder",
    "ProxyError",
]
