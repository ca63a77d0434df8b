"""
=============================================================================
EDGESERVER - HTTP Edge Server for a Personal Website
=============================================================================

An asyncio HTTP/1.1 server that sits in front of a website and decides, for
every request, where the response comes from.

=============================================================================
PROJECT OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    EDGE SERVER REQUEST FLOW                         │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   client ──► AsyncSocketServer ──► Connection ──► RequestParser     │
    │                                                       │              │
    │                                                       ▼              │
    │                                          AccessLogMiddleware         │
    │                                                       │              │
    │                                                       ▼              │
    │   ┌──────────────── ResolutionPipeline ────────────────────────┐    │
    │   │                                                             │    │
    │   │   1. RedirectGuard   production + not https? ──► 301       │    │
    │   │   2. StaticResolver  file under STATIC_ROOT?  ──► file     │    │
    │   │   3. ProxyForwarder  GET {PROXY_BASE}{path}   ──► upstream │    │
    │   │                                                             │    │
    │   └─────────────────────────────────────────────────────────────┘    │
    │                                                       │              │
    │                                                       ▼              │
    │                             response written to the client          │
    │                                                       │              │
    │                                    2xx? ──► BeaconDispatcher.spawn  │
    │                                             (detached, best effort)  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    edgeserver/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m edgeserver)
    ├── server.py            # EdgeServer orchestrator
    ├── config.py            # EdgeConfig frozen dataclass
    ├── logging_setup.py     # Root logger configuration
    ├── pipeline.py          # Ordered fallback chain
    ├── tracking.py          # Analytics beacon
    ├── core/                # Low-level asyncio networking
    │   ├── socket_server.py # Listening socket and shutdown
    │   └── connection.py    # Per-client buffered I/O
    ├── http/                # HTTP protocol components
    │   ├── request.py       # HTTP request parsing
    │   ├── response.py      # HTTP response building and writing
    │   ├── status_codes.py  # HTTP status enums
    │   └── mime_types.py    # MIME type detection
    ├── middleware/          # Cross-cutting concerns
    │   ├── base.py          # Async middleware chain
    │   └── logging.py       # Access log
    └── handlers/            # Resolution stages
        ├── redirect.py      # HTTPS redirect guard
        ├── static.py        # Static file serving
        └── proxy.py         # Reverse proxy

=============================================================================
QUICK START
=============================================================================

    PORT=8080 MATOMO_TOKEN=secret python -m edgeserver

    # or, from code
    from edgeserver import EdgeServer, EdgeConfig

    config = EdgeConfig(port=8080, tracking_enabled=False)
    EdgeServer(config).run()

=============================================================================
"""

__version__ = "1.0.0"

from .config import EdgeConfig, ConfigError
from .server import EdgeServer

__all__ = ["EdgeServer", "EdgeConfig", "ConfigError", "__version__"]
