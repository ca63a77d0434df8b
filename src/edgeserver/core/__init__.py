"""
=============================================================================
CORE SERVER COMPONENTS
=============================================================================

Transport layer: the listening socket and the per-connection I/O wrapper.

    ┌─────────────────────────────────────────────────────────────────────┐
    │ AsyncSocketServer  bind / accept / one task per connection /        │
    │                    SIGTERM + SIGINT / graceful close                │
    │ Connection         buffered request reads, streamed response        │
    │                    writes, keep-alive and first-request timeouts    │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from .socket_server import AsyncSocketServer, ConnectionHandler
from .connection import Connection, ConnectionState

__all__ = [
    "AsyncSocketServer",
    "ConnectionHandler",
    "Connection",
    "ConnectionState",
]
