"""Codex app-server bridge.

Exposes one long-lived JSON-RPC-over-stdio subprocess to many network
clients over HTTP POST + SSE or WebSocket.
"""

__version__ = "0.1.0"
