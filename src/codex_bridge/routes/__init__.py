"""HTTP and WebSocket routes for the gateway.

- health: GET /health (both modes)
- rpc: POST / (SSE mode)
- events: GET /events (SSE mode)
- websocket: WebSocket / (WS mode)
"""

from .events import event_routes
from .health import health_routes
from .rpc import rpc_routes
from .websocket import websocket_routes

__all__ = [
    "event_routes",
    "health_routes",
    "rpc_routes",
    "websocket_routes",
]
