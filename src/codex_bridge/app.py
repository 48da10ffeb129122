"""Codex bridge application.

Creates the Starlette ASGI application for the configured protocol.

Route organization in WS mode:
- /health - Health check
- / (WebSocket) - JSON-RPC calls, responses and notifications

Route organization in SSE mode:
- /health - Health check
- POST / - One JSON-RPC call per request
- GET /events - SSE notification stream

The two modes are never mixed on one running instance.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import BaseRoute

from .auth import SharedSecretMiddleware
from .config import BridgeConfig, Protocol
from .routes import event_routes, health_routes, rpc_routes, websocket_routes
from .transport import AppServerClient

logger = logging.getLogger(__name__)


def create_client(config: BridgeConfig) -> AppServerClient:
    """Build an (unstarted) app-server client from the config."""
    return AppServerClient(
        config.binary,
        config.args,
        max_line_bytes=config.max_line_bytes,
        queue_size=config.queue_size,
        close_grace=config.close_grace,
    )


def create_app(config: BridgeConfig, client: AppServerClient | None = None) -> Starlette:
    """Create the bridge application.

    Args:
        config: Bridge configuration
        client: App-server client to use; built from ``config`` when omitted.
            It is started on application startup and closed on shutdown.

    Returns:
        Configured Starlette application
    """
    client = client or create_client(config)

    routes: list[BaseRoute] = []
    routes.extend(health_routes)
    if config.protocol == Protocol.SSE:
        routes.extend(rpc_routes)
        routes.extend(event_routes)
    else:
        routes.extend(websocket_routes)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await client.start()
        if config.protocol == Protocol.SSE:
            logger.info("SSE transport enabled (POST / and GET /events)")
        else:
            logger.info("WS transport enabled (connect to ws://HOST:PORT/)")
        try:
            yield
        finally:
            logger.info("shutting down HTTP server...")
            await client.close()

    middleware = [
        Middleware(SharedSecretMiddleware, secret=config.secret),
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.config = config
    app.state.client = client
    return app
