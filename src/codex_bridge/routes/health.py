"""Health check endpoint."""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route


async def health_check(request: Request) -> JSONResponse:
    """Report whether the app-server is still running."""
    client = request.app.state.client
    running = client.is_running
    return JSONResponse(
        {
            "status": "ok" if running else "degraded",
            "protocol": request.app.state.config.protocol.value,
            "subprocess_running": running,
            "pending_calls": client.pending_count,
            "subscribers": client.bus.subscriber_count,
        },
        status_code=200 if running else 503,
    )


health_routes = [
    Route("/health", health_check, methods=["GET"]),
]
