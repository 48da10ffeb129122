"""SSE notification streaming endpoint (SSE mode)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.routing import Route

from ..bus import Subscription

logger = logging.getLogger(__name__)


def sse_frame(raw: bytes) -> bytes:
    """Wrap one notification line as an SSE ``data:`` frame."""
    return b"data: " + raw + b"\n\n"


async def sse_endpoint(request: Request) -> StreamingResponse:
    """SSE endpoint - streams every app-server notification to the client.

    The subscription is created before the response starts, so nothing
    emitted after this request is accepted is missed. It is removed when
    the client disconnects or the app-server goes away.
    """
    client = request.app.state.client
    subscription, unsubscribe = client.subscribe_notifications()
    remote = f"{request.client.host}:{request.client.port}" if request.client else "unknown"
    logger.info(f"events stream opened subscriber={subscription.id} remote={remote}")

    async def event_stream(subscription: Subscription) -> AsyncIterator[bytes]:
        try:
            async for raw in subscription:
                yield sse_frame(raw)
        finally:
            unsubscribe()
            logger.info(f"events stream closed subscriber={subscription.id} remote={remote}")

    return StreamingResponse(
        event_stream(subscription),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


event_routes = [
    Route("/events", sse_endpoint, methods=["GET"]),
]
