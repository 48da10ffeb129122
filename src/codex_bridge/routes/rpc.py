"""JSON-RPC over HTTP POST (SSE mode).

Each POST is one call: the body names a method and optional params, the
bridge issues the call on the shared app-server pipe and returns the raw
response line as the HTTP body. No id remapping is needed since the
request and the call are one-to-one.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route

from ..errors import BridgeError
from ..protocol import RpcCallBody

logger = logging.getLogger(__name__)


def _remote(request: Request) -> str:
    return f"{request.client.host}:{request.client.port}" if request.client else "unknown"


async def _wait_for_disconnect(request: Request) -> None:
    """Return once the client has gone away."""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def rpc_endpoint(request: Request) -> Response:
    """Forward one JSON-RPC call to the app-server.

    Status codes:
        200: raw app-server response
        400: body is not JSON or has no method
        502: the call failed or timed out
    """
    start = time.monotonic()
    remote = _remote(request)
    logger.info(f"incoming HTTP request path={request.url.path} remote={remote}")

    try:
        payload = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"invalid JSON body path={request.url.path} remote={remote}: {e}")
        return PlainTextResponse("invalid JSON body", status_code=400)

    try:
        body = RpcCallBody.model_validate(payload)
    except ValidationError:
        logger.warning(f"missing method in request path={request.url.path} remote={remote}")
        return PlainTextResponse("missing method", status_code=400)

    client = request.app.state.client
    timeout = request.app.state.config.call_timeout

    call = asyncio.create_task(client.call(body.method, body.call_params(), timeout=timeout))
    disconnect = asyncio.create_task(_wait_for_disconnect(request))
    try:
        await asyncio.wait({call, disconnect}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        disconnect.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await disconnect

    if not call.done():
        # Client went away; cancelling removes the pending call
        call.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await call
        logger.info(f"client disconnected method={body.method} remote={remote}")
        return Response(status_code=499)

    duration = time.monotonic() - start
    try:
        raw = call.result()
    except BridgeError as e:
        logger.error(
            f"rpc call error method={body.method} remote={remote} duration={duration:.3f}s: {e}"
        )
        return PlainTextResponse("rpc call failed", status_code=502)

    logger.info(
        f"completed HTTP request method={body.method} path={request.url.path} "
        f"remote={remote} duration={duration:.3f}s"
    )
    return Response(content=raw, media_type="application/json")


rpc_routes = [
    Route("/", rpc_endpoint, methods=["POST"]),
]
