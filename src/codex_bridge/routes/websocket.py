"""WebSocket endpoint (WS mode).

One socket carries calls, responses and notifications:

- A frame with ``method`` and no ``id`` is forwarded as a notification.
- A frame with an ``id`` becomes a call under a fresh internal Correlation
  ID; the reply is sent back on the same socket with its ``id`` rewritten
  to the value the client used. Client ids may collide across sockets or
  be non-numeric, which is why they are never sent to the app-server.
- Every app-server notification is pushed to every socket verbatim.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ..bus import Subscription
from ..errors import BridgeError, CallTimeoutError, DecodeError
from ..protocol import (
    OMITTED,
    UPSTREAM_ERROR,
    UPSTREAM_TIMEOUT,
    error_frame,
    has_id,
    rewrite_id,
)
from ..transport import AppServerClient

logger = logging.getLogger(__name__)

# Close code sent when the app-server goes away under a live socket
WS_UPSTREAM_CLOSED = 1011


class WebSocketSession:
    """Bridges one WebSocket connection onto the shared app-server client.

    Manages the connection lifecycle:
    - Accepts the socket and subscribes it to notifications
    - Relays calls concurrently, remapping ids both ways
    - On disconnect, cancels in-flight calls and unsubscribes
    """

    def __init__(self, websocket: WebSocket, client: AppServerClient, call_timeout: float):
        self.websocket = websocket
        self.client = client
        self.call_timeout = call_timeout
        # internal Correlation ID -> client-supplied id
        self._inflight: dict[int, Any] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._pump_task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._send_lock = asyncio.Lock()
        self._connected = False

    async def handle(self) -> None:
        """Main handler for the WebSocket connection."""
        # Subscribe before accepting so the client sees everything emitted after connect
        subscription, self._unsubscribe = self.client.subscribe_notifications()
        try:
            await self.websocket.accept()
            self._connected = True
            self._pump_task = asyncio.create_task(self._pump_notifications(subscription))

            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("text")
                if data is None and message.get("bytes") is not None:
                    data = message["bytes"].decode("utf-8", errors="replace")
                if data:
                    await self._handle_frame(data)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.exception(f"WebSocket error: {e}")
        finally:
            await self._cleanup()
            logger.info("WebSocket disconnected")

    async def _handle_frame(self, data: str) -> None:
        try:
            envelope = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("ignoring WebSocket frame: invalid JSON")
            return

        if not isinstance(envelope, dict):
            logger.warning("ignoring WebSocket frame: not a JSON object")
            return

        method = envelope.get("method")
        if not isinstance(method, str) or not method:
            logger.warning("ignoring WebSocket frame: missing method")
            return

        if not has_id(envelope):
            try:
                await self.client.notify(
                    method, envelope.get("params", OMITTED), timeout=self.call_timeout
                )
            except BridgeError as e:
                logger.warning(f"notify failed method={method}: {e}")
            return

        internal_id = self.client.allocate_id()
        self._inflight[internal_id] = envelope["id"]
        params = envelope.get("params", OMITTED)
        task = asyncio.create_task(self._relay_call(internal_id, method, params))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _relay_call(self, internal_id: int, method: str, params: Any) -> None:
        """Run one call and send its reply with the client's id restored."""
        external_id = self._inflight[internal_id]
        try:
            raw = await self.client.call(
                method, params, request_id=internal_id, timeout=self.call_timeout
            )
            frame = rewrite_id(raw, external_id)
        except CallTimeoutError as e:
            logger.error(f"rpc call timed out method={method} id={internal_id}")
            frame = error_frame(external_id, UPSTREAM_TIMEOUT, str(e))
        except (json.JSONDecodeError, DecodeError) as e:
            logger.error(f"undecodable response method={method} id={internal_id}: {e}")
            frame = error_frame(external_id, UPSTREAM_ERROR, "invalid response from app-server")
        except BridgeError as e:
            logger.error(f"rpc call error method={method} id={internal_id}: {e}")
            frame = error_frame(external_id, UPSTREAM_ERROR, f"rpc call failed: {e}")
        finally:
            self._inflight.pop(internal_id, None)

        await self._send(frame)

    async def _pump_notifications(self, subscription: Subscription) -> None:
        """Forward bus notifications to this socket until either side closes."""
        async for raw in subscription:
            await self._send(raw.decode("utf-8", errors="replace"))

        if self._connected and self.client.is_closed:
            logger.warning("app-server closed; closing WebSocket")
            await self._close(WS_UPSTREAM_CLOSED, "app-server closed")

    async def _send(self, text: str) -> None:
        async with self._send_lock:
            if not self._connected:
                return
            try:
                await self.websocket.send_text(text)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"WebSocket send failed: {e}")
                self._connected = False

    async def _close(self, code: int, reason: str) -> None:
        async with self._send_lock:
            self._connected = False
            if self.websocket.application_state == WebSocketState.CONNECTED:
                try:
                    await self.websocket.close(code=code, reason=reason)
                except RuntimeError as e:
                    logger.debug(f"WebSocket close failed: {e}")

    async def _cleanup(self) -> None:
        """Release everything this socket holds on the shared client."""
        self._connected = False
        if self._unsubscribe is not None:
            self._unsubscribe()

        if self._inflight:
            logger.info(f"dropping {len(self._inflight)} in-flight call(s) on disconnect")

        tasks = list(self._tasks)
        if self._pump_task is not None:
            tasks.append(self._pump_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()


async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for JSON-RPC traffic.

    URL: /

    Protocol:
    1. Client connects (auth is checked on the upgrade request)
    2. Client sends requests ({"id", "method", "params"}) and
       notifications ({"method", "params"})
    3. Server sends responses with the client's id, plus every
       app-server notification
    """
    state = websocket.app.state
    session = WebSocketSession(websocket, state.client, state.config.call_timeout)
    await session.handle()


websocket_routes = [
    WebSocketRoute("/", websocket_endpoint),
]
