"""Shared-secret auth guard.

When a secret is configured, every request (POST /, GET /events and the
WebSocket upgrade) must carry it in the ``x-codex-secret`` header. The
comparison runs in constant time and does not reveal the secret length.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from starlette.datastructures import Headers
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)

SECRET_HEADER = "x-codex-secret"
_SECRET_HEADER_RAW = SECRET_HEADER.encode("latin-1")

# Close code used when the server cannot send an HTTP denial response
WS_POLICY_VIOLATION = 1008

_DIGEST_KEY = b"codex-bridge-auth"


def _digest(value: bytes) -> bytes:
    return hmac.new(_DIGEST_KEY, value, hashlib.sha256).digest()


def secrets_match(provided: bytes, secret: str) -> bool:
    """Compare raw header bytes with the UTF-8 encoded secret in constant time.

    Both sides are reduced to fixed-size digests first, so neither the
    position of the first differing byte nor a length mismatch changes the
    amount of work done.
    """
    return hmac.compare_digest(_digest(provided), _digest(secret.encode("utf-8")))


def is_authorized(headers: Headers, secret: str) -> bool:
    """True when no secret is configured or the header matches it.

    The raw header bytes are used; Starlette decodes header values as
    latin-1, which would never match a non-ASCII secret.
    """
    if not secret:
        return True
    for name, value in headers.raw:
        if name.lower() == _SECRET_HEADER_RAW:
            return bool(value) and secrets_match(value, secret)
    return False


class SharedSecretMiddleware:
    """ASGI middleware rejecting HTTP and WebSocket scopes without the secret.

    Paths in ``exempt_paths`` (health checks) are always let through.
    """

    def __init__(
        self,
        app: ASGIApp,
        secret: str = "",
        exempt_paths: tuple[str, ...] = ("/health",),
    ) -> None:
        self.app = app
        self.secret = secret
        self.exempt_paths = exempt_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] not in ("http", "websocket")
            or not self.secret
            or scope["path"] in self.exempt_paths
        ):
            await self.app(scope, receive, send)
            return

        if is_authorized(Headers(scope=scope), self.secret):
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        remote = f"{client[0]}:{client[1]}" if client else "unknown"
        logger.warning(f"unauthorized request path={scope['path']} remote={remote}")

        denial = PlainTextResponse("unauthorized", status_code=401)
        if scope["type"] == "http":
            await denial(scope, receive, send)
            return

        websocket = WebSocket(scope, receive=receive, send=send)
        if "websocket.http.response" in scope.get("extensions", {}):
            await websocket.send_denial_response(denial)
        else:
            await websocket.close(code=WS_POLICY_VIOLATION)
