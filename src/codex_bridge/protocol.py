"""Envelope types for the app-server line protocol.

Every line on the subprocess pipe is one JSON object, one of:

- Request:      {"method": str, "id": int, "params"?: object}
- Response:     {"id": int, "result"?: any, "error"?: any}
- Notification: {"method": str, "params"?: object}

The bridge never interprets methods; these models only classify a line so
it can be routed. Raw bytes are what get forwarded.
"""

from __future__ import annotations

import json
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .errors import DecodeError

ENCODING = "utf-8"

CLIENT_INFO: dict[str, Any] = {
    "name": "codex_http_bridge",
    "title": "Codex HTTP Bridge",
    "version": __version__,
}


class _Omitted:
    """Marker for a `params` field that is absent, as opposed to `null`."""

    def __repr__(self) -> str:
        return "OMITTED"


OMITTED: Any = _Omitted()

# Error codes used in WebSocket error frames
UPSTREAM_ERROR = -32000
UPSTREAM_TIMEOUT = -32001


class RpcRequest(BaseModel):
    """Request envelope (has both ``id`` and ``method``)."""

    model_config = ConfigDict(extra="allow")

    id: Any
    method: str
    params: Any | None = None


class RpcResponse(BaseModel):
    """Response envelope (``id`` without ``method``)."""

    model_config = ConfigDict(extra="allow")

    id: Any
    result: Any | None = None
    error: Any | None = None


class RpcNotification(BaseModel):
    """Notification envelope (``method`` without ``id``)."""

    model_config = ConfigDict(extra="allow")

    method: str
    params: Any | None = None


Envelope = Union[RpcRequest, RpcResponse, RpcNotification]


class RpcCallBody(BaseModel):
    """Body accepted by ``POST /``."""

    method: str = Field(min_length=1)
    params: Any | None = None

    def call_params(self) -> Any:
        """``params`` as sent by the client: OMITTED when absent, None for an explicit null."""
        return self.params if "params" in self.model_fields_set else OMITTED


def has_id(message: dict[str, Any]) -> bool:
    """True when the message carries a non-null ``id``."""
    return message.get("id") is not None


def decode_envelope(line: bytes | str) -> Envelope:
    """Classify one line from the app-server.

    Raises:
        DecodeError: the line is not JSON, not an object, or has neither an
            ``id`` nor a usable ``method``.
    """
    try:
        message = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(f"invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise DecodeError(f"expected JSON object, got {type(message).__name__}")

    method = message.get("method")
    if has_id(message):
        if isinstance(method, str) and method:
            return RpcRequest.model_validate(message)
        return RpcResponse.model_validate(message)

    if isinstance(method, str) and method:
        return RpcNotification.model_validate(message)

    raise DecodeError("envelope has neither id nor method")


def _encode(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n").encode(
        ENCODING
    )


def encode_request(request_id: int, method: str, params: Any = OMITTED) -> bytes:
    """Serialize a request as one newline-terminated JSON line.

    ``params`` is left out only when OMITTED; None is sent as an explicit null.
    """
    message: dict[str, Any] = {"method": method, "id": request_id}
    if params is not OMITTED:
        message["params"] = params
    return _encode(message)


def encode_notification(method: str, params: Any = OMITTED) -> bytes:
    """Serialize a notification (no ``id``) as one JSON line."""
    message: dict[str, Any] = {"method": method}
    if params is not OMITTED:
        message["params"] = params
    return _encode(message)


def rewrite_id(raw: bytes | str, new_id: Any) -> str:
    """Return ``raw`` re-serialized with its ``id`` replaced by ``new_id``."""
    message = json.loads(raw)
    if not isinstance(message, dict):
        raise DecodeError("response is not a JSON object")
    message["id"] = new_id
    return json.dumps(message, ensure_ascii=False)


def error_frame(request_id: Any, code: int, message: str) -> str:
    """Build a JSON-RPC error response for a call the bridge could not complete."""
    return json.dumps({"id": request_id, "error": {"code": code, "message": message}})
