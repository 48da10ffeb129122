"""Integration tests for SSE mode (POST / and GET /events)."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from starlette.requests import Request
from starlette.testclient import TestClient

from codex_bridge.app import create_app
from codex_bridge.auth import SECRET_HEADER
from codex_bridge.config import Protocol
from codex_bridge.routes.events import sse_endpoint, sse_frame
from codex_bridge.routes.rpc import rpc_endpoint

# =============================================================================
# Helpers
# =============================================================================


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def state_for(client, config) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(client=client, config=config))


# =============================================================================
# Tests: POST /
# =============================================================================


class TestRpcEndpoint:
    """One JSON-RPC call per HTTP request."""

    def test_echo(self, make_config):
        with TestClient(create_app(make_config())) as client:
            response = client.post("/", json={"method": "echo", "params": {"a": [1, 2]}})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        body = response.json()
        assert body["result"] == {"a": [1, 2]}
        assert "id" in body

    def test_params_optional(self, make_config):
        with TestClient(create_app(make_config())) as client:
            response = client.post("/", json={"method": "custom/thing"})

        assert response.status_code == 200
        assert response.json()["result"] == {"method": "custom/thing", "params": None}

    def test_explicit_null_params_forwarded(self, make_config):
        with TestClient(create_app(make_config())) as client:
            explicit = client.post("/", json={"method": "paramsSeen", "params": None})
            missing = client.post("/", json={"method": "paramsSeen"})

        assert explicit.json()["result"] == {"present": True, "params": None}
        assert missing.json()["result"] == {"present": False, "params": None}

    def test_invalid_json(self, make_config):
        with TestClient(create_app(make_config())) as client:
            response = client.post("/", content=b"{not json")

        assert response.status_code == 400
        assert response.text == "invalid JSON body"

    @pytest.mark.parametrize(
        "payload",
        [{}, {"method": ""}, {"method": 5}, {"params": {}}, [1, 2]],
    )
    def test_missing_method(self, make_config, payload):
        with TestClient(create_app(make_config())) as client:
            response = client.post("/", json=payload)

        assert response.status_code == 400
        assert response.text == "missing method"

    def test_timeout(self, make_config):
        with TestClient(create_app(make_config(call_timeout=0.2))) as client:
            response = client.post("/", json={"method": "never"})
            assert response.status_code == 502
            assert response.text == "rpc call failed"
            assert client.app.state.client.pending_count == 0

    def test_subprocess_exit(self, make_config):
        with TestClient(create_app(make_config())) as client:
            response = client.post("/", json={"method": "exit"})
            assert response.status_code == 502

            response = client.post("/", json={"method": "echo"})
            assert response.status_code == 502

            health = client.get("/health")
            assert health.status_code == 503
            assert health.json()["status"] == "degraded"

    def test_websocket_route_absent(self, make_config):
        with TestClient(create_app(make_config())) as client:
            response = client.get("/")
        assert response.status_code == 405

    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_call(self, app_server, make_config):
        body = json.dumps({"method": "never"}).encode()
        messages = [{"type": "http.request", "body": body, "more_body": False}]
        disconnected = asyncio.Event()

        async def receive():
            if messages:
                return messages.pop(0)
            await disconnected.wait()
            return {"type": "http.disconnect"}

        scope = {
            "type": "http",
            "method": "POST",
            "path": "/",
            "headers": [],
            "query_string": b"",
            "app": state_for(app_server, make_config()),
        }
        task = asyncio.create_task(rpc_endpoint(Request(scope, receive)))
        await wait_until(lambda: app_server.pending_count == 1)

        disconnected.set()
        response = await asyncio.wait_for(task, timeout=5)

        assert response.status_code == 499
        assert app_server.pending_count == 0
        # The shared client is unaffected
        raw = await app_server.call("echo", {"ok": True}, timeout=5)
        assert json.loads(raw)["result"] == {"ok": True}


# =============================================================================
# Tests: GET /events
# =============================================================================


class TestEventsEndpoint:
    """SSE notification stream."""

    def test_sse_frame(self):
        assert sse_frame(b'{"method":"x"}') == b'data: {"method":"x"}\n\n'

    @pytest.mark.asyncio
    async def test_stream_headers_and_frames(self, app_server):
        request = MagicMock()
        request.app.state.client = app_server
        request.client = None

        response = await sse_endpoint(request)
        assert response.media_type == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        # Subscribed before any bytes are streamed
        assert app_server.bus.subscriber_count == 1

        iterator = response.body_iterator
        await app_server.call("notifyMany", {"count": 2}, timeout=5)
        first = await asyncio.wait_for(iterator.__anext__(), timeout=2)
        second = await asyncio.wait_for(iterator.__anext__(), timeout=2)
        assert first == b'data: {"method": "mock/tick", "params": {"n": 0}}\n\n'
        assert second == b'data: {"method": "mock/tick", "params": {"n": 1}}\n\n'

        await iterator.aclose()
        assert app_server.bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_every_stream_gets_every_notification(self, app_server):
        streams = []
        for _ in range(2):
            request = MagicMock()
            request.app.state.client = app_server
            request.client = None
            streams.append((await sse_endpoint(request)).body_iterator)

        await app_server.call("triggerNotification", timeout=5)
        for iterator in streams:
            frame = await asyncio.wait_for(iterator.__anext__(), timeout=2)
            assert b"mock/notification" in frame
            await iterator.aclose()

    @pytest.mark.asyncio
    async def test_stream_ends_when_app_server_closes(self, app_server):
        request = MagicMock()
        request.app.state.client = app_server
        request.client = None
        iterator = (await sse_endpoint(request)).body_iterator

        async def drain() -> list[bytes]:
            return [frame async for frame in iterator]

        task = asyncio.create_task(drain())
        await asyncio.sleep(0.05)
        await app_server.close()

        assert await asyncio.wait_for(task, timeout=2) == []
        assert app_server.bus.subscriber_count == 0


# =============================================================================
# Tests: Auth and health
# =============================================================================


class TestAuthAndHealth:
    """Shared secret and /health in SSE mode."""

    def test_secret_required(self, make_config):
        with TestClient(create_app(make_config(secret="shh"))) as client:
            assert client.post("/", json={"method": "echo"}).status_code == 401
            assert client.get("/events").status_code == 401
            assert (
                client.post(
                    "/", json={"method": "echo"}, headers={SECRET_HEADER: "wrong"}
                ).status_code
                == 401
            )

            response = client.post("/", json={"method": "echo"}, headers={SECRET_HEADER: "shh"})
            assert response.status_code == 200

    def test_health_is_open(self, make_config):
        with TestClient(create_app(make_config(secret="shh"))) as client:
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["protocol"] == Protocol.SSE.value
        assert body["subprocess_running"] is True
        assert body["pending_calls"] == 0

    def test_app_state(self, make_config):
        config = make_config()
        app = create_app(config)
        assert app.state.config is config
        assert not app.state.client.is_running
        with TestClient(app):
            assert app.state.client.is_running
        assert app.state.client.is_closed
