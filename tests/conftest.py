"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from codex_bridge.config import BridgeConfig, Protocol
from codex_bridge.transport import AppServerClient

MOCK_APP_SERVER = Path(__file__).parent / "fixtures" / "mock_app_server.py"


@pytest.fixture
def mock_command() -> tuple[str, list[str]]:
    """Binary and args that launch the mock app-server."""
    return sys.executable, ["-u", str(MOCK_APP_SERVER)]


@pytest.fixture
async def app_server(mock_command: tuple[str, list[str]]) -> AsyncIterator[AppServerClient]:
    """A started client talking to the mock app-server."""
    binary, args = mock_command
    client = AppServerClient(binary, args)
    # Swallow the startup notification so tests only see what they trigger
    subscription, unsubscribe = client.subscribe_notifications()
    await client.start()
    try:
        await asyncio.wait_for(subscription.get(), timeout=5)
        unsubscribe()
        yield client
    finally:
        await client.close()


@pytest.fixture
def make_config(mock_command: tuple[str, list[str]]) -> Callable[..., BridgeConfig]:
    """Factory for configs pointing at the mock app-server."""
    binary, args = mock_command

    def factory(protocol: Protocol = Protocol.SSE, **overrides: object) -> BridgeConfig:
        config = BridgeConfig(binary=binary, args=list(args), protocol=protocol)
        for name, value in overrides.items():
            setattr(config, name, value)
        return config

    return factory
