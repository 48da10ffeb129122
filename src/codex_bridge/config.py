"""Bridge configuration.

Values come from CLI options, falling back to environment variables:
- PORT: listen port (default 8080)
- CODEX_HTTP_SECRET: shared secret for the x-codex-secret header (empty disables auth)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from .bus import DEFAULT_QUEUE_SIZE
from .transport.app_server import DEFAULT_CLOSE_GRACE
from .transport.framing import DEFAULT_MAX_LINE_BYTES

DEFAULT_PORT = 8080
DEFAULT_CALL_TIMEOUT = 120.0

ENV_PORT = "PORT"
ENV_SECRET = "CODEX_HTTP_SECRET"


class Protocol(str, Enum):
    """External transport served by the gateway."""

    WS = "ws"  # WebSocket on /
    SSE = "sse"  # POST / + GET /events


@dataclass
class BridgeConfig:
    """Everything the gateway needs to run."""

    # Subprocess
    binary: str = "codex"
    args: list[str] = field(default_factory=lambda: ["app-server"])

    # HTTP server
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    protocol: Protocol = Protocol.WS

    # Auth
    secret: str = ""

    # Limits
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    queue_size: int = DEFAULT_QUEUE_SIZE
    close_grace: float = DEFAULT_CLOSE_GRACE

    @property
    def auth_enabled(self) -> bool:
        return bool(self.secret)

    @classmethod
    def from_env(cls, **overrides: object) -> BridgeConfig:
        """Build a config from the environment, then apply ``overrides``."""
        config = cls()
        port = os.environ.get(ENV_PORT, "")
        if port:
            try:
                config.port = int(port)
            except ValueError as e:
                raise ValueError(f"invalid {ENV_PORT}: {port!r}") from e
        config.secret = os.environ.get(ENV_SECRET, "")

        for name, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, name):
                raise TypeError(f"unknown config field: {name}")
            setattr(config, name, value)

        config.protocol = Protocol(config.protocol)
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ValueError for settings the gateway cannot run with."""
        if not self.binary:
            raise ValueError("binary is required")
        if not 0 < self.port < 65536:
            raise ValueError(f"invalid port: {self.port}")
        if self.call_timeout <= 0:
            raise ValueError(f"invalid call timeout: {self.call_timeout}")
        if self.queue_size <= 0:
            raise ValueError(f"invalid queue size: {self.queue_size}")
        if self.max_line_bytes <= 0:
            raise ValueError(f"invalid max line size: {self.max_line_bytes}")
