"""Error taxonomy for the app-server bridge.

Failures local to one call (timeout, cancel, decode) never affect other
calls. Subprocess exit is global and resolves every waiter with
TransportClosedError.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class SpawnError(BridgeError):
    """The app-server executable could not be started."""


class HandshakeError(BridgeError):
    """The initialize handshake with the app-server failed."""


class DecodeError(BridgeError):
    """A line from the app-server is not a valid envelope."""


class WriteError(BridgeError):
    """Writing to the app-server stdin failed."""


class CallTimeoutError(BridgeError, TimeoutError):
    """No response arrived before the call deadline."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"rpc call timed out: method={method} timeout={timeout}s")
        self.method = method
        self.timeout = timeout


class CallCancelledError(BridgeError):
    """The pending call was cancelled by its owner."""


class TransportClosedError(BridgeError, ConnectionError):
    """The app-server exited or the transport was closed."""
