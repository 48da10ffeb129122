"""Subprocess transport layer.

- framing: newline framing of the app-server stdout stream
- app_server: process ownership, call correlation and notification fan-out
"""

from .app_server import AppServerClient
from .framing import DEFAULT_MAX_LINE_BYTES, LineFramer, iter_lines

__all__ = [
    "AppServerClient",
    "DEFAULT_MAX_LINE_BYTES",
    "LineFramer",
    "iter_lines",
]
