"""Newline framing for the app-server stdout stream.

The app-server writes one JSON object per line. Lines can be large (long
reasoning traces, agent output), so the limit is generous, but a producer
that never emits a newline must not grow the buffer without bound.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 10 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024

NEWLINE = b"\n"
CARRIAGE_RETURN = b"\r"


class LineFramer:
    """Incremental splitter of a byte stream into newline-delimited payloads.

    Each chunk is scanned once. Partial lines are buffered across chunks.
    A line longer than ``max_line_bytes`` is dropped whole: the framer
    discards everything up to the next newline and resyncs there.
    """

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES):
        if max_line_bytes <= 0:
            raise ValueError("max_line_bytes must be positive")
        self.max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        self._discarding = False
        self.dropped_lines = 0

    @property
    def buffered(self) -> int:
        """Number of bytes held for an unfinished line."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[bytes]:
        """Consume a chunk and return every complete line it finishes."""
        lines: list[bytes] = []
        if not chunk:
            return lines

        start = 0
        while True:
            idx = chunk.find(NEWLINE, start)
            if idx == -1:
                break
            self._complete(chunk, start, idx, lines)
            start = idx + 1

        if start < len(chunk) and not self._discarding:
            self._buffer += chunk[start:]
            if len(self._buffer) > self.max_line_bytes * 2:
                logger.error(
                    f"stdout buffer exceeded safety limit ({len(self._buffer)} bytes); dropping"
                )
                self._overflow()
            elif len(self._buffer) > self.max_line_bytes:
                logger.warning(
                    f"stdout line exceeded max size ({self.max_line_bytes} bytes); dropping"
                )
                self._overflow()

        return lines

    def reset(self) -> None:
        """Forget any partial line."""
        self._buffer.clear()
        self._discarding = False

    def _complete(self, chunk: bytes, start: int, end: int, lines: list[bytes]) -> None:
        if self._discarding:
            # Tail of an oversized line; the newline ends it.
            self._discarding = False
            return

        size = len(self._buffer) + (end - start)
        if size > self.max_line_bytes:
            logger.warning(f"stdout line of {size} bytes exceeded max size; dropping")
            self._buffer.clear()
            self.dropped_lines += 1
            return

        if self._buffer:
            self._buffer += chunk[start:end]
            line = bytes(self._buffer)
            self._buffer.clear()
        else:
            line = chunk[start:end]

        if line.endswith(CARRIAGE_RETURN):
            line = line[:-1]
        if line:
            lines.append(line)

    def _overflow(self) -> None:
        self._buffer.clear()
        self._discarding = True
        self.dropped_lines += 1


async def iter_lines(
    reader: asyncio.StreamReader,
    framer: LineFramer | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """Yield framed lines from ``reader`` until EOF."""
    framer = framer or LineFramer()
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            if framer.buffered:
                logger.debug(f"EOF with {framer.buffered} bytes of unterminated output")
            return
        for line in framer.feed(chunk):
            yield line
