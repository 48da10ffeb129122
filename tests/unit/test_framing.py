"""Unit tests for newline framing of the app-server stdout stream."""

from __future__ import annotations

import asyncio
import logging

import pytest

from codex_bridge.transport.framing import DEFAULT_MAX_LINE_BYTES, LineFramer, iter_lines


def feed_in_chunks(framer: LineFramer, data: bytes, size: int) -> list[bytes]:
    lines: list[bytes] = []
    for offset in range(0, len(data), size):
        lines.extend(framer.feed(data[offset : offset + size]))
    return lines


class TestLineSplitting:
    """Tests for ordinary framing."""

    def test_single_chunk_multiple_lines(self) -> None:
        framer = LineFramer()
        assert framer.feed(b'{"a":1}\n{"b":2}\n') == [b'{"a":1}', b'{"b":2}']

    def test_partial_line_buffered_across_chunks(self) -> None:
        framer = LineFramer()
        assert framer.feed(b'{"id":') == []
        assert framer.buffered == 6
        assert framer.feed(b'1,"result":') == []
        assert framer.feed(b'true}\n{"me') == [b'{"id":1,"result":true}']
        assert framer.feed(b'thod":"x"}\n') == [b'{"method":"x"}']
        assert framer.buffered == 0

    def test_byte_at_a_time(self) -> None:
        framer = LineFramer()
        assert feed_in_chunks(framer, b"abc\r\ndef\n", 1) == [b"abc", b"def"]

    def test_strips_carriage_return(self) -> None:
        framer = LineFramer()
        assert framer.feed(b"one\r\ntwo\r\n") == [b"one", b"two"]

    def test_never_yields_empty_lines(self) -> None:
        framer = LineFramer()
        assert framer.feed(b"\n\r\n\nx\n\n") == [b"x"]

    def test_empty_chunk(self) -> None:
        assert LineFramer().feed(b"") == []

    def test_invalid_max_line_bytes(self) -> None:
        with pytest.raises(ValueError):
            LineFramer(0)


class TestOversizedLines:
    """Lines over the limit are dropped whole and framing resyncs."""

    def test_line_at_limit_is_kept(self) -> None:
        framer = LineFramer(max_line_bytes=8)
        assert framer.feed(b"12345678\n") == [b"12345678"]

    def test_oversized_line_in_one_chunk(self, caplog: pytest.LogCaptureFixture) -> None:
        framer = LineFramer(max_line_bytes=8)
        with caplog.at_level(logging.WARNING):
            lines = framer.feed(b"123456789\nok\n")
        assert lines == [b"ok"]
        assert framer.dropped_lines == 1
        assert "exceeded max size" in caplog.text

    def test_oversized_line_across_chunks_is_not_split(self) -> None:
        framer = LineFramer(max_line_bytes=8)
        assert framer.feed(b"0123456") == []
        assert framer.feed(b"789abc") == []
        # Tail of the oversized line must not come out as its own line
        assert framer.feed(b"def\nnext\n") == [b"next"]
        assert framer.dropped_lines == 1

    def test_fifteen_megabyte_line_then_valid_line(self) -> None:
        framer = LineFramer()
        big = b'{"id":1,"result":"' + b"x" * (15 * 1024 * 1024) + b'"}\n'
        valid = b'{"id":1,"result":"ok"}\n'

        lines = feed_in_chunks(framer, big + valid, 64 * 1024)

        assert lines == [b'{"id":1,"result":"ok"}']
        assert framer.buffered == 0
        assert framer.max_line_bytes == DEFAULT_MAX_LINE_BYTES

    def test_safety_limit_resets_buffer(self, caplog: pytest.LogCaptureFixture) -> None:
        framer = LineFramer(max_line_bytes=10)
        with caplog.at_level(logging.ERROR):
            assert framer.feed(b"x" * 25) == []
        assert framer.buffered == 0
        assert "safety limit" in caplog.text
        assert framer.feed(b"tail\nok\n") == [b"ok"]

    def test_reset_forgets_partial_line(self) -> None:
        framer = LineFramer(max_line_bytes=4)
        framer.feed(b"abcdefg")
        framer.reset()
        assert framer.feed(b"ok\n") == [b"ok"]


class TestIterLines:
    """Tests for the async reader wrapper."""

    @pytest.mark.asyncio
    async def test_reads_until_eof(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"a":1}\n{"b"')
        reader.feed_data(b":2}\r\npartial")
        reader.feed_eof()

        lines = [line async for line in iter_lines(reader, chunk_size=4)]

        assert lines == [b'{"a":1}', b'{"b":2}']

    @pytest.mark.asyncio
    async def test_yields_lazily(self) -> None:
        reader = asyncio.StreamReader()
        lines = iter_lines(reader)

        reader.feed_data(b"first\n")
        assert await asyncio.wait_for(lines.__anext__(), timeout=1) == b"first"

        reader.feed_data(b"second\n")
        reader.feed_eof()
        assert await asyncio.wait_for(lines.__anext__(), timeout=1) == b"second"
        with pytest.raises(StopAsyncIteration):
            await lines.__anext__()
