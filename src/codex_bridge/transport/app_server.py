"""Client for a codex app-server subprocess.

Launches the app-server and speaks newline-delimited JSON-RPC over its
stdin/stdout. Many concurrent callers share the one pipe:

- Requests get a Correlation ID and park on a future until the matching
  response line arrives.
- Lines without an ``id`` are notifications and are fanned out through
  the NotificationBus.

Wire format:
- Outbound: {"method": ..., "id": 1, "params": {...}} + newline to stdin
- Inbound:  {"id": 1, "result": ...} or {"method": ..., "params": ...} + newline from stdout
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
import signal
import sys
from collections.abc import Callable
from typing import Any

from ..bus import DEFAULT_QUEUE_SIZE, NotificationBus, Subscription
from ..errors import (
    CallCancelledError,
    CallTimeoutError,
    DecodeError,
    HandshakeError,
    SpawnError,
    TransportClosedError,
    WriteError,
)
from ..protocol import (
    CLIENT_INFO,
    OMITTED,
    RpcNotification,
    decode_envelope,
    encode_notification,
    encode_request,
)
from .framing import DEFAULT_MAX_LINE_BYTES, LineFramer, iter_lines

logger = logging.getLogger(__name__)

DEFAULT_CLOSE_GRACE = 0.1


class AppServerClient:
    """Owns the app-server process and multiplexes calls over its stdio.

    Usage:
        client = AppServerClient("codex", ["app-server"])
        await client.start()
        raw = await client.call("thread/list", {}, timeout=30)
        subscription, unsubscribe = client.subscribe_notifications()
        ...
        await client.close()
    """

    def __init__(
        self,
        binary: str,
        args: list[str] | None = None,
        *,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        close_grace: float = DEFAULT_CLOSE_GRACE,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ):
        self.binary = binary
        self.args = list(args or [])
        self.close_grace = close_grace
        self._env = env
        self._cwd = cwd
        self._framer = LineFramer(max_line_bytes)
        self._bus = NotificationBus(queue_size)

        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

        self._ids = itertools.count(1)
        self._pending: dict[Any, asyncio.Future[bytes]] = {}
        self._closed = False
        self._close_reason = "app-server closed"

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return (
            self._process is not None and self._process.returncode is None and not self._closed
        )

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        """Number of calls waiting for a response."""
        return len(self._pending)

    @property
    def bus(self) -> NotificationBus:
        return self._bus

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the app-server and perform the initialize handshake.

        Raises:
            SpawnError: The executable could not be launched
            HandshakeError: The initialize call failed
            RuntimeError: The client was already started
        """
        if self._process is not None or self._closed:
            raise RuntimeError("client already started")

        env = None
        if self._env:
            env = {**os.environ, **self._env}

        logger.info(f"spawning app-server: {' '.join([self.binary, *self.args])}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.binary,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=env,
                start_new_session=sys.platform != "win32",
            )
        except OSError as e:
            self._closed = True
            raise SpawnError(f"failed to start {self.binary}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            await self.call("initialize", {"clientInfo": CLIENT_INFO})
            await self.notify("initialized", {})
        except Exception as e:
            await self.close()
            raise HandshakeError(f"initialize failed: {e}") from e

        logger.info(f"app-server initialized (pid={self.pid})")

    async def close(self) -> None:
        """Stop the app-server and fail everything still waiting on it.

        Safe to call more than once.
        """
        if self._closed:
            # After stdout EOF the reader task may still be reaping the process
            reader = self._reader_task
            if reader is not None and reader is not asyncio.current_task() and not reader.done():
                await asyncio.wait({reader})
            return
        self._closed = True
        self._close_reason = "app-server transport closed"

        process = self._process
        if process is not None:
            await self._reap(process)
            logger.info(f"app-server terminated (pid={process.pid}, code={process.returncode})")

        for task in (self._reader_task, self._stderr_task):
            if task is not None and task is not asyncio.current_task() and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self._fail_all(TransportClosedError(self._close_reason))

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Close stdin, give the process ``close_grace`` to exit, then kill it."""
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.close_grace)
        except TimeoutError:
            self._kill_process_tree(process)
            await process.wait()

    def _kill_process_tree(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            if sys.platform != "win32":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass

    def _fail_all(self, error: TransportClosedError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
        if pending:
            logger.warning(f"failed {len(pending)} pending call(s): {error}")
        self._bus.close()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def allocate_id(self) -> int:
        """Reserve the next Correlation ID."""
        return next(self._ids)

    async def call(
        self,
        method: str,
        params: Any = OMITTED,
        *,
        request_id: int | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Send a request and wait for the matching response line.

        Args:
            method: JSON-RPC method name
            params: Optional params (any JSON value; None is sent as null)
            request_id: Use this Correlation ID instead of allocating one
            timeout: Seconds allowed for writing the request and receiving
                the response (None waits forever)

        Returns:
            The raw response line, exactly as the app-server wrote it.

        Raises:
            CallTimeoutError: No response within ``timeout``
            CallCancelledError: ``cancel_call`` was used on this id
            TransportClosedError: The app-server exited or the client closed
            WriteError: The request could not be written
        """
        if not method:
            raise ValueError("method is required")
        if self._closed:
            raise TransportClosedError(self._close_reason)
        if self._process is None:
            raise TransportClosedError("client not started")

        if request_id is None:
            request_id = self.allocate_id()
        elif request_id in self._pending:
            raise ValueError(f"request id {request_id} is already pending")

        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            # One deadline covers the write too; drain() blocks while the app-server is not reading
            async with asyncio.timeout(timeout):
                await self._write(encode_request(request_id, method, params))
                return await future
        except TimeoutError as e:
            raise CallTimeoutError(method, timeout or 0) from e
        except asyncio.CancelledError:
            # cancel_call() cancels the future only; task cancellation propagates as-is
            task = asyncio.current_task()
            if future.cancelled() and task is not None and not task.cancelling():
                raise CallCancelledError(f"call cancelled: method={method}") from None
            raise
        finally:
            self._remove_pending(request_id, future)

    def cancel_call(self, request_id: Any) -> bool:
        """Abandon a pending call; its caller gets CallCancelledError.

        Returns:
            True if a pending call with that id existed.
        """
        future = self._pending.pop(request_id, None)
        if future is None:
            return False
        future.cancel()
        return True

    async def notify(
        self, method: str, params: Any = OMITTED, *, timeout: float | None = None
    ) -> None:
        """Send a notification (no response expected).

        Raises:
            CallTimeoutError: The line could not be written within ``timeout``
        """
        if not method:
            raise ValueError("method is required")
        if self._closed:
            raise TransportClosedError(self._close_reason)
        if self._process is None:
            raise TransportClosedError("client not started")
        try:
            async with asyncio.timeout(timeout):
                await self._write(encode_notification(method, params))
        except TimeoutError as e:
            raise CallTimeoutError(method, timeout or 0) from e

    async def _write(self, data: bytes) -> None:
        """Write one line; the lock keeps messages whole and in order.

        ``write`` hands the complete line to the pipe transport at once, so a
        deadline or cancellation can only interrupt ``drain``. The line is still
        flushed in full ahead of anything written later.
        """
        process = self._process
        if process is None or process.stdin is None:
            raise WriteError("app-server stdin not available")

        async with self._write_lock:
            if process.stdin.is_closing():
                raise WriteError("app-server stdin is closed")
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (ConnectionError, OSError) as e:
                raise WriteError(f"write to app-server failed: {e}") from e

    def _remove_pending(self, request_id: Any, future: asyncio.Future[bytes]) -> None:
        # Only remove our own entry; the id may not be reused while pending
        if self._pending.get(request_id) is future:
            del self._pending[request_id]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe_notifications(self) -> tuple[Subscription, Callable[[], None]]:
        """Subscribe to every notification the app-server emits.

        Returns:
            (subscription, unsubscribe). Iterate the subscription with
            ``async for``; it ends on unsubscribe or when the client closes.
        """
        return self._bus.subscribe()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        """Background task routing stdout lines to callers and subscribers."""
        assert self._process is not None and self._process.stdout is not None
        try:
            async for line in iter_lines(self._process.stdout, self._framer):
                self._dispatch(line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"app-server read loop error: {e}")

        if self._closed:
            return

        # No response can arrive after stdout EOF, whether or not the process is alive
        self._closed = True
        self._close_reason = "app-server closed stdout"
        logger.warning("app-server closed stdout")
        self._fail_all(TransportClosedError(self._close_reason))

        await self._reap(self._process)
        code = self._process.returncode
        self._close_reason = f"app-server exited with code {code}"
        logger.warning(f"app-server exited code={code}")

    def _dispatch(self, line: bytes) -> None:
        try:
            envelope = decode_envelope(line)
        except DecodeError as e:
            logger.warning(f"failed to decode message: {e} (line={line[:200]!r})")
            return

        if isinstance(envelope, RpcNotification):
            delivered = self._bus.publish(line)
            logger.debug(f"notification method={envelope.method} delivered={delivered}")
            return

        future = self._pending.pop(envelope.id, None)
        if future is None or future.done():
            logger.debug(f"dropping response for id={envelope.id} (no pending call)")
            return
        future.set_result(line)

    async def _read_stderr(self) -> None:
        """Log app-server stderr output."""
        assert self._process is not None and self._process.stderr is not None
        while True:
            try:
                line = await self._process.stderr.readline()
            except ValueError:
                logger.warning("app-server stderr line too long; skipped")
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.warning(f"app-server stderr: {text}")

    async def __aenter__(self) -> AppServerClient:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
