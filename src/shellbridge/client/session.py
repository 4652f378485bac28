"""Client session: connect, handshake, stream, reconnect with backoff.

States::

    DISCONNECTED -> CONNECTING -> HANDSHAKE_PENDING -> STREAMING -> DISCONNECTED

A drop that the caller did not ask for schedules a retry after
``min(base * 2**attempt, cap)``. The attempt counter resets on every
successful open; once ``max_attempts`` retries have failed the session stays
disconnected until ``start()`` is called again. A version mismatch is fatal
and never retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Protocol, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..config import ClientConfig
from ..errors import VersionMismatch
from ..handshake import ClientHandshake
from ..log_manager import LogManager
from ..protocol import (
    DecodeError,
    DirectoryStructureRequest,
    FileSystemReply,
    FileSystemRequest,
    Input,
    Message,
    Output,
    Resize,
    VersionError,
    decode,
    encode,
)


logger = logging.getLogger(__name__)


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKE_PENDING = "handshake_pending"
    STREAMING = "streaming"


class ConnectionStatus(Enum):
    """What the terminal surface should show the user."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"  # persistent: retries exhausted or closed
    INCOMPATIBLE = "incompatible"  # blocking: version mismatch


class TerminalSurface(Protocol):
    """The rendering side: receives shell output and connection status."""

    def write(self, text: str) -> None: ...

    def set_status(self, status: ConnectionStatus, detail: str = "") -> None: ...


Connector = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay: float = 1.0
    max_delay: float = 10.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class ResizeCoalescer:
    """Trailing-edge debounce for outbound resize frames.

    The first request in a quiet period opens a window; later requests in
    the window only replace the pending size. When the window closes the
    latest size is sent once, unless it equals the last size sent.
    """

    def __init__(self, send: Callable[[int, int], None], window: float = 0.1):
        self._send = send
        self.window = window
        self._pending: Optional[Tuple[int, int]] = None
        self._last_sent: Optional[Tuple[int, int]] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    def request(self, cols: int, rows: int) -> None:
        self._pending = (cols, rows)
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.window, self._flush)

    def mark_sent(self, cols: int, rows: int) -> None:
        self._last_sent = (cols, rows)

    def _flush(self) -> None:
        self._timer = None
        size, self._pending = self._pending, None
        if size is None or size == self._last_sent:
            return
        self._last_sent = size
        self._send(*size)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None

    def reset(self) -> None:
        self.cancel()
        self._last_sent = None


class ClientSession:
    """Client counterpart of the session server.

    Owns at most one transport at a time and an explicit state; retries are
    scheduled as a cancellable task rather than by callbacks re-invoking
    themselves.
    """

    def __init__(
        self,
        surface: TerminalSurface,
        config: Optional[ClientConfig] = None,
        connector: Optional[Connector] = None,
        log_manager: Optional[LogManager] = None,
    ):
        """Initialize the client session.

        Args:
            surface: Where output and status go.
            config: Client settings. Defaults to ``ClientConfig()``.
            connector: ``async (url) -> transport``; defaults to
                ``websockets.connect``. The transport must support
                ``send``, ``close`` and async iteration over frames.
            log_manager: Traffic log; built from ``config.traffic`` if omitted.
        """
        self.surface = surface
        self.config = config or ClientConfig()
        self.policy = ReconnectPolicy(
            base_delay=self.config.base_delay,
            max_delay=self.config.max_delay,
            max_attempts=self.config.max_attempts,
        )
        self.handshake = ClientHandshake(self.config.semver, self.config.client_type)
        self.log = log_manager or LogManager(config=self.config.traffic)
        self.state = SessionState.DISCONNECTED
        self.attempts = 0
        self.fatal_error: Optional[str] = None
        self._connect = connector or websockets.connect
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._stopped = asyncio.Event()
        self._size: Optional[Tuple[int, int]] = None
        self._resizer = ResizeCoalescer(self._queue_resize, self.config.resize_window)
        self._background: Set[asyncio.Task] = set()
        self._fs_waiters: Deque[asyncio.Future] = deque()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_streaming(self) -> bool:
        return self.state is SessionState.STREAMING

    async def start(self) -> None:
        """Connect, or restart after giving up / a caller-initiated close."""
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self.fatal_error = None
        self.attempts = 0
        self._stopped.clear()
        self._task = asyncio.create_task(self._connect_and_stream())

    async def close(self) -> None:
        """Caller-initiated teardown; never triggers a reconnect."""
        if self._closing and self._stopped.is_set():
            return
        self._closing = True
        self._resizer.cancel()
        # Detach before closing so the close event cannot schedule a retry.
        task, self._task = self._task, None
        ws, self._ws = self._ws, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing transport: %s", e)
        for task in list(self._background):
            task.cancel()
        self._fail_fs_waiters("session closed")
        self._set_state(SessionState.DISCONNECTED)
        if self.fatal_error is None:
            # A version mismatch stays the last word on the surface.
            self.surface.set_status(ConnectionStatus.DISCONNECTED, "closed")
        self._stopped.set()

    async def wait_stopped(self) -> None:
        """Wait until the session is permanently disconnected."""
        await self._stopped.wait()

    async def send_input(self, data: str) -> bool:
        """Send keystrokes. Dropped (returns False) unless streaming."""
        if not self.is_streaming:
            logger.warning("Not connected; dropping %d chars of input", len(data))
            return False
        self.log.input(data)
        return await self._send(Input(data))

    async def execute(self, command: str) -> bool:
        if not command.endswith("\n"):
            command += "\n"
        return await self.send_input(command)

    def resize(self, cols: int, rows: int) -> None:
        """Record the surface size; sent coalesced while streaming."""
        self._size = (cols, rows)
        if self.is_streaming:
            self._resizer.request(cols, rows)

    async def request_directory_structure(
        self, path: Optional[str] = None, timeout: float = 5.0
    ) -> Dict[str, Any]:
        """Ask the server's file-system collaborator for a directory tree.

        Returns:
            The ``fileSystem`` reply payload; ``{"error": ...}`` on failure
            or timeout.
        """
        return await self._request_file_system(DirectoryStructureRequest(path), timeout)

    async def request_file_system(
        self,
        op: str,
        path: Optional[str] = None,
        content: Optional[str] = None,
        timeout: float = 5.0,
    ) -> Dict[str, Any]:
        """Run one file-system operation (``readFile``, ``exists``, ...) on the server.

        Returns the reply payload, e.g. ``{"fileContent": "..."}``, or
        ``{"error": ...}``.
        """
        return await self._request_file_system(FileSystemRequest(op, path, content), timeout)

    async def _request_file_system(self, request: Message, timeout: float) -> Dict[str, Any]:
        if not self.is_streaming:
            return {"error": "not connected"}
        future = asyncio.get_running_loop().create_future()
        self._fs_waiters.append(future)
        if not await self._send(request):
            self._fs_waiters.remove(future)
            return {"error": "send failed"}
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            if future in self._fs_waiters:
                self._fs_waiters.remove(future)
            return {"error": "timed out"}

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("Client session %s -> %s", self.state.value, state.value)
            self.state = state

    async def _connect_and_stream(self) -> None:
        url = self.config.url
        self._set_state(SessionState.CONNECTING)
        if self.attempts == 0:
            self.surface.set_status(ConnectionStatus.CONNECTING, url)
        self.handshake.reset()
        self._resizer.reset()
        try:
            ws = await self._connect(url)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            logger.warning("Connection to %s failed: %s", url, e)
            self._on_transport_closed()
            return

        if self._closing:
            await ws.close()
            return
        self._ws = ws
        self.attempts = 0
        self._set_state(SessionState.HANDSHAKE_PENDING)
        logger.info("Connected to %s", url)
        self.log.websocket("connected", url)

        try:
            async for raw in ws:
                if not await self._handle_frame(ws, raw):
                    break
        except ConnectionClosed as e:
            logger.info("Connection closed: %s", e)
        finally:
            if self._ws is ws:
                self._ws = None

        if self._closing:
            return
        self._on_transport_closed()

    def _on_transport_closed(self) -> None:
        self._set_state(SessionState.DISCONNECTED)
        self._resizer.cancel()
        self._fail_fs_waiters("connection lost")
        if self._closing:
            return
        if self.fatal_error is not None:
            self._stopped.set()
            return
        if self.policy.exhausted(self.attempts):
            logger.error("Failed to reconnect after %d attempts", self.attempts)
            self.surface.set_status(
                ConnectionStatus.DISCONNECTED,
                f"gave up after {self.attempts} reconnect attempts",
            )
            self._stopped.set()
            return
        self.attempts += 1
        delay = self.policy.delay(self.attempts)
        logger.info(
            "Reconnecting (%d/%d) in %.1fs", self.attempts, self.policy.max_attempts, delay
        )
        self.surface.set_status(
            ConnectionStatus.RECONNECTING,
            f"attempt {self.attempts}/{self.policy.max_attempts} in {delay:.0f}s",
        )
        self._task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closing:
            return
        await self._connect_and_stream()

    async def _handle_frame(self, ws: Any, raw: Any) -> bool:
        """Process one inbound frame. Returns False to stop reading."""
        message = decode(raw)
        if isinstance(message, DecodeError):
            logger.warning("Dropping malformed frame: %s", message.reason)
            return True

        if not self.handshake.verified:
            try:
                reply = self.handshake.receive(message)
            except VersionMismatch as e:
                self._fail_fatal(e.reason)
                await ws.close()
                return False
            if reply is None:
                logger.debug("Ignoring %s before handshake", type(message).__name__)
                return True
            if not await self._send(reply):
                return False
            self.handshake.mark_replied()
            self._set_state(SessionState.STREAMING)
            self.surface.set_status(ConnectionStatus.CONNECTED, f"server {self.handshake.server_version}")
            if self._size is not None:
                cols, rows = self._size
                if await self._send(Resize(cols, rows)):
                    self._resizer.mark_sent(cols, rows)
            return True

        if isinstance(message, Output):
            self.log.output(message.data)
            self.surface.write(message.data)
        elif isinstance(message, VersionError):
            self._fail_fatal(message.reason)
            await ws.close()
            return False
        elif isinstance(message, FileSystemReply):
            self._resolve_fs_waiter(message)
        else:
            logger.debug("Ignoring %s from server", type(message).__name__)
        return True

    def _fail_fatal(self, reason: str) -> None:
        logger.error("Version check failed: %s", reason)
        self.fatal_error = reason
        self.surface.set_status(ConnectionStatus.INCOMPATIBLE, reason)

    async def _send(self, message: Message) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(encode(message))
        except ConnectionClosed as e:
            logger.info("Send failed, connection closed: %s", e)
            return False
        return True

    def _queue_resize(self, cols: int, rows: int) -> None:
        if not self.is_streaming:
            return
        self.log.resize(cols, rows)
        task = asyncio.create_task(self._send(Resize(cols, rows)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _resolve_fs_waiter(self, reply: FileSystemReply) -> None:
        while self._fs_waiters:
            future = self._fs_waiters.popleft()
            if not future.done():
                future.set_result(reply.payload)
                return
        logger.debug("Unsolicited fileSystem reply")

    def _fail_fs_waiters(self, reason: str) -> None:
        while self._fs_waiters:
            future = self._fs_waiters.popleft()
            if not future.done():
                future.set_result({"error": reason})
