"""Session server: connection registry, handshake gate and PTY ownership.

Transport-agnostic. The FastAPI service (``service.py``) feeds it accepted
WebSockets; tests feed it fake transports.

Threading model:
- Everything here runs on one asyncio loop.
- Each PTY drains on its own reader thread. Chunks and the exit event cross
  into the loop with ``call_soon_threadsafe`` onto a single queue, so the
  reader never blocks on a consumer and output keeps PTY order, exit notice
  included.
- Every connection has its own outbound queue and sender task. A slow client
  backs up only its own queue; when that overflows the client is dropped.
- PTY writes and resizes go through one ``asyncio.Lock`` so input from
  different connections is never interleaved inside the shell's input stream.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Set
from uuid import uuid4

from ..config import PtyPolicy, ServerConfig
from ..errors import FileSystemError, PtySpawnError
from ..filesystem import FileSystemProvider
from ..handshake import ServerHandshake
from ..log_manager import LogManager
from ..protocol import (
    EXISTS,
    GET_CURRENT_DIRECTORY,
    LIST_DIRECTORY,
    READ_FILE,
    WRITE_FILE,
    ClientType,
    DecodeError,
    DirectoryStructureRequest,
    FileSystemReply,
    FileSystemRequest,
    Input,
    Message,
    Output,
    Resize,
    VersionCheck,
    VersionError,
    decode,
    encode,
)
from ..pty_supervisor import PtySupervisor
from ..shell import ShellSpec, select_shell
from ..version import SemVer


logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


class Transport(Protocol):
    """What the server needs from a message channel (Starlette's WebSocket fits)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None: ...


@dataclass
class Connection:
    """Everything the server knows about one client channel."""

    transport: Transport
    handshake: ServerHandshake
    remote_address: str = "unknown"
    id: str = field(default_factory=lambda: f"conn_{uuid4().hex[:8]}")
    client_version: Optional[SemVer] = None
    client_type: Optional[ClientType] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outbound: Optional[asyncio.Queue] = None
    sender_task: Optional[asyncio.Task] = None
    closed: bool = False

    @property
    def verified(self) -> bool:
        return self.handshake.verified


@dataclass
class _PtyEvent:
    supervisor: PtySupervisor
    owner: Optional[str] = None  # connection id under the per-connection policy
    text: Optional[str] = None
    exit_code: Optional[int] = None


SupervisorFactory = Callable[[], PtySupervisor]


class SessionServer:
    """Bridges verified connections to the shell.

    Responsibilities:
    - Register connections and run the version handshake on each
    - Lazily spawn the PTY on the first verified connection
    - Route input/resize from verified connections into the PTY
    - Broadcast PTY output to verified connections only
    - Respawn the shared shell when it exits on its own
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        supervisor_factory: Optional[SupervisorFactory] = None,
        filesystem: Optional[FileSystemProvider] = None,
        log_manager: Optional[LogManager] = None,
    ):
        """Initialize the session server.

        Args:
            config: Server settings. Defaults to ``ServerConfig()``.
            supervisor_factory: Builds an unspawned PTY supervisor. Defaults
                to one running the selected shell at the configured size.
            filesystem: Collaborator serving ``fileSystem`` and
                ``get_directory_structure`` requests.
            log_manager: Traffic log; built from ``config.traffic`` if omitted.
        """
        self.config = config or ServerConfig()
        self.version = self.config.semver
        self.filesystem = filesystem
        self.log = log_manager or LogManager(config=self.config.traffic)
        self.connections: Dict[str, Connection] = {}
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._shared: Optional[PtySupervisor] = None
        self._shared_started_at = 0.0
        self._owned: Dict[str, PtySupervisor] = {}
        self._rapid_exits = 0
        self._last_exit_code: Optional[int] = None
        self._pty_lock = asyncio.Lock()
        self._events: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._respawn_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._closing = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shell_spec(self) -> ShellSpec:
        spec = select_shell(login=self.config.login_shell)
        if self.config.shell:
            spec = ShellSpec(path=self.config.shell, args=spec.args, term_name=spec.term_name)
        return spec

    def _default_supervisor(self) -> PtySupervisor:
        return PtySupervisor(
            shell=self.shell_spec(),
            cols=self.config.cols,
            rows=self.config.rows,
            cwd=self.config.cwd,
        )

    async def start(self) -> None:
        """Bind to the running loop and start draining PTY events."""
        if self._pump_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._pump_task = asyncio.create_task(self._pump_events())
        logger.info(
            "Session server started (version %s, policy %s)",
            self.version, self.config.pty_policy.value,
        )

    async def shutdown(self) -> None:
        """Close every connection and kill every PTY."""
        self._closing = True
        for task in (self._respawn_task, self._idle_task):
            if task is not None:
                task.cancel()
        for conn in list(self.connections.values()):
            await self._close_transport(conn, CLOSE_GOING_AWAY, "server shutting down")
            await self.on_close(conn)
        supervisors = list(self._owned.values())
        if self._shared is not None:
            supervisors.append(self._shared)
        for supervisor in supervisors:
            await self._run_blocking(supervisor.kill)
        self._owned.clear()
        self._shared = None
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        logger.info("Session server stopped")

    async def _run_blocking(self, func, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def on_connection(self, transport: Transport, remote_address: str = "unknown") -> Connection:
        """Register a freshly accepted connection and send the version probe."""
        if self._pump_task is None:
            await self.start()
        conn = Connection(
            transport=transport,
            handshake=ServerHandshake(self.version),
            remote_address=remote_address,
            outbound=asyncio.Queue(maxsize=self.config.outbound_queue_size),
        )
        self.connections[conn.id] = conn
        conn.sender_task = asyncio.create_task(self._sender(conn))
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
        logger.info("Client connected: %s from %s", conn.id, remote_address)
        self.log.websocket("connected", f"{conn.id} {remote_address}")
        self._enqueue(conn, encode(conn.handshake.probe()))
        return conn

    async def on_message(self, conn: Connection, raw: Any) -> None:
        """Decode one frame and act on it. Never raises for bad frames."""
        if conn.closed:
            return
        message = decode(raw)
        if isinstance(message, DecodeError):
            logger.warning("Dropping malformed frame from %s: %s", conn.id, message.reason)
            self.log.add("errors", f"{conn.id}: {message.reason} {message.raw}")
            return
        self.log.websocket("received", f"{conn.id} {type(message).__name__}")

        if not conn.verified:
            await self._handle_handshake(conn, message)
            return

        if isinstance(message, Input):
            await self.write_input(conn, message.data)
        elif isinstance(message, Resize):
            await self.resize(conn, message.cols, message.rows)
        elif isinstance(message, DirectoryStructureRequest):
            await self._serve_directory(conn, message)
        elif isinstance(message, FileSystemRequest):
            await self._serve_file_system(conn, message)
        elif isinstance(message, VersionCheck):
            logger.debug("Ignoring repeated version_check from %s", conn.id)
        else:
            logger.debug("Ignoring %s from client %s", type(message).__name__, conn.id)

    async def on_close(self, conn: Connection) -> None:
        """Forget a connection whose transport is gone."""
        if self.connections.pop(conn.id, None) is None:
            return
        conn.closed = True
        conn.handshake.close()
        if conn.sender_task is not None and conn.sender_task is not asyncio.current_task():
            conn.sender_task.cancel()
        logger.info("Client disconnected: %s", conn.id)
        self.log.websocket("disconnected", conn.id)

        owned = self._owned.pop(conn.id, None)
        if owned is not None:
            await self._run_blocking(owned.kill)
            return
        if (
            self.config.pty_policy is PtyPolicy.SHARED
            and not self.connections
            and self.config.idle_timeout is not None
            and not self._closing
        ):
            self._idle_task = asyncio.create_task(self._kill_when_idle())

    async def _handle_handshake(self, conn: Connection, message: Message) -> None:
        result = conn.handshake.receive(message)
        if result.rejected:
            conn.client_version = result.version
            conn.client_type = result.client_type
            logger.warning("Rejecting %s: %s", conn.id, result.reason)
            await self._reject(conn, result.reason)
        elif result.accepted:
            conn.client_version = result.version
            conn.client_type = result.client_type
            logger.info(
                "Client %s verified: version %s, type %s",
                conn.id, result.version,
                result.client_type.value if result.client_type else "unknown",
            )
            await self._on_verified(conn)
        else:
            logger.debug("Ignoring %s from unverified %s", type(message).__name__, conn.id)

    async def _reject(self, conn: Connection, reason: str) -> None:
        self._enqueue(conn, encode(VersionError(reason)))
        try:
            await asyncio.wait_for(conn.outbound.join(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.debug("Version error to %s not flushed before close", conn.id)
        await self._close_transport(conn, CLOSE_POLICY_VIOLATION, "incompatible version")

    async def _close_transport(self, conn: Connection, code: int, reason: str) -> None:
        conn.closed = True
        try:
            await conn.transport.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Closing %s failed: %s", conn.id, e)

    async def _on_verified(self, conn: Connection) -> None:
        if self.config.pty_policy is PtyPolicy.PER_CONNECTION:
            supervisor = self._spawn(owner=conn.id)
            if supervisor is not None:
                self._owned[conn.id] = supervisor
            return
        if self._shared is not None and self._shared.alive:
            return
        if self._respawn_task is not None and not self._respawn_task.done():
            return
        self._spawn_shared()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _enqueue(self, conn: Connection, frame: str) -> bool:
        if conn.closed:
            return False
        try:
            conn.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Dropping slow client %s: %d frames pending", conn.id, conn.outbound.qsize())
            conn.closed = True
            task = asyncio.create_task(self._drop_slow(conn))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return False
        return True

    async def _drop_slow(self, conn: Connection) -> None:
        await self._close_transport(conn, CLOSE_TRY_AGAIN_LATER, "client too slow")
        await self.on_close(conn)

    async def _sender(self, conn: Connection) -> None:
        while True:
            frame = await conn.outbound.get()
            try:
                await conn.transport.send_text(frame)
            except Exception as e:
                logger.info("Send to %s failed, stopping sender: %s", conn.id, e)
                conn.outbound.task_done()
                return
            conn.outbound.task_done()

    def send(self, conn: Connection, message: Message) -> bool:
        """Queue one message for a single connection."""
        return self._enqueue(conn, encode(message))

    def broadcast(self, message: Message) -> int:
        """Serialize once and queue the frame on every verified connection.

        Returns:
            Number of connections the frame was queued for.
        """
        frame = encode(message)
        delivered = 0
        for conn in list(self.connections.values()):
            if conn.verified and self._enqueue(conn, frame):
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # PTY
    # ------------------------------------------------------------------

    def _pty_for(self, conn: Connection) -> Optional[PtySupervisor]:
        if self.config.pty_policy is PtyPolicy.PER_CONNECTION:
            return self._owned.get(conn.id)
        return self._shared

    @property
    def pty(self) -> Optional[PtySupervisor]:
        """The shared PTY, if one is running."""
        return self._shared

    async def write_input(self, conn: Connection, data: str) -> None:
        supervisor = self._pty_for(conn)
        if supervisor is None or not supervisor.alive:
            logger.debug("Dropping input from %s: no live PTY", conn.id)
            return
        self.log.input(data)
        async with self._pty_lock:
            await self._run_blocking(supervisor.write, data)

    async def resize(self, conn: Connection, cols: int, rows: int) -> None:
        supervisor = self._pty_for(conn)
        if supervisor is None or not supervisor.alive:
            logger.debug("Dropping resize from %s: no live PTY", conn.id)
            return
        self.log.resize(cols, rows)
        async with self._pty_lock:
            supervisor.resize(cols, rows)

    def _spawn(self, owner: Optional[str] = None) -> Optional[PtySupervisor]:
        supervisor = self._supervisor_factory()
        supervisor.on_data(lambda text: self._from_thread(_PtyEvent(supervisor, owner, text=text)))
        supervisor.on_exit(lambda code: self._from_thread(_PtyEvent(supervisor, owner, exit_code=code)))
        try:
            supervisor.spawn()
        except PtySpawnError as e:
            logger.error("Could not start shell: %s", e)
            self.log.add("errors", f"spawn failed: {e}")
            notice = Output(f"\r\n[could not start shell: {e}]\r\n")
            if owner is None:
                self.broadcast(notice)
            elif owner in self.connections:
                self.send(self.connections[owner], notice)
            return None
        return supervisor

    def _spawn_shared(self) -> None:
        self._shared = self._spawn()
        if self._shared is not None and self._loop is not None:
            self._shared_started_at = self._loop.time()

    def _from_thread(self, event: _PtyEvent) -> None:
        # Called on the PTY reader thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._events.put_nowait, event)
        except RuntimeError:
            logger.debug("Event loop closed; dropping PTY event")

    async def _pump_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if event.exit_code is None:
                    self._route_output(event)
                else:
                    self._handle_exit(event)
            except Exception:
                logger.exception("Failed to handle PTY event")

    def _route_output(self, event: _PtyEvent) -> None:
        self.log.output(event.text)
        message = Output(event.text)
        if event.owner is None:
            if event.supervisor is self._shared:
                self.broadcast(message)
            return
        conn = self.connections.get(event.owner)
        if conn is not None and conn.verified:
            self.send(conn, message)

    def _handle_exit(self, event: _PtyEvent) -> None:
        code = event.exit_code
        notice = Output(f"\r\n[shell exited with code {code}]\r\n")
        self.log.add("events", f"shell exited with code {code}")

        if event.owner is not None:
            if self._owned.get(event.owner) is event.supervisor:
                del self._owned[event.owner]
            conn = self.connections.get(event.owner)
            if conn is not None:
                self.send(conn, notice)
            return

        if event.supervisor is not self._shared:
            return
        self._shared = None
        self._last_exit_code = code
        self.broadcast(notice)
        if self._closing or not self.config.auto_respawn:
            return

        uptime = self._loop.time() - self._shared_started_at
        if uptime < self.config.rapid_exit_window:
            self._rapid_exits += 1
        else:
            self._rapid_exits = 0
        if self._rapid_exits >= self.config.max_rapid_restarts:
            logger.error("Shell exited %d times in a row right after start; not respawning", self._rapid_exits)
            self.broadcast(Output("\r\n[shell keeps exiting; automatic restart disabled]\r\n"))
            return
        if not any(conn.verified for conn in self.connections.values()):
            logger.info("Shell exited with no clients attached; will spawn on next connection")
            return
        self._respawn_task = asyncio.create_task(self._respawn_later())

    async def _respawn_later(self) -> None:
        await asyncio.sleep(self.config.respawn_delay)
        if self._closing or (self._shared is not None and self._shared.alive):
            return
        if not any(conn.verified for conn in self.connections.values()):
            return
        logger.info("Respawning shell")
        self._spawn_shared()

    async def _kill_when_idle(self) -> None:
        await asyncio.sleep(self.config.idle_timeout)
        if self.connections or self._shared is None:
            return
        logger.info("No clients for %ss; killing idle shell", self.config.idle_timeout)
        await self._run_blocking(self._shared.kill)

    # ------------------------------------------------------------------
    # File system
    # ------------------------------------------------------------------

    async def _serve_directory(self, conn: Connection, request: DirectoryStructureRequest) -> None:
        if self.filesystem is None:
            self.send(conn, FileSystemReply({"error": "file system access is not available"}))
            return
        try:
            structure = await self._run_blocking(self.filesystem.directory_structure, request.path)
        except FileSystemError as e:
            logger.info("Directory request from %s failed: %s", conn.id, e)
            self.send(conn, FileSystemReply({"error": str(e)}))
            return
        self.send(conn, FileSystemReply({"directoryStructure": structure}))

    async def _serve_file_system(self, conn: Connection, request: FileSystemRequest) -> None:
        """Run one provider operation off-loop and reply with its result."""
        fs = self.filesystem
        if fs is None:
            self.send(conn, FileSystemReply({"error": "file system access is not available"}))
            return
        try:
            if request.op == GET_CURRENT_DIRECTORY:
                payload = {"currentDirectory": await self._run_blocking(fs.current_directory)}
            elif request.op == LIST_DIRECTORY:
                payload = {"directoryContents": await self._run_blocking(fs.list_directory, request.path)}
            elif request.op == READ_FILE:
                payload = {"fileContent": await self._run_blocking(fs.read_file, request.path)}
            elif request.op == WRITE_FILE:
                await self._run_blocking(fs.write_file, request.path, request.content)
                payload = {"writeSuccess": True}
            elif request.op == EXISTS:
                payload = {"exists": await self._run_blocking(fs.exists, request.path)}
            else:
                payload = {"error": f"unsupported file system operation {request.op!r}"}
        except FileSystemError as e:
            logger.info("%s request from %s failed: %s", request.op, conn.id, e)
            payload = {"error": str(e)}
        self.send(conn, FileSystemReply(payload))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Snapshot of server state for the status endpoint."""
        shared = self._shared
        connections: List[Dict[str, Any]] = [
            {
                "id": c.id,
                "remote_address": c.remote_address,
                "verified": c.verified,
                "client_version": str(c.client_version) if c.client_version else None,
                "client_type": c.client_type.value if c.client_type else None,
                "connected_at": c.connected_at.isoformat(),
            }
            for c in self.connections.values()
        ]
        return {
            "version": str(self.version),
            "pty_policy": self.config.pty_policy.value,
            "connections": connections,
            "verified_count": sum(1 for c in self.connections.values() if c.verified),
            "pty": {
                "alive": bool(shared and shared.alive),
                "pid": shared.pid if shared else None,
                "size": list(shared.size) if shared else None,
                "last_exit_code": self._last_exit_code,
                "per_connection": len(self._owned),
            },
        }
