"""PTY supervisor: one shell process attached to a pseudo-terminal.

The supervisor is the single point of truth for whether the shell is alive.
It forks the shell onto a new PTY, drains the master side on a background
thread and pushes each chunk to the registered data callback, and reports
the exit code exactly once.

Notes:
- Dimensions are passed as (cols, rows) everywhere in this package. The
  kernel winsize struct is (rows, cols, xpixel, ypixel); only
  ``_apply_winsize`` and ``get_winsize`` deal with that ordering.
- Chunk boundaries are whatever ``os.read`` returns. Output is decoded with
  an incremental UTF-8 decoder so a multi-byte sequence split across two
  reads is emitted whole in the later chunk.
"""

from __future__ import annotations

import codecs
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import sys
import termios
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, Union

from .errors import PtySpawnError
from .shell import ShellSpec, select_shell


logger = logging.getLogger(__name__)

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]

READ_SIZE = 4096
POLL_INTERVAL = 0.05


def _exit_code_from_status(status: int) -> int:
    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    if os.WIFSIGNALED(status):
        return 128 + os.WTERMSIG(status)
    return -1


@dataclass
class PtySupervisor:
    shell: ShellSpec = field(default_factory=select_shell)
    cols: int = 80
    rows: int = 24
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    pid: Optional[int] = field(default=None, init=False)
    master_fd: Optional[int] = field(default=None, init=False)
    exit_code: Optional[int] = field(default=None, init=False)
    _on_data: Optional[DataCallback] = field(default=None, init=False, repr=False)
    _on_exit: Optional[ExitCallback] = field(default=None, init=False, repr=False)
    _reader_thread: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _exited: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _write_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _exit_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def on_data(self, cb: DataCallback) -> None:
        """Set the consumer for output chunks (called on the reader thread)."""
        self._on_data = cb

    def on_exit(self, cb: ExitCallback) -> None:
        """Set callback for process exit (receives exit code)."""
        self._on_exit = cb

    @property
    def alive(self) -> bool:
        return self.pid is not None and not self._exited.is_set()

    @property
    def dead(self) -> bool:
        """True once the process has exited; a dead supervisor is not reusable."""
        return self._exited.is_set()

    @property
    def size(self) -> Tuple[int, int]:
        return self.cols, self.rows

    def spawn(
        self,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Fork the shell onto a new PTY and start draining its output.

        Args:
            cols: Initial width. Defaults to the supervisor's current size.
            rows: Initial height.
            cwd: Working directory for the shell. Defaults to ``$HOME``.
            env: Environment for the shell. Defaults to ``os.environ``.

        Returns:
            The child pid.

        Raises:
            PtySpawnError: If the OS refuses to allocate the PTY, or this
                supervisor already ran a process that has since exited.
        """
        if self.alive:
            return self.pid
        if self.dead:
            raise PtySpawnError("PTY handle is dead; create a new supervisor")

        self.cols = cols or self.cols
        self.rows = rows or self.rows
        self.cwd = cwd or self.cwd or os.environ.get("HOME") or os.getcwd()
        base_env = os.environ if env is None else env
        self.env = dict(base_env)
        self.env["TERM"] = self.shell.term_name
        self.env["COLUMNS"] = str(self.cols)
        self.env["LINES"] = str(self.rows)

        argv = self.shell.argv
        try:
            pid, master = pty.fork()
        except OSError as e:
            raise PtySpawnError(f"could not allocate a PTY: {e}") from e

        if pid == 0:
            self._exec_child(argv)

        self.pid = pid
        self.master_fd = master
        self._apply_winsize(self.cols, self.rows)

        self._stop_event.clear()
        self._reader_thread = threading.Thread(
            target=self._reader_loop, name=f"pty-reader-{pid}", daemon=True
        )
        self._reader_thread.start()
        logger.info(
            "PTY spawned: pid=%d shell=%s size=%dx%d cwd=%s",
            pid, " ".join(argv), self.cols, self.rows, self.cwd,
        )
        return pid

    def _exec_child(self, argv) -> None:
        # Runs in the forked child: no logging, no threads, only exec or _exit.
        try:
            winsize = struct.pack("HHHH", self.rows, self.cols, 0, 0)
            fcntl.ioctl(sys.stdin.fileno(), termios.TIOCSWINSZ, winsize)
        except OSError:
            pass
        try:
            os.chdir(self.cwd)
        except OSError:
            pass
        try:
            os.execvpe(argv[0], argv, self.env)
        except OSError as e:
            os.write(2, f"failed to exec {argv[0]}: {e}\r\n".encode())
        os._exit(127)

    def _reader_loop(self) -> None:
        fd = self.master_fd
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while not self._stop_event.is_set():
            try:
                r, _, _ = select.select([fd], [], [], POLL_INTERVAL)
            except (OSError, ValueError):
                break
            if fd not in r:
                # The shell may be gone while a grandchild still holds the
                # slave open, in which case EOF never arrives.
                if self._poll_exit():
                    self._drain(fd, decoder)
                    break
                continue
            try:
                data = os.read(fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._emit(decoder.decode(data))
        self._emit(decoder.decode(b"", final=True))
        self._finish()

    def _drain(self, fd: int, decoder) -> None:
        # Output written just before exit can still be buffered on the master.
        while True:
            try:
                r, _, _ = select.select([fd], [], [], 0)
                if fd not in r:
                    return
                data = os.read(fd, READ_SIZE)
            except (OSError, ValueError):
                return
            if not data:
                return
            self._emit(decoder.decode(data))

    def _emit(self, text: str) -> None:
        if not text or not self._on_data:
            return
        try:
            self._on_data(text)
        except Exception:
            logger.exception("PTY data callback failed (pid=%s)", self.pid)

    def _poll_exit(self) -> bool:
        try:
            pid, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            return True
        if pid == 0:
            return False
        self.exit_code = _exit_code_from_status(status)
        return True

    def _finish(self) -> None:
        with self._exit_lock:
            if self._exited.is_set():
                return
            if self.exit_code is None:
                try:
                    _, status = os.waitpid(self.pid, 0)
                    self.exit_code = _exit_code_from_status(status)
                except ChildProcessError:
                    self.exit_code = -1
            # Writers and resizers hold _write_lock while they use the fd, so
            # the descriptor number cannot be reused under them.
            with self._write_lock:
                if self.master_fd is not None:
                    try:
                        os.close(self.master_fd)
                    except OSError:
                        pass
                    self.master_fd = None
            self._exited.set()
        logger.info("PTY process %s exited with code %s", self.pid, self.exit_code)
        if self._on_exit:
            try:
                self._on_exit(self.exit_code)
            except Exception:
                logger.exception("PTY exit callback failed (pid=%s)", self.pid)

    def write(self, data: Union[str, bytes]) -> None:
        """Write raw input to the shell. No-op when the process is not alive."""
        payload = data.encode() if isinstance(data, str) else data
        with self._write_lock:
            fd = self.master_fd
            if not self.alive or fd is None:
                logger.debug("Dropping %d chars of input: no live PTY", len(data))
                return
            view = memoryview(payload)
            while view:
                try:
                    written = os.write(fd, view)
                except OSError as e:
                    logger.debug("PTY write failed (pid=%s): %s", self.pid, e)
                    return
                view = view[written:]

    def execute(self, command: str) -> None:
        """Write a command line, adding the trailing newline if missing."""
        if not command.endswith("\n"):
            command += "\n"
        self.write(command)

    def resize(self, cols: int, rows: int) -> None:
        """Set the PTY window size and notify the shell via SIGWINCH."""
        if cols <= 0 or rows <= 0:
            logger.debug("Ignoring resize to %dx%d", cols, rows)
            return
        self.cols = cols
        self.rows = rows
        if self.alive:
            self._apply_winsize(cols, rows)

    def _apply_winsize(self, cols: int, rows: int) -> None:
        with self._write_lock:
            fd = self.master_fd
            if fd is None:
                return
            try:
                winsize = struct.pack("HHHH", rows, cols, 0, 0)
                fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
            except OSError as e:
                logger.debug("TIOCSWINSZ failed (pid=%s): %s", self.pid, e)
                return
        if self.pid:
            try:
                os.kill(self.pid, signal.SIGWINCH)
            except ProcessLookupError:
                pass

    def get_winsize(self) -> Optional[Tuple[int, int]]:
        """Return current PTY winsize as (cols, rows) if available."""
        with self._write_lock:
            fd = self.master_fd
            if fd is None:
                return None
            try:
                data = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
            except OSError:
                return None
        rows, cols, _, _ = struct.unpack("HHHH", data)
        return cols, rows

    def kill(self, timeout: float = 2.0) -> None:
        """Terminate the shell's process group and wait for the reader to finish.

        Safe to call repeatedly and from the exit callback.
        """
        if self.pid is None or self._exited.is_set():
            return
        self._signal_group(signal.SIGHUP)
        if not self._exited.wait(timeout / 2):
            self._signal_group(signal.SIGKILL)
        self._stop_event.set()
        reader = self._reader_thread
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=timeout)

    def _signal_group(self, sig: int) -> None:
        # pty.fork makes the child a session leader, so its pgid is its pid.
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning("Could not signal PTY process group %s: %s", self.pid, e)
