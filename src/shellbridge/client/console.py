"""Local terminal as a client surface: raw stdin in, shell output out."""

import asyncio
import codecs
import os
import signal
import sys
import termios
import tty
from contextlib import contextmanager
from typing import Callable, Optional, TextIO, Tuple

from .session import ConnectionStatus

# Ctrl-] detaches, as in telnet.
DETACH_KEY = "\x1d"

_STATUS_TEXT = {
    ConnectionStatus.CONNECTING: "connecting",
    ConnectionStatus.CONNECTED: "connected",
    ConnectionStatus.RECONNECTING: "connection lost, reconnecting",
    ConnectionStatus.DISCONNECTED: "disconnected",
    ConnectionStatus.INCOMPATIBLE: "incompatible version",
}


class ConsoleSurface:
    """
    Renders a remote shell in the local terminal.

    Output is written straight through (the local terminal does the
    emulation). Status changes go to stderr on their own line.
    """

    def __init__(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None,
                 stderr: Optional[TextIO] = None):
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.status: Optional[ConnectionStatus] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._original_attrs = None

    def write(self, text: str) -> None:
        self.stdout.write(text)
        self.stdout.flush()

    def set_status(self, status: ConnectionStatus, detail: str = "") -> None:
        self.status = status
        line = f"[shellbridge] {_STATUS_TEXT[status]}"
        if detail:
            line += f": {detail}"
        self.stderr.write(f"\r\n{line}\r\n")
        self.stderr.flush()

    def size(self) -> Tuple[int, int]:
        """Current (cols, rows) of the local terminal."""
        try:
            size = os.get_terminal_size(self.stdout.fileno())
        except (OSError, ValueError):
            return 80, 24
        return size.columns, size.lines

    @contextmanager
    def raw_mode(self):
        """Put stdin in raw mode for the duration; restore on exit."""
        fd = self.stdin.fileno()
        if not os.isatty(fd):
            yield
            return
        self._original_attrs = termios.tcgetattr(fd)
        tty.setraw(fd)
        try:
            yield
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, self._original_attrs)
            self._original_attrs = None

    def attach(
        self,
        loop: asyncio.AbstractEventLoop,
        on_input: Callable[[str], None],
        on_resize: Callable[[int, int], None],
        on_detach: Callable[[], None],
    ) -> None:
        """Start forwarding keystrokes and window-size changes."""
        fd = self.stdin.fileno()

        def _read_stdin():
            try:
                data = os.read(fd, 4096)
            except OSError:
                data = b""
            if not data:
                loop.remove_reader(fd)
                on_detach()
                return
            text = self._decoder.decode(data)
            if DETACH_KEY in text:
                before = text.split(DETACH_KEY, 1)[0]
                if before:
                    on_input(before)
                on_detach()
                return
            if text:
                on_input(text)

        loop.add_reader(fd, _read_stdin)
        loop.add_signal_handler(signal.SIGWINCH, lambda: on_resize(*self.size()))

    def detach(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.remove_reader(self.stdin.fileno())
        loop.remove_signal_handler(signal.SIGWINCH)
