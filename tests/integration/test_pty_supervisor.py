"""Integration tests for PtySupervisor against real processes.

Winsize note: the kernel struct is (rows, cols); the supervisor takes and
returns (cols, rows) everywhere.
"""

import os
import sys
import threading
import time

import pytest

from shellbridge.errors import PtySpawnError
from shellbridge.pty_supervisor import PtySupervisor
from shellbridge.shell import ShellSpec


pytestmark = [
    pytest.mark.pty,
    pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX pseudo-terminal"),
]


def sh(command: str) -> ShellSpec:
    return ShellSpec("/bin/sh", ["-c", command])


class Collector:
    def __init__(self, supervisor: PtySupervisor):
        self.chunks = []
        self.exit_codes = []
        self.exited = threading.Event()
        supervisor.on_data(self.chunks.append)
        supervisor.on_exit(self._on_exit)

    def _on_exit(self, code):
        self.exit_codes.append(code)
        self.exited.set()

    @property
    def text(self):
        return "".join(self.chunks)

    def wait_for(self, needle: str, timeout: float = 3.0) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if needle in self.text:
                return True
            time.sleep(0.02)
        return False


def test_output_is_delivered():
    supervisor = PtySupervisor(shell=sh("echo hello-from-pty"))
    collected = Collector(supervisor)
    supervisor.spawn()
    assert collected.exited.wait(3)
    assert "hello-from-pty" in collected.text


def test_exit_code_reported_once():
    supervisor = PtySupervisor(shell=sh("exit 42"))
    collected = Collector(supervisor)
    supervisor.spawn()
    assert collected.exited.wait(3)
    time.sleep(0.1)
    assert collected.exit_codes == [42]
    assert supervisor.exit_code == 42
    assert supervisor.dead
    assert not supervisor.alive


def test_input_reaches_process():
    supervisor = PtySupervisor(shell=ShellSpec("cat"))
    collected = Collector(supervisor)
    supervisor.spawn()
    try:
        supervisor.write("ping-123\n")
        assert collected.wait_for("ping-123")
    finally:
        supervisor.kill()
    assert collected.exited.wait(3)


def test_initial_size_visible_to_child():
    supervisor = PtySupervisor(shell=sh("stty size"), cols=132, rows=43)
    collected = Collector(supervisor)
    supervisor.spawn()
    assert collected.exited.wait(3)
    # stty prints "rows cols"
    assert "43 132" in collected.text


def test_resize_updates_winsize():
    supervisor = PtySupervisor(shell=sh("sleep 10"))
    Collector(supervisor)
    supervisor.spawn()
    try:
        supervisor.resize(175, 39)
        assert supervisor.get_winsize() == (175, 39)
        assert supervisor.size == (175, 39)
    finally:
        supervisor.kill()


def test_non_positive_resize_is_ignored():
    supervisor = PtySupervisor(shell=sh("sleep 10"), cols=100, rows=30)
    Collector(supervisor)
    supervisor.spawn()
    try:
        supervisor.resize(0, 24)
        assert supervisor.get_winsize() == (100, 30)
    finally:
        supervisor.kill()


def test_kill_terminates_and_reports_exit():
    supervisor = PtySupervisor(shell=sh("sleep 30"))
    collected = Collector(supervisor)
    supervisor.spawn()
    supervisor.kill()
    assert collected.exited.wait(3)
    assert not supervisor.alive
    assert len(collected.exit_codes) == 1
    supervisor.kill()


def test_dead_supervisor_cannot_respawn():
    supervisor = PtySupervisor(shell=sh("true"))
    collected = Collector(supervisor)
    supervisor.spawn()
    assert collected.exited.wait(3)
    with pytest.raises(PtySpawnError):
        supervisor.spawn()


def test_write_after_exit_is_noop():
    supervisor = PtySupervisor(shell=sh("true"))
    collected = Collector(supervisor)
    supervisor.spawn()
    assert collected.exited.wait(3)
    supervisor.write("ignored\n")


def test_environment_reports_terminal():
    supervisor = PtySupervisor(shell=sh('echo "term=$TERM"'))
    collected = Collector(supervisor)
    supervisor.spawn(env={"PATH": "/usr/bin:/bin"})
    assert collected.exited.wait(3)
    assert "term=xterm-color" in collected.text


def test_multibyte_output_decoded():
    supervisor = PtySupervisor(shell=sh("printf 'caf\\303\\251 \\342\\234\\223\\n'"))
    collected = Collector(supervisor)
    supervisor.spawn()
    assert collected.exited.wait(3)
    assert "café ✓" in collected.text


def test_resize_after_exit_is_noop():
    supervisor = PtySupervisor(shell=sh("true"))
    collected = Collector(supervisor)
    supervisor.spawn()
    assert collected.exited.wait(3)
    supervisor.resize(100, 40)
    assert supervisor.get_winsize() is None
    assert supervisor.size == (100, 40)


def test_exit_waits_for_in_flight_write(monkeypatch):
    supervisor = PtySupervisor(shell=ShellSpec("cat"))
    collected = Collector(supervisor)
    supervisor.spawn()

    entered = threading.Event()
    fd_open_during_write = []
    real_write = os.write
    master = supervisor.master_fd

    def slow_write(fd, data):
        if fd != master:
            return real_write(fd, data)
        entered.set()
        time.sleep(0.3)
        try:
            os.fstat(fd)
            fd_open_during_write.append(True)
        except OSError:
            fd_open_during_write.append(False)
        return real_write(fd, data)

    monkeypatch.setattr(os, "write", slow_write)
    writer = threading.Thread(target=supervisor.write, args=("late\n",))
    writer.start()
    assert entered.wait(2)

    # The shell exits while the write is still using the descriptor.
    supervisor.kill()
    writer.join(3)
    assert collected.exited.wait(3)
    assert fd_open_during_write == [True]
    assert supervisor.master_fd is None
