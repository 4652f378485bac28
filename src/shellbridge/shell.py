"""Shell selection for the host platform.

Picks the shell binary, its arguments and the terminal type name reported
to it. Selection is a pure function of its inputs so the server can never
fail to start because of it: unknown platforms get the POSIX default.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import List, Mapping, Optional


WINDOWS_PLATFORMS = ("win32", "cygwin")


@dataclass(frozen=True)
class ShellSpec:
    """Shell binary, arguments and TERM name for a PTY."""

    path: str
    args: List[str] = field(default_factory=list)
    term_name: str = "xterm-color"

    @property
    def argv(self) -> List[str]:
        return [self.path, *self.args]


def _posix_default(platform: str) -> str:
    if platform == "darwin":
        return "/bin/zsh"
    return "/bin/sh"


def select_shell(
    platform: Optional[str] = None,
    *,
    login: bool = True,
    env: Optional[Mapping[str, str]] = None,
) -> ShellSpec:
    """Decide which shell to launch.

    Args:
        platform: Platform identifier as reported by ``sys.platform``.
            Defaults to the running interpreter's platform.
        login: Start POSIX shells as login shells (``-l``).
        env: Environment mapping consulted for ``$SHELL``. Defaults to
            ``os.environ``.

    Returns:
        The shell to spawn. Never raises.
    """
    platform = (platform or sys.platform).lower()
    env = os.environ if env is None else env

    if platform in WINDOWS_PLATFORMS:
        return ShellSpec(path="cmd.exe", args=["/K"], term_name="cmd")

    shell = env.get("SHELL") or _posix_default(platform)
    args = ["-l"] if login else []
    return ShellSpec(path=shell, args=args, term_name="xterm-color")
