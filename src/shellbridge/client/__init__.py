"""Client side of the bridge: reconnecting session and local console surface."""

from .session import (
    ClientSession,
    ConnectionStatus,
    ReconnectPolicy,
    ResizeCoalescer,
    SessionState,
    TerminalSurface,
)

__all__ = [
    "ClientSession",
    "ConnectionStatus",
    "ReconnectPolicy",
    "ResizeCoalescer",
    "SessionState",
    "TerminalSurface",
]
