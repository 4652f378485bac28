"""
Session server - hosts one shell and bridges it to WebSocket clients.

Handles:
- Version handshake per connection
- Lazy PTY spawn and automatic respawn
- Output broadcast to verified connections
- Input and resize routing into the PTY
"""

from .session_server import Connection, SessionServer
from .service import BridgeService, create_app

__all__ = ["BridgeService", "Connection", "SessionServer", "create_app"]
