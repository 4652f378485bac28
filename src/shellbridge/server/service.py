"""Bridge service - FastAPI app exposing the session server over WebSocket."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import ServerConfig
from ..filesystem import LocalFileSystem
from .session_server import SessionServer


logger = logging.getLogger(__name__)


def _remote_address(websocket: WebSocket) -> str:
    client = websocket.client
    if client is None:
        return "unknown"
    return f"{client.host}:{client.port}"


class BridgeService:
    """Terminal bridge service: one session server behind one WebSocket route."""

    def __init__(self, config: Optional[ServerConfig] = None, server: Optional[SessionServer] = None):
        self.config = config or ServerConfig()
        self.server = server or SessionServer(
            self.config,
            filesystem=LocalFileSystem(self.config.cwd),
        )
        self.app = FastAPI(
            title="shellbridge",
            description="WebSocket bridge to a host shell running on a pseudo-terminal",
            version=__version__,
            lifespan=self._lifespan,
        )
        self.app.state.session_server = self.server

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._register_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.server.start()
        try:
            yield
        finally:
            await self.server.shutdown()

    def _register_routes(self):
        """Register FastAPI routes."""

        @self.app.get("/status")
        async def status():
            """Connection and shell state."""
            return self.server.status()

        @self.app.websocket(self.config.path)
        async def terminal_endpoint(websocket: WebSocket):
            """Terminal channel: handshake first, then input/output/resize frames."""
            await websocket.accept()
            conn = await self.server.on_connection(websocket, _remote_address(websocket))
            try:
                while not conn.closed:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    raw = message.get("text")
                    if raw is None:
                        raw = message.get("bytes")
                    if raw is None:
                        continue
                    await self.server.on_message(conn, raw)
            except (WebSocketDisconnect, RuntimeError) as e:
                # RuntimeError: the server already closed this socket.
                logger.debug("Receive loop for %s ended: %s", conn.id, e)
            finally:
                await self.server.on_close(conn)


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    """Create and return the FastAPI app."""
    service = BridgeService(config)
    return service.app
