"""Configuration: Pydantic models for server and client settings."""

from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from . import __version__
from .errors import ConfigError
from .protocol import ClientType
from .version import SemVer


DEFAULT_PORT = 8999


class PtyPolicy(str, Enum):
    """How PTY processes map onto connections."""
    SHARED = "shared"  # one shell for every connection
    PER_CONNECTION = "per_connection"  # each connection gets (and takes down) its own shell


class TrafficLogConfig(BaseModel):
    """Which traffic categories are traced to the ``shellbridge.traffic`` logger."""

    input: bool = False
    output: bool = False
    resize: bool = False
    websocket: bool = False
    max_lines: int = Field(default=2000, ge=1, description="Lines kept per category")

    @classmethod
    def development(cls) -> TrafficLogConfig:
        return cls(input=True, output=True, resize=True, websocket=True)


class ServerConfig(BaseModel):
    """Session server configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    path: str = Field(default="/", description="WebSocket endpoint path")
    version: str = Field(default=__version__, description="Server semantic version")
    pty_policy: PtyPolicy = Field(default=PtyPolicy.SHARED)
    auto_respawn: bool = Field(
        default=True, description="Respawn the shared shell when it exits on its own"
    )
    respawn_delay: float = Field(default=0.5, ge=0)
    max_rapid_restarts: int = Field(
        default=5,
        ge=1,
        description="Stop respawning after this many consecutive exits inside rapid_exit_window",
    )
    rapid_exit_window: float = Field(default=1.0, ge=0)
    idle_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description=(
            "Kill the shared shell this many seconds after the last connection closes. "
            "Unset keeps an idle shell alive until the next connection."
        ),
    )
    cols: int = Field(default=80, ge=1)
    rows: int = Field(default=24, ge=1)
    cwd: Optional[str] = Field(default=None, description="Shell working directory (default $HOME)")
    shell: Optional[str] = Field(default=None, description="Override the selected shell binary")
    login_shell: bool = Field(default=True)
    outbound_queue_size: int = Field(
        default=1024, ge=1, description="Frames buffered per connection before it is dropped"
    )
    traffic: TrafficLogConfig = Field(default_factory=TrafficLogConfig)

    @property
    def semver(self) -> SemVer:
        return SemVer.parse(self.version)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> ServerConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SHELLBRIDGE_HOST          - Bind address
            PORT / SHELLBRIDGE_PORT   - Listen port (SHELLBRIDGE_PORT wins)
            VITE_APP_VERSION / APP_VERSION / SHELLBRIDGE_VERSION
                                      - Advertised server version (later names win)
            SHELLBRIDGE_PTY_POLICY    - shared | per_connection
            SHELLBRIDGE_CWD           - Shell working directory
            SHELLBRIDGE_SHELL         - Shell binary override
            SHELLBRIDGE_IDLE_TIMEOUT  - Seconds before an idle shared shell is killed
            SHELLBRIDGE_ENV           - "development" enables all traffic tracing
        """
        data = _load_file(config_path)

        _env_override(data, "host", "SHELLBRIDGE_HOST")
        _env_override(data, "port", "PORT")
        _env_override(data, "port", "SHELLBRIDGE_PORT")
        _env_override(data, "version", "VITE_APP_VERSION")
        _env_override(data, "version", "APP_VERSION")
        _env_override(data, "version", "SHELLBRIDGE_VERSION")
        _env_override(data, "pty_policy", "SHELLBRIDGE_PTY_POLICY")
        _env_override(data, "cwd", "SHELLBRIDGE_CWD")
        _env_override(data, "shell", "SHELLBRIDGE_SHELL")
        _env_override(data, "idle_timeout", "SHELLBRIDGE_IDLE_TIMEOUT")
        _apply_development_mode(data)

        return _validate(cls, data)


class ClientConfig(BaseModel):
    """Client session configuration."""

    url: str = Field(default=f"ws://localhost:{DEFAULT_PORT}/")
    version: str = Field(default=__version__, description="Client semantic version")
    client_type: ClientType = Field(default=ClientType.ELECTRON)
    max_attempts: int = Field(default=5, ge=0, description="Reconnect attempts before giving up")
    base_delay: float = Field(default=1.0, gt=0, description="Backoff base in seconds")
    max_delay: float = Field(default=10.0, gt=0, description="Backoff cap in seconds")
    resize_window: float = Field(
        default=0.1, ge=0, description="Outbound resize frames are coalesced over this window"
    )
    traffic: TrafficLogConfig = Field(default_factory=TrafficLogConfig)

    @property
    def semver(self) -> SemVer:
        return SemVer.parse(self.version)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> ClientConfig:
        """Load config from file, env vars, or defaults.

        Env vars:
            SHELLBRIDGE_URL           - Server WebSocket URL
            VITE_APP_VERSION / APP_VERSION / SHELLBRIDGE_VERSION
                                      - Client semantic version (later names win)
            SHELLBRIDGE_ENV           - "development" enables all traffic tracing
        """
        data = _load_file(config_path)
        _env_override(data, "url", "SHELLBRIDGE_URL")
        _env_override(data, "version", "VITE_APP_VERSION")
        _env_override(data, "version", "APP_VERSION")
        _env_override(data, "version", "SHELLBRIDGE_VERSION")
        _apply_development_mode(data)
        return _validate(cls, data)


def _load_file(config_path: Optional[str]) -> Dict[str, Any]:
    if not config_path:
        return {}
    if not os.path.exists(config_path):
        raise ConfigError(f"config file not found: {config_path}")
    try:
        with open(config_path) as f:
            data = json.load(f)
    except ValueError as e:
        raise ConfigError(f"invalid JSON in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a JSON object")
    return data


def _env_override(data: Dict[str, Any], key: str, env_name: str) -> None:
    value = os.environ.get(env_name)
    if value:
        data[key] = value


def _apply_development_mode(data: Dict[str, Any]) -> None:
    if os.environ.get("SHELLBRIDGE_ENV", "").lower() == "development":
        data["traffic"] = TrafficLogConfig.development().model_dump()


def _validate(model, data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
