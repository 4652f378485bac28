"""Exception types shared across the bridge."""


class ShellBridgeError(Exception):
    """Base class for bridge errors."""


class PtySpawnError(ShellBridgeError):
    """The OS refused to allocate a pseudo-terminal or start the shell."""


class VersionMismatch(ShellBridgeError):
    """Client and server builds cannot talk to each other.

    Fatal for the connection: retrying with the same build cannot succeed.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConfigError(ShellBridgeError):
    """Configuration file or environment override is invalid."""


class FileSystemError(ShellBridgeError):
    """A file-system collaborator request could not be served."""
