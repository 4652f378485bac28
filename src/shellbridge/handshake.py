"""Version handshake that gates terminal traffic on a connection.

Server side: the server probes with its own version as soon as a connection
is accepted and ignores everything until the client answers with a
compatible ``version_check``. Client side: the client checks the probe
locally (so it can explain an incompatibility itself), replies with its own
version, and only then considers itself verified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import VersionMismatch
from .protocol import ClientType, Message, VersionCheck, VersionError
from .version import SemVer, is_compatible


logger = logging.getLogger(__name__)


class HandshakeState(Enum):
    AWAITING = "awaiting"
    VERIFIED = "verified"
    CLOSED = "closed"


class HandshakeOutcome(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass(frozen=True)
class HandshakeResult:
    outcome: HandshakeOutcome
    reason: str = ""
    version: Optional[SemVer] = None
    client_type: Optional[ClientType] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is HandshakeOutcome.ACCEPTED

    @property
    def rejected(self) -> bool:
        return self.outcome is HandshakeOutcome.REJECTED


_IGNORED = HandshakeResult(HandshakeOutcome.IGNORED)


def incompatibility_reason(client: SemVer, server: SemVer) -> str:
    return (
        f"Version mismatch: client {client} is not compatible with server {server}. "
        "Please update your client."
    )


class ServerHandshake:
    """Per-connection server gate: AWAITING -> VERIFIED, or CLOSED on rejection."""

    def __init__(self, server_version: SemVer):
        self.server_version = server_version
        self.state = HandshakeState.AWAITING

    @property
    def verified(self) -> bool:
        return self.state is HandshakeState.VERIFIED

    def probe(self) -> VersionCheck:
        """The frame sent immediately after accepting the connection."""
        return VersionCheck(self.server_version)

    def receive(self, message: Message) -> HandshakeResult:
        """Feed a decoded frame received while the gate is open.

        Only a ``VersionCheck`` received in AWAITING changes state; every
        other frame, and any repeat after verification, is ignored.
        """
        if self.state is not HandshakeState.AWAITING:
            return _IGNORED
        if not isinstance(message, VersionCheck):
            return _IGNORED
        if not is_compatible(message.version, self.server_version):
            self.state = HandshakeState.CLOSED
            return HandshakeResult(
                HandshakeOutcome.REJECTED,
                reason=incompatibility_reason(message.version, self.server_version),
                version=message.version,
                client_type=message.client_type,
            )
        self.state = HandshakeState.VERIFIED
        return HandshakeResult(
            HandshakeOutcome.ACCEPTED,
            version=message.version,
            client_type=message.client_type,
        )

    def close(self) -> None:
        self.state = HandshakeState.CLOSED


class ClientHandshake:
    """Client half: answer the server's probe, or fail fatally."""

    def __init__(self, client_version: SemVer, client_type: ClientType = ClientType.ELECTRON):
        self.client_version = client_version
        self.client_type = client_type
        self.state = HandshakeState.AWAITING
        self.server_version: Optional[SemVer] = None

    @property
    def verified(self) -> bool:
        return self.state is HandshakeState.VERIFIED

    def reply(self) -> VersionCheck:
        return VersionCheck(self.client_version, self.client_type)

    def receive(self, message: Message) -> Optional[VersionCheck]:
        """Handle a frame while AWAITING.

        Returns:
            The reply to send, or None if the frame is not part of the
            handshake. The caller marks the handshake complete with
            ``mark_replied`` once the reply is on the wire.

        Raises:
            VersionMismatch: The server rejected us, or its probe is
                incompatible with this build.
        """
        if isinstance(message, VersionError):
            self.state = HandshakeState.CLOSED
            raise VersionMismatch(message.reason)
        if self.state is not HandshakeState.AWAITING or not isinstance(message, VersionCheck):
            return None
        self.server_version = message.version
        if not is_compatible(self.client_version, message.version):
            self.state = HandshakeState.CLOSED
            reason = incompatibility_reason(self.client_version, message.version)
            logger.error(reason)
            raise VersionMismatch(reason)
        return self.reply()

    def mark_replied(self) -> None:
        if self.state is HandshakeState.AWAITING:
            self.state = HandshakeState.VERIFIED

    def reset(self) -> None:
        self.state = HandshakeState.AWAITING
        self.server_version = None
