"""Semantic versions exchanged during the handshake."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class SemVer:
    major: int = 0
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, text: Optional[str]) -> SemVer:
        """Parse ``"major.minor.patch"``.

        Only the first three dot-separated fields count, so build suffixes
        such as ``"1.2.3.4"`` parse as ``1.2.3``. Malformed input is logged
        and normalized to ``0.0.0``; this never raises.
        """
        parts = (text or "").strip().split(".")[:3]
        if len(parts) < 3 or not all(p.isdecimal() for p in parts):
            logger.error("Invalid version format: %r, using 0.0.0", text)
            return cls()
        major, minor, patch = (int(p) for p in parts)
        return cls(major, minor, patch)

    @classmethod
    def from_dict(cls, data: Any) -> Optional[SemVer]:
        """Build from a wire ``{major, minor, patch}`` object, or None if invalid."""
        if not isinstance(data, dict):
            return None
        values = []
        for key in ("major", "minor", "patch"):
            value = data.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                return None
            values.append(value)
        return cls(*values)

    def to_dict(self) -> Dict[str, int]:
        return {"major": self.major, "minor": self.minor, "patch": self.patch}

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def is_compatible(client: SemVer, server: SemVer) -> bool:
    """Majors must match exactly; the client's minor must be at least the server's."""
    if client.major != server.major:
        return False
    if client.minor < server.minor:
        return False
    return True
