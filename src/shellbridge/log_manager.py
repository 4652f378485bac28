from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from .config import TrafficLogConfig


traffic_logger = logging.getLogger("shellbridge.traffic")

CATEGORIES = ("input", "output", "resize", "websocket", "events", "errors")


@dataclass
class LogManager:
    """Line-buffered traffic log by category.

    Categories: input, output, resize, websocket, events, errors.
    The first four are traced only when switched on in ``TrafficLogConfig``;
    events and errors are always recorded. Recorded lines are also emitted
    to the ``shellbridge.traffic`` logger at DEBUG.
    """

    config: TrafficLogConfig = field(default_factory=TrafficLogConfig)
    buffers: Dict[str, Deque[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in CATEGORIES:
            self.buffers[name] = deque(maxlen=self.config.max_lines)

    def enabled(self, category: str) -> bool:
        return getattr(self.config, category, True)

    def add(self, category: str, message: str) -> None:
        if not self.enabled(category):
            return
        buf = self.buffers.setdefault(category, deque(maxlen=self.config.max_lines))
        for line in message.splitlines() or [message]:
            buf.append(line)
        traffic_logger.debug("[%s] %s", category.upper(), message)

    def input(self, data: str) -> None:
        self.add("input", repr(data))

    def output(self, data: str) -> None:
        self.add("output", repr(data))

    def resize(self, cols: int, rows: int) -> None:
        self.add("resize", f"{cols}x{rows}")

    def websocket(self, message: str, detail: Optional[str] = None) -> None:
        self.add("websocket", f"{message} {detail}" if detail else message)

    def text(self, category: str) -> str:
        buf = self.buffers.get(category)
        if not buf:
            return ""
        return "\n".join(buf)
