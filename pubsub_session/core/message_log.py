"""
Bounded history of messages sent and received by a session.

Consumers such as a UI render this as a message log; the session client
records every publish it issues and every message it accepts for delivery.
"""
import threading
import time
from collections import deque
from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import QoS


class LogDirection(StrEnum):
    SENT = "sent"
    RECEIVED = "received"


class LogEntry(BaseModel):
    """One logged message. `timestamp` is Unix milliseconds."""
    model_config = ConfigDict(frozen=True)

    direction: LogDirection
    topic: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    def format(self) -> str:
        clock = datetime.fromtimestamp(self.timestamp / 1000).strftime("%H:%M:%S")
        text = self.payload.decode("utf-8", errors="replace")
        return f"[{clock}] {self.direction.value} - {self.topic}\n{text}"


class MessageLog:
    """
    Thread-safe ring buffer of LogEntry records.

    A `max_entries` of 0 disables recording.
    """

    def __init__(self, max_entries: int = 500):
        self.max_entries = max_entries
        self._entries: deque[LogEntry] = deque(maxlen=max_entries or None)
        self._lock = threading.Lock()

    def record(
        self,
        direction: LogDirection,
        topic: str,
        payload: bytes,
        qos: int = 0,
        retain: bool = False,
    ) -> Optional[LogEntry]:
        if self.max_entries == 0:
            return None
        entry = LogEntry(direction=direction, topic=topic, payload=payload, qos=qos, retain=retain)
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self, direction: LogDirection | None = None) -> list[LogEntry]:
        with self._lock:
            snapshot = list(self._entries)
        if direction is None:
            return snapshot
        return [entry for entry in snapshot if entry.direction == direction]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def export_text(self) -> str:
        """Render all entries oldest first, separated by `---` rules."""
        return "\n\n---\n\n".join(entry.format() for entry in self.entries())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["LogDirection", "LogEntry", "MessageLog"]
