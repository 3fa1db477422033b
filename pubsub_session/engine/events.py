"""
Session event stream.

Every client publishes SessionEvent records here: state transitions, delivery
completions and failures, and session-fatal errors. Consumers either pull
events with get() or register listeners that are called synchronously on the
emitting thread (listeners must be quick).
"""
import logging
import queue
import threading
from collections import deque
from typing import Callable, Iterator

from ..core.models import SessionEvent, SessionEventType

logger = logging.getLogger(__name__)

EventListener = Callable[[SessionEvent], None]


class EventStream:
    def __init__(self, history_size: int = 1000):
        self._queue: queue.Queue[SessionEvent] = queue.Queue()
        self._history: deque[SessionEvent] = deque(maxlen=history_size)
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def emit(self, event: SessionEvent) -> None:
        with self._lock:
            self._history.append(event)
            listeners = list(self._listeners)
        self._queue.put(event)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}", exc_info=True)

    def add_listener(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
            else:
                logger.warning(f"Listener {listener!r} not found")

    def get(self, timeout: float | None = None) -> SessionEvent:
        """
        Pop the next unread event.

        Raises:
            queue.Empty: If no event arrives within `timeout`
        """
        return self._queue.get(timeout=timeout)

    def drain(self) -> list[SessionEvent]:
        """Pop every unread event without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def history(self, event_type: SessionEventType | None = None) -> list[SessionEvent]:
        """Recent events, oldest first, independent of what has been read."""
        with self._lock:
            events = list(self._history)
        if event_type is None:
            return events
        return [event for event in events if event.type == event_type]

    def __iter__(self) -> Iterator[SessionEvent]:
        """Iterate over events as they arrive; blocks between events."""
        while True:
            yield self.get()


__all__ = ["EventListener", "EventStream"]
