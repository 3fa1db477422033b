"""
Cancellable scheduling primitives used by the session client.

RecurringTask runs a callable at a fixed interval on its own daemon thread
until cancelled. PendingHandshake is the rendezvous between a caller waiting
on CONNACK/SUBACK/UNSUBACK and the reader thread that receives it.
"""
import logging
import threading
import time
from typing import Any, Callable, Self

from ..core.exceptions import HandshakeTimeout, OperationCancelled

logger = logging.getLogger(__name__)

CANCEL_POLL_INTERVAL = 0.05


class RecurringTask:
    def __init__(self, interval: float, function: Callable[[], Any], name: str = "recurring-task"):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.function = function
        self.name = name
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> Self:
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._cancelled.wait(self.interval):
            try:
                self.function()
            except Exception as e:
                logger.error(f"Scheduled task '{self.name}' failed: {e}", exc_info=True)

    def cancel(self, timeout: float | None = 1.0) -> None:
        """Stop the task; joins the thread unless called from it."""
        self._cancelled.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._cancelled.is_set()


class PendingHandshake:
    """
    One outstanding request/acknowledgment exchange.

    The reader thread calls resolve() or fail(); the caller blocks in wait().
    """

    def __init__(self, kind: str, packet_id: int | None = None, topic: str | None = None):
        self.kind = kind
        self.packet_id = packet_id
        self.topic = topic
        self.result: Any = None
        self.error: BaseException | None = None
        self._event = threading.Event()

    def resolve(self, result: Any = None) -> None:
        self.result = result
        self._event.set()

    def fail(self, error: BaseException) -> None:
        self.error = error
        self._event.set()

    @property
    def is_done(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None, cancel: threading.Event | None = None) -> Any:
        """
        Wait for the peer's answer.

        Args:
            timeout: Seconds to wait; None waits indefinitely
            cancel: Optional caller cancellation signal

        Returns:
            The value passed to resolve()

        Raises:
            HandshakeTimeout: If no answer arrived in time
            OperationCancelled: If `cancel` was set first
            Exception: Whatever was passed to fail()
        """
        wait_until_event(self._event, timeout, cancel, what=self.kind)
        if self.error is not None:
            raise self.error
        return self.result


def wait_until_event(
    event: threading.Event,
    timeout: float | None,
    cancel: threading.Event | None = None,
    what: str = "handshake",
) -> None:
    """
    Block until `event` is set, honoring a timeout and a cancellation signal.

    Raises:
        HandshakeTimeout: If the timeout elapsed first
        OperationCancelled: If `cancel` was set first
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while not event.is_set():
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"{what} cancelled by caller")
        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            raise HandshakeTimeout(f"{what} timed out after {timeout}s")
        slice_ = CANCEL_POLL_INTERVAL if cancel is not None else remaining
        if remaining is not None and slice_ is not None:
            slice_ = min(slice_, remaining)
        if event.wait(slice_):
            return


__all__ = ["RecurringTask", "PendingHandshake", "wait_until_event"]
