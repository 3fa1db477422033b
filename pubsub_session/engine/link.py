"""
Reader and writer paths over a transport.

A TransportLink owns two daemon threads per connection:

    reader  pulls decoded packets from the transport in order and hands each
            one to `on_packet`; nothing else reads from the transport
    writer  drains an unbounded outbound queue and writes packets in the order
            they were queued; nothing else writes to the transport

Neither thread waits on the other. Any exception escaping the transport or
`on_packet` is reported once through `on_failure` and ends the link.
"""
import logging
import queue
import threading
import time
from typing import Callable, Self

from ..core.exceptions import TransportError
from ..core.models import Packet
from ..transport.base import TransportProtocol
from .timers import wait_until_event

logger = logging.getLogger(__name__)

_STOP = object()


class TransportLink:
    def __init__(
        self,
        transport: TransportProtocol,
        on_packet: Callable[[Packet], None],
        on_failure: Callable[[BaseException], None],
        name: str = "session",
        poll_interval: float = 0.1,
    ):
        self.transport = transport
        self.on_packet = on_packet
        self.on_failure = on_failure
        self.name = name
        self.poll_interval = poll_interval
        self.last_sent = time.monotonic()
        self._outbound: queue.Queue = queue.Queue()
        self._stopping = threading.Event()
        self._failed = threading.Event()
        self._reader: threading.Thread | None = None
        self._writer: threading.Thread | None = None

    def start(self) -> Self:
        self._reader = threading.Thread(target=self._read_loop, name=f"{self.name}-reader", daemon=True)
        self._writer = threading.Thread(target=self._write_loop, name=f"{self.name}-writer", daemon=True)
        self._writer.start()
        self._reader.start()
        return self

    def send(self, packet: Packet) -> None:
        """
        Queue a packet for the writer.

        Raises:
            TransportError: If the link has been stopped
        """
        if self._stopping.is_set():
            raise TransportError("Link is stopped", packet_id=packet.packet_id)
        self._outbound.put(packet)

    def flush(self, timeout: float | None = None, cancel: threading.Event | None = None) -> None:
        """
        Wait until everything queued so far has been written.

        Raises:
            TransportError: If the writer is no longer running
            HandshakeTimeout: If the queue did not drain in time
            OperationCancelled: If `cancel` was set first
        """
        if self._writer is None or not self._writer.is_alive():
            raise TransportError("Writer is not running")
        marker = threading.Event()
        self._outbound.put(marker)
        wait_until_event(marker, timeout, cancel, what="flush")

    def stop(self, timeout: float | None = 1.0) -> None:
        """Stop both threads; joins them unless called from one of them."""
        self._stopping.set()
        self._outbound.put(_STOP)
        current = threading.current_thread()
        for thread in (self._writer, self._reader):
            if thread is not None and thread is not current:
                thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return not self._stopping.is_set() and not self._failed.is_set()

    def _fail(self, error: BaseException) -> None:
        if self._stopping.is_set() or self._failed.is_set():
            return
        self._failed.set()
        try:
            self.on_failure(error)
        except Exception as e:
            logger.error(f"Link failure callback error: {e}", exc_info=True)

    def _read_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                packet = self.transport.receive(self.poll_interval)
            except Exception as e:
                self._fail(e)
                return
            if packet is None:
                continue
            logger.debug(f"<- {packet.type}", extra={"packet_id": packet.packet_id, "topic": packet.topic})
            try:
                self.on_packet(packet)
            except Exception as e:
                self._fail(e)
                return

    def _write_loop(self) -> None:
        while True:
            item = self._outbound.get()
            if item is _STOP:
                return
            if isinstance(item, threading.Event):
                item.set()
                continue
            try:
                self.transport.send(item)
                self.last_sent = time.monotonic()
                logger.debug(f"-> {item.type}", extra={"packet_id": item.packet_id, "topic": item.topic})
            except Exception as e:
                self._fail(e)
                return


__all__ = ["TransportLink"]
