"""
Inbound Dispatcher.

Consumes the inbound PUBLISH and QoS-handshake packets of a session in the
order the reader receives them, keeps the in-flight table up to date, answers
each handshake step, and hands deliveries to handlers through a bounded work
queue.

Delivery path:

    reader thread                              worker threads
    -------------                              --------------
    PUBLISH -> QoS bookkeeping
            -> registry.dispatch(message)
            -> submit(): one work item per
               matching subscription  ------>  handler.deliver(message)
            -> PUBACK / PUBREC

Handlers never run on the reader thread, so a slow handler cannot delay
acknowledgments or keepalive traffic.

Bounded queue and backpressure:
    At most `capacity` deliveries may be queued or running at once. When the
    limit is reached, submit() blocks the reader (and so the transport) until
    a handler finishes. If that takes longer than `enqueue_timeout`, submit()
    raises DispatchOverload and the session is torn down. Deliveries are never
    dropped.

Ordering:
    Work items are spread over `worker_count` lanes, one worker per lane, and
    every delivery for a given topic filter always lands on the same lane.
    A subscription therefore sees its messages in the order the transport
    received them. No ordering holds across subscriptions.

Example:
    >>> dispatcher = Dispatcher(registry, table, send=link.send, capacity=100, worker_count=4)
    >>> dispatcher.start()
    >>> dispatcher.handle(publish_packet)   # called by the reader thread
"""
import logging
import queue
import threading
import time
import zlib
from typing import Callable, Optional, Self

from ..core.exceptions import DispatchOverload
from ..core.models import Message, Packet, PacketType, QoS
from .inflight import InFlightEntry, InFlightTable
from .subscription_registry import SubscriptionMatch, SubscriptionRegistry

logger = logging.getLogger(__name__)

_STOP = object()
_PERMIT_POLL_INTERVAL = 0.1

HANDSHAKE_TYPES = frozenset({
    PacketType.PUBLISH,
    PacketType.PUBACK,
    PacketType.PUBREC,
    PacketType.PUBREL,
    PacketType.PUBCOMP,
})


class Dispatcher:
    """
    Routes inbound publish traffic to subscription handlers.

    Attributes:
        registry: Subscription registry consulted for every delivery
        inflight: In-flight table of the session
        send: Callable queueing an outbound packet on the writer path
        capacity: Deliveries that may be queued or running at once
        worker_count: Worker threads (and lanes)
        enqueue_timeout: Seconds submit() may block before DispatchOverload;
            None blocks indefinitely
        on_complete: Called with each outgoing entry whose handshake finished
        on_received: Called once with each newly received message
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        inflight: InFlightTable,
        send: Callable[[Packet], None],
        capacity: int = 100,
        worker_count: int = 4,
        enqueue_timeout: float | None = 30.0,
        on_complete: Optional[Callable[[InFlightEntry], None]] = None,
        on_received: Optional[Callable[[Message], None]] = None,
        name: str = "session",
    ):
        if capacity < 1 or worker_count < 1:
            raise ValueError("capacity and worker_count must be at least 1")
        self.registry = registry
        self.inflight = inflight
        self.send = send
        self.capacity = capacity
        self.worker_count = worker_count
        self.enqueue_timeout = enqueue_timeout
        self.on_complete = on_complete
        self.on_received = on_received
        self.name = name

        self._permits = threading.BoundedSemaphore(capacity)
        self._lanes: list[queue.Queue] = [queue.Queue() for _ in range(worker_count)]
        self._workers: list[threading.Thread] = []
        self._outstanding = 0
        self._outstanding_lock = threading.Lock()
        self._stopped = threading.Event()

    # === Lifecycle ===

    def start(self) -> Self:
        for index, lane in enumerate(self._lanes):
            worker = threading.Thread(
                target=self._work,
                args=(lane,),
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)
        return self

    def stop(self, timeout: float | None = 1.0) -> bool:
        """
        Stop the workers after they finish the deliveries already queued.

        Args:
            timeout: Seconds to wait for each worker; None waits indefinitely

        Returns:
            True if every worker exited within the timeout
        """
        self._stopped.set()
        for lane in self._lanes:
            lane.put(_STOP)
        current = threading.current_thread()
        for worker in self._workers:
            if worker is not current:
                worker.join(timeout)
        return not any(worker.is_alive() for worker in self._workers)

    @property
    def outstanding(self) -> int:
        """Deliveries currently queued or running."""
        with self._outstanding_lock:
            return self._outstanding

    # === Inbound packets ===

    def handle(self, packet: Packet) -> bool:
        """
        Process one inbound publish or handshake packet.

        Args:
            packet: PUBLISH, PUBACK, PUBREC, PUBREL or PUBCOMP

        Returns:
            False if the packet type is not handled here

        Raises:
            DispatchOverload: If a delivery could not be queued in time
        """
        if packet.type is PacketType.PUBLISH:
            self._on_publish(packet)
        elif packet.type is PacketType.PUBACK:
            self._finish(self.inflight.acknowledge(packet.packet_id), packet)
        elif packet.type is PacketType.PUBREC:
            entry = self.inflight.received(packet.packet_id)
            if entry is None:
                logger.warning(f"PUBREC for unknown packet {packet.packet_id}")
            else:
                self.send(Packet(type=PacketType.PUBREL, packet_id=packet.packet_id))
        elif packet.type is PacketType.PUBREL:
            if self.inflight.release_incoming(packet.packet_id) is None:
                logger.debug(f"PUBREL for unknown packet {packet.packet_id}")
            self.send(Packet(type=PacketType.PUBCOMP, packet_id=packet.packet_id))
        elif packet.type is PacketType.PUBCOMP:
            self._finish(self.inflight.complete(packet.packet_id), packet)
        else:
            return False
        return True

    def _on_publish(self, packet: Packet) -> None:
        if packet.qos > QoS.AT_MOST_ONCE and packet.packet_id is None:
            logger.warning(f"Dropping QoS {int(packet.qos)} PUBLISH without packet identifier", extra={"topic": packet.topic})
            return

        message = Message.from_packet(packet)

        if packet.qos == QoS.EXACTLY_ONCE:
            if self.inflight.register_incoming(packet):
                try:
                    self._accept(message)
                except Exception:
                    # Not acknowledged yet; a redelivery must be accepted again.
                    self.inflight.release_incoming(packet.packet_id)
                    raise
            else:
                logger.debug(
                    f"Duplicate QoS 2 delivery {packet.packet_id}; re-acknowledging",
                    extra={"topic": packet.topic},
                )
            self.send(Packet(type=PacketType.PUBREC, packet_id=packet.packet_id))
            return

        self._accept(message)
        if packet.qos == QoS.AT_LEAST_ONCE:
            self.send(Packet(type=PacketType.PUBACK, packet_id=packet.packet_id))

    def _accept(self, message: Message) -> None:
        if self.on_received is not None:
            self.on_received(message)
        self.submit(self.registry.dispatch(message), message)

    def _finish(self, entry: InFlightEntry | None, packet: Packet) -> None:
        if entry is None:
            logger.warning(f"{packet.type} for unknown packet {packet.packet_id}")
            return
        logger.debug(f"Delivery {entry.packet_id} complete", extra={"topic": entry.topic})
        if self.on_complete is not None:
            self.on_complete(entry)

    # === Work queue ===

    def lane_for(self, topic_filter: str) -> int:
        return zlib.crc32(topic_filter.encode("utf-8")) % self.worker_count

    def submit(self, matches: list[SubscriptionMatch], message: Message) -> None:
        """
        Queue one delivery per matching subscription.

        Blocks while the work queue is at capacity.

        Raises:
            DispatchOverload: If capacity did not free up within enqueue_timeout
        """
        if not matches:
            logger.debug("No subscription matched", extra={"topic": message.topic})
            return

        for match in matches:
            self._acquire_permit(message)
            delivery = message if match.qos == message.qos else message.model_copy(update={"qos": match.qos})
            with self._outstanding_lock:
                self._outstanding += 1
            self._lanes[self.lane_for(match.topic_filter)].put((match, delivery))

    def _acquire_permit(self, message: Message) -> None:
        deadline = None if self.enqueue_timeout is None else time.monotonic() + self.enqueue_timeout
        while True:
            if self._stopped.is_set():
                raise DispatchOverload("Dispatcher is stopped", topic=message.topic)
            wait = _PERMIT_POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DispatchOverload(
                        f"Work queue full ({self.capacity}) for {self.enqueue_timeout}s",
                        topic=message.topic,
                    )
                wait = min(wait, remaining)
            if self._permits.acquire(timeout=wait):
                return

    def _work(self, lane: queue.Queue) -> None:
        while True:
            item = lane.get()
            if item is _STOP:
                return
            match, message = item
            try:
                match.handler.deliver(message)
            except Exception as e:
                logger.error(
                    f"Handler error for '{match.topic_filter}': {e}",
                    exc_info=True,
                    extra={"topic": message.topic},
                )
            finally:
                with self._outstanding_lock:
                    self._outstanding -= 1
                self._permits.release()


__all__ = ["HANDSHAKE_TYPES", "Dispatcher"]
