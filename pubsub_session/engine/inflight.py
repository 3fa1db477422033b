"""
In-Flight Table and QoS Handshake State Machines.

Tracks every QoS 1/QoS 2 exchange that has not finished, keyed by packet
identifier and direction, and allocates packet identifiers for the session.

Outgoing publish:

    QoS 1:  SENT --PUBACK--> done
    QoS 2:  SENT --PUBREC--> RECEIVED (send PUBREL) --PUBCOMP--> done

    Each phase has a deadline. When it expires the step is retransmitted
    (PUBLISH with the duplicate flag in SENT, PUBREL in RECEIVED), the retry
    count is incremented and the deadline is reset. Once `max_retries`
    retransmissions have expired too, the entry is removed and reported as
    failed exactly once.

Incoming QoS 2 delivery:

    first PUBLISH --> ACKED (deliver once, send PUBREC)
    duplicate PUBLISH while ACKED --> resend PUBREC, no delivery
    PUBREL --> send PUBCOMP, done

    Retransmitting an incoming exchange is the peer's job, so incoming entries
    have no deadline.

Packet identifiers come from a per-session counter that skips 0, wraps from
65535 back to 1 and skips identifiers still held by an outgoing entry or
reserved by a SUBSCRIBE/UNSUBSCRIBE handshake.

Example:
    >>> table = InFlightTable(max_retries=3, retry_interval=5.0)
    >>> packet_id = table.allocate_packet_id()
    >>> table.track_outgoing(publish_packet.model_copy(update={"packet_id": packet_id}))
    >>> table.acknowledge(packet_id)
"""
import logging
import threading
import time
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ..core.exceptions import DeliveryFailed, PacketIdExhausted
from ..core.models import MAX_PACKET_ID, Direction, HandshakePhase, Packet, PacketType, QoS

logger = logging.getLogger(__name__)


class InFlightEntry(BaseModel):
    """
    One QoS handshake awaiting its next step.

    Attributes:
        packet_id: Packet identifier
        direction: OUTGOING for our publishes, INCOMING for peer deliveries
        qos: QoS of the exchange
        phase: Current handshake phase
        packet: Snapshot of the PUBLISH, used for retransmission
        retry_count: Retransmissions made in the current phase
        deadline: time.monotonic() value at which the current phase expires;
            None for incoming entries
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    packet_id: int
    direction: Direction
    qos: QoS
    phase: HandshakePhase
    packet: Packet
    retry_count: int = 0
    deadline: Optional[float] = None

    @property
    def topic(self) -> Optional[str]:
        return self.packet.topic


class DeliveryToken:
    """
    Completion handle returned for each publish.

    QoS 0 tokens complete as soon as the publish is handed to the writer.
    QoS 1/2 tokens complete when the handshake finishes, or fail with
    DeliveryFailed when retries are exhausted or the session discards the
    exchange.
    """

    def __init__(self, topic: str, qos: int, packet_id: int | None = None):
        self.topic = topic
        self.qos = qos
        self.packet_id = packet_id
        self.error: DeliveryFailed | None = None
        self._done = threading.Event()

    def complete(self) -> None:
        self._done.set()

    def fail(self, error: DeliveryFailed) -> None:
        self.error = error
        self._done.set()

    @property
    def is_complete(self) -> bool:
        return self._done.is_set() and self.error is None

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the publish completes.

        Args:
            timeout: Seconds to wait; None waits indefinitely

        Returns:
            True if the publish completed, False if the wait timed out

        Raises:
            DeliveryFailed: If the publish failed
        """
        if not self._done.wait(timeout):
            return False
        if self.error is not None:
            raise self.error
        return True

    def __repr__(self):
        state = "failed" if self.error else "complete" if self._done.is_set() else "pending"
        return f"DeliveryToken(topic={self.topic!r}, qos={self.qos}, packet_id={self.packet_id}, state={state})"


class Retransmission(BaseModel):
    """Outcome of a deadline sweep."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    resend: list[Packet] = []
    failed: list[InFlightEntry] = []


class InFlightTable:
    def __init__(self, max_retries: int = 3, retry_interval: float = 5.0):
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self._outgoing: dict[int, InFlightEntry] = {}
        self._incoming: dict[int, InFlightEntry] = {}
        self._reserved: set[int] = set()
        self._next_id = 1
        self._lock = threading.Lock()

    # === Packet identifiers ===

    def allocate_packet_id(self, reserve: bool = False) -> int:
        """
        Allocate the next free packet identifier.

        Args:
            reserve: Hold the identifier until release_packet_id(); used for
                SUBSCRIBE/UNSUBSCRIBE handshakes, which have no table entry

        Returns:
            Identifier in 1..65535 not held by any outstanding exchange

        Raises:
            PacketIdExhausted: If every identifier is in use
        """
        with self._lock:
            for _ in range(MAX_PACKET_ID):
                candidate = self._next_id
                self._next_id = 1 if candidate >= MAX_PACKET_ID else candidate + 1
                if candidate in self._outgoing or candidate in self._reserved:
                    continue
                if reserve:
                    self._reserved.add(candidate)
                return candidate
        raise PacketIdExhausted("All packet identifiers are in use")

    def release_packet_id(self, packet_id: int) -> None:
        with self._lock:
            self._reserved.discard(packet_id)

    def is_reserved(self, packet_id: int) -> bool:
        with self._lock:
            return packet_id in self._reserved

    # === Outgoing ===

    def track_outgoing(self, packet: Packet, now: float | None = None) -> InFlightEntry:
        """
        Register an outgoing QoS 1/2 publish in phase SENT.

        Args:
            packet: PUBLISH carrying an identifier from allocate_packet_id()
            now: Current monotonic time (defaults to time.monotonic())

        Returns:
            The new entry

        Raises:
            ValueError: If the packet is QoS 0, lacks an identifier, or the
                identifier is already outstanding
        """
        if packet.qos == QoS.AT_MOST_ONCE or packet.packet_id is None:
            raise ValueError("Only QoS 1/2 publishes with a packet identifier are tracked")
        now = time.monotonic() if now is None else now
        entry = InFlightEntry(
            packet_id=packet.packet_id,
            direction=Direction.OUTGOING,
            qos=packet.qos,
            phase=HandshakePhase.SENT,
            packet=packet,
            deadline=now + self.retry_interval,
        )
        with self._lock:
            if packet.packet_id in self._outgoing:
                raise ValueError(f"Packet identifier {packet.packet_id} is already in flight")
            self._outgoing[packet.packet_id] = entry
        return entry

    def acknowledge(self, packet_id: int) -> Optional[InFlightEntry]:
        """
        Handle PUBACK: completes a QoS 1 entry in phase SENT.

        Returns:
            The removed entry, or None if nothing matched
        """
        with self._lock:
            entry = self._outgoing.get(packet_id)
            if entry is None or entry.qos != QoS.AT_LEAST_ONCE:
                return None
            del self._outgoing[packet_id]
        entry.phase = HandshakePhase.DONE
        return entry

    def received(self, packet_id: int, now: float | None = None) -> Optional[InFlightEntry]:
        """
        Handle PUBREC: moves a QoS 2 entry from SENT to RECEIVED.

        A repeated PUBREC while already RECEIVED returns the entry again so the
        caller re-sends PUBREL; the retry count and deadline are left alone.

        Returns:
            The entry (caller must send PUBREL), or None if nothing matched
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            entry = self._outgoing.get(packet_id)
            if entry is None or entry.qos != QoS.EXACTLY_ONCE:
                return None
            if entry.phase == HandshakePhase.SENT:
                entry.phase = HandshakePhase.RECEIVED
                entry.retry_count = 0
                entry.deadline = now + self.retry_interval
            return entry

    def complete(self, packet_id: int) -> Optional[InFlightEntry]:
        """
        Handle PUBCOMP: completes a QoS 2 entry in phase RECEIVED.

        Returns:
            The removed entry, or None if nothing matched
        """
        with self._lock:
            entry = self._outgoing.get(packet_id)
            if entry is None or entry.phase != HandshakePhase.RECEIVED:
                return None
            del self._outgoing[packet_id]
        entry.phase = HandshakePhase.DONE
        return entry

    def collect_due(self, now: float | None = None) -> Retransmission:
        """
        Sweep outgoing deadlines.

        Entries whose deadline has passed are retransmitted while their retry
        count is below max_retries; otherwise they are removed and returned as
        failed.

        Args:
            now: Current monotonic time (defaults to time.monotonic())

        Returns:
            Packets to resend and entries that failed
        """
        now = time.monotonic() if now is None else now
        result = Retransmission()
        with self._lock:
            for packet_id, entry in list(self._outgoing.items()):
                if entry.deadline is None or entry.deadline > now:
                    continue
                if entry.retry_count >= self.max_retries:
                    del self._outgoing[packet_id]
                    result.failed.append(entry)
                    continue
                entry.retry_count += 1
                entry.deadline = now + self.retry_interval
                result.resend.append(self.retransmission_for(entry))
        return result

    def abandon(self, packet_id: int) -> Optional[InFlightEntry]:
        """Remove an outgoing entry whose PUBLISH never reached the writer."""
        with self._lock:
            return self._outgoing.pop(packet_id, None)

    @staticmethod
    def retransmission_for(entry: InFlightEntry) -> Packet:
        """Packet that repeats the current step of an outgoing entry."""
        if entry.phase == HandshakePhase.RECEIVED:
            return Packet(type=PacketType.PUBREL, packet_id=entry.packet_id)
        return entry.packet.model_copy(update={"dup": True})

    def resume(self, now: float | None = None) -> list[Packet]:
        """
        Restart every outgoing exchange after a reconnect.

        Deadlines are reset and the current step of each entry is returned for
        retransmission; retry counts are kept.
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            entries = sorted(self._outgoing.values(), key=lambda e: e.deadline or 0)
            for entry in entries:
                entry.deadline = now + self.retry_interval
            return [self.retransmission_for(entry) for entry in entries]

    # === Incoming ===

    def register_incoming(self, packet: Packet) -> bool:
        """
        Record an inbound QoS 2 PUBLISH.

        Returns:
            True on first receipt (deliver, then send PUBREC); False for a
            duplicate of an exchange already ACKED (only resend PUBREC)
        """
        with self._lock:
            if packet.packet_id in self._incoming:
                return False
            self._incoming[packet.packet_id] = InFlightEntry(
                packet_id=packet.packet_id,
                direction=Direction.INCOMING,
                qos=packet.qos,
                phase=HandshakePhase.ACKED,
                packet=packet,
            )
            return True

    def release_incoming(self, packet_id: int) -> Optional[InFlightEntry]:
        """
        Handle PUBREL for an inbound exchange.

        Returns:
            The removed entry, or None if the identifier was unknown
        """
        with self._lock:
            entry = self._incoming.pop(packet_id, None)
        if entry is not None:
            entry.phase = HandshakePhase.DONE
        return entry

    # === Inspection ===

    def get(self, packet_id: int, direction: Direction = Direction.OUTGOING) -> Optional[InFlightEntry]:
        with self._lock:
            table = self._outgoing if direction is Direction.OUTGOING else self._incoming
            entry = table.get(packet_id)
            return entry.model_copy() if entry else None

    def outgoing(self) -> list[InFlightEntry]:
        with self._lock:
            return [entry.model_copy() for entry in self._outgoing.values()]

    def incoming(self) -> list[InFlightEntry]:
        with self._lock:
            return [entry.model_copy() for entry in self._incoming.values()]

    def clear(self) -> list[InFlightEntry]:
        """
        Drop every entry and reservation.

        Returns:
            The outgoing entries that were abandoned
        """
        with self._lock:
            abandoned = list(self._outgoing.values())
            self._outgoing.clear()
            self._incoming.clear()
            self._reserved.clear()
        return abandoned

    def __contains__(self, packet_id: int) -> bool:
        with self._lock:
            return packet_id in self._outgoing

    def __len__(self) -> int:
        with self._lock:
            return len(self._outgoing) + len(self._incoming)


__all__ = ["InFlightEntry", "DeliveryToken", "Retransmission", "InFlightTable"]
