"""
In-memory transport.

LoopbackTransport keeps everything in process: packets the engine sends are
recorded and handed to an optional peer callable, and whatever the peer
returns (plus anything pushed with inject()) is what the engine receives.
drop() simulates a broken link.

AutoAckPeer is a ready-made peer that answers the client's handshakes the way
a well-behaved broker would for a single client: it accepts CONNECT, grants
subscriptions, acknowledges publishes at every QoS step, answers pings, and
echoes publishes back to the client when they match one of its own
subscriptions. It does not route between clients, keep retained messages, or
persist anything.

Example:
    >>> transport = LoopbackTransport(peer=AutoAckPeer())
    >>> client = SessionClient(transport, SessionConfig(client_id="demo"))
    >>> client.connect()
"""
import logging
import queue
import threading
import time
from typing import Callable, Iterable, Optional

from ..core.exceptions import TransportError
from ..core.models import SUBACK_FAILURE, Packet, PacketType, QoS, SessionConfig
from ..core import topic_matcher

logger = logging.getLogger(__name__)

Peer = Callable[[Packet], Optional[Iterable[Packet]]]


class _LinkDrop:
    def __init__(self, reason: str):
        self.reason = reason


class LoopbackTransport:
    def __init__(self, peer: Peer | None = None, open_error: str | None = None):
        self.peer = peer
        self.open_error = open_error
        self.config: SessionConfig | None = None
        self.open_count = 0
        self._open = False
        self._inbound: queue.Queue[Packet | _LinkDrop] = queue.Queue()
        self._sent: list[Packet] = []
        self._sent_condition = threading.Condition()

    # === TransportProtocol ===

    def open(self, config: SessionConfig) -> None:
        if self.open_error:
            raise TransportError(self.open_error, client_id=config.client_id)
        self.config = config
        self._drain_inbound()
        self._open = True
        self.open_count += 1
        logger.debug(f"Loopback link opened for {config.client_id}")

    def send(self, packet: Packet) -> None:
        if not self._open:
            raise TransportError("Link is closed", packet_id=packet.packet_id)
        with self._sent_condition:
            self._sent.append(packet)
            self._sent_condition.notify_all()
        if self.peer is not None:
            for response in self.peer(packet) or ():
                self.inject(response)

    def receive(self, timeout: float | None = None) -> Optional[Packet]:
        if not self._open:
            raise TransportError("Link is closed")
        try:
            item = self._inbound.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(item, _LinkDrop):
            self._open = False
            raise TransportError(item.reason)
        return item

    def close(self) -> None:
        self._open = False

    # === Test and demo helpers ===

    @property
    def is_open(self) -> bool:
        return self._open

    def inject(self, packet: Packet) -> None:
        """Queue an inbound packet as if the peer had sent it."""
        self._inbound.put(packet)

    def drop(self, reason: str = "link dropped") -> None:
        """Make the next receive() fail, simulating a broken link."""
        self._inbound.put(_LinkDrop(reason))

    def sent(self, packet_type: PacketType | None = None) -> list[Packet]:
        with self._sent_condition:
            packets = list(self._sent)
        if packet_type is None:
            return packets
        return [p for p in packets if p.type == packet_type]

    def clear_sent(self) -> None:
        with self._sent_condition:
            self._sent.clear()

    def wait_for_sent(
        self,
        predicate: Callable[[Packet], bool],
        timeout: float = 2.0,
        count: int = 1,
    ) -> list[Packet]:
        """
        Block until at least `count` sent packets satisfy `predicate`.

        Returns:
            The matching packets (possibly fewer than `count` on timeout)
        """
        deadline = time.monotonic() + timeout
        with self._sent_condition:
            while True:
                matching = [p for p in self._sent if predicate(p)]
                remaining = deadline - time.monotonic()
                if len(matching) >= count or remaining <= 0:
                    return matching
                self._sent_condition.wait(remaining)

    def _drain_inbound(self) -> None:
        while True:
            try:
                self._inbound.get_nowait()
            except queue.Empty:
                return


class AutoAckPeer:
    """
    Scriptable peer answering a single client's handshakes.

    Args:
        connect_return_code: CONNACK result (non-zero refuses the connection)
        session_present: CONNACK session-present flag
        respond_connect: Send CONNACK at all
        max_qos: Highest QoS granted to subscriptions
        reject_filters: Filters answered with 0x80
        ack_publishes: Acknowledge the client's QoS 1/2 publishes
        respond_ping: Answer PINGREQ
        echo: Deliver the client's publishes back when they match one of its
            subscriptions
    """

    def __init__(
        self,
        connect_return_code: int = 0,
        session_present: bool = False,
        respond_connect: bool = True,
        max_qos: int = 2,
        reject_filters: Iterable[str] = (),
        ack_publishes: bool = True,
        respond_ping: bool = True,
        echo: bool = True,
    ):
        self.connect_return_code = connect_return_code
        self.session_present = session_present
        self.respond_connect = respond_connect
        self.max_qos = max_qos
        self.reject_filters = set(reject_filters)
        self.ack_publishes = ack_publishes
        self.respond_ping = respond_ping
        self.echo = echo
        self.subscriptions: dict[str, int] = {}
        self.received: list[Packet] = []
        self._next_id = 0
        self._lock = threading.Lock()

    def __call__(self, packet: Packet) -> list[Packet]:
        with self._lock:
            self.received.append(packet)
            handler = getattr(self, f"_on_{packet.type.value}", None)
            return handler(packet) if handler else []

    def _on_connect(self, packet: Packet) -> list[Packet]:
        if not self.respond_connect:
            return []
        return [Packet(
            type=PacketType.CONNACK,
            return_code=self.connect_return_code,
            session_present=self.session_present,
        )]

    def _on_subscribe(self, packet: Packet) -> list[Packet]:
        if packet.topic in self.reject_filters:
            granted = SUBACK_FAILURE
        else:
            granted = min(int(packet.qos), self.max_qos)
            self.subscriptions[packet.topic] = granted
        return [Packet(type=PacketType.SUBACK, packet_id=packet.packet_id, granted_qos=[granted])]

    def _on_unsubscribe(self, packet: Packet) -> list[Packet]:
        self.subscriptions.pop(packet.topic, None)
        return [Packet(type=PacketType.UNSUBACK, packet_id=packet.packet_id)]

    def _on_publish(self, packet: Packet) -> list[Packet]:
        responses = []
        if self.ack_publishes and packet.qos == QoS.AT_LEAST_ONCE:
            responses.append(Packet(type=PacketType.PUBACK, packet_id=packet.packet_id))
        elif self.ack_publishes and packet.qos == QoS.EXACTLY_ONCE:
            responses.append(Packet(type=PacketType.PUBREC, packet_id=packet.packet_id))

        if self.echo:
            granted = [qos for f, qos in self.subscriptions.items() if topic_matcher.matches(f, packet.topic)]
            if granted:
                qos = QoS(min(int(packet.qos), max(granted)))
                responses.append(Packet(
                    type=PacketType.PUBLISH,
                    packet_id=self._allocate() if qos > QoS.AT_MOST_ONCE else None,
                    topic=packet.topic,
                    payload=packet.payload,
                    qos=qos,
                    retain=packet.retain,
                ))
        return responses

    def _on_pubrel(self, packet: Packet) -> list[Packet]:
        if not self.ack_publishes:
            return []
        return [Packet(type=PacketType.PUBCOMP, packet_id=packet.packet_id)]

    def _on_pubrec(self, packet: Packet) -> list[Packet]:
        return [Packet(type=PacketType.PUBREL, packet_id=packet.packet_id)]

    def _on_pingreq(self, packet: Packet) -> list[Packet]:
        return [Packet(type=PacketType.PINGRESP)] if self.respond_ping else []

    def _allocate(self) -> int:
        self._next_id = self._next_id % 65535 + 1
        return self._next_id

    def received_of(self, packet_type: PacketType) -> list[Packet]:
        with self._lock:
            return [p for p in self.received if p.type == packet_type]


__all__ = ["Peer", "LoopbackTransport", "AutoAckPeer"]
