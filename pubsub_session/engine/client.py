"""
Session client built on threads and a pluggable transport.
No asyncio dependencies - pure blocking calls with timeouts.
"""
import logging
import threading
import time
from typing import Any, Optional, Self

from ..core.base import SessionLogger, parse_qos
from ..core.exceptions import (
    ConnectFailed,
    ConnectionLost,
    DeliveryFailed,
    HandshakeTimeout,
    NotConnected,
    SessionException,
    SessionStateError,
    SubscriptionRejected,
    TransportError,
)
from ..core.message_log import LogDirection, MessageLog
from ..core.models import (
    Message,
    Packet,
    PacketType,
    QoS,
    SessionConfig,
    SessionEvent,
    SessionEventType,
    SessionState,
)
from ..core.payload_handler import PayloadHandler
from ..core import topic_matcher
from ..transport.base import TransportProtocol
from .dispatcher import HANDSHAKE_TYPES, Dispatcher
from .events import EventStream
from .inflight import DeliveryToken, InFlightEntry
from .link import TransportLink
from .message_handler import MessageHandlerProtocol, as_handler
from .session import Session
from .state_machine import SessionStateMachine
from .subscription_registry import Subscription
from .timers import PendingHandshake, RecurringTask

logger = logging.getLogger(__name__)

_MAX_TIMER_TICK = 1.0
_TICKS_PER_INTERVAL = 4
_FAULT_JOIN_TIMEOUT = 0.1


def _tick(interval: float) -> float:
    return min(interval / _TICKS_PER_INTERVAL, _MAX_TIMER_TICK)


class SessionClient:
    """
    Client side of one pub/sub session.

    Owns the session state machine, the reader and writer paths over the
    transport, the inbound dispatcher and the keepalive and retransmission
    timers. Every operation blocks at most for its configured timeout and can
    be abandoned through a `threading.Event` passed as `cancel`.

    Handlers run on the dispatcher's worker threads. A handler may call
    publish(); it must not wait on a QoS 1/2 token from inside the handler of
    the same subscription, since that lane is busy running it.
    """

    def __init__(
        self,
        transport: TransportProtocol,
        config: SessionConfig | None = None,
        logger: logging.LoggerAdapter | None = None,
    ):
        """
        Initialize the session client.

        Args:
            transport: Transport implementing TransportProtocol
            config: Session configuration (defaults to SessionConfig())
            logger: Custom logger adapter (creates a SessionLogger if None)
        """
        if not isinstance(transport, TransportProtocol):
            raise ValueError("transport must implement TransportProtocol")
        self.transport = transport
        self.config = config or SessionConfig()
        self._custom_logger = logger is not None
        self.logger = logger or self._make_logger(self.config)

        self.events = EventStream()
        self.message_log = MessageLog(self.config.message_log_size)
        self.payload_handler = PayloadHandler()

        self._state_machine = SessionStateMachine(self.config.client_id)
        self._state_machine.add_listener(self._on_state_changed)
        self._session: Session | None = None
        self._link: TransportLink | None = None
        self._dispatcher: Dispatcher | None = None
        self._timers: list[RecurringTask] = []
        self._handshakes: dict[tuple[PacketType, int | None], PendingHandshake] = {}
        self._handshakes_lock = threading.Lock()
        self._tokens: dict[int, DeliveryToken] = {}
        self._tokens_lock = threading.Lock()
        self._teardown_lock = threading.Lock()
        self._ping_sent_at: float | None = None
        self._ping_lock = threading.Lock()

    @staticmethod
    def _make_logger(config: SessionConfig) -> SessionLogger:
        return SessionLogger(
            logging.getLogger(__name__),
            extra={"client_id": config.client_id},
            merge_extra=True,
        )

    # === Lifecycle ===

    def connect(self, config: SessionConfig | None = None, cancel: threading.Event | None = None) -> Self:
        """
        Open the session (blocking).

        Args:
            config: Replace the client's configuration before connecting
            cancel: Set to abandon the handshake

        Returns:
            self for chaining

        Raises:
            SessionStateError: If the session is not DISCONNECTED
            ConnectFailed: If the transport could not open, the peer refused
                or did not answer in time, or `cancel` was set
        """
        if config is not None:
            if self.state is not SessionState.DISCONNECTED:
                raise SessionStateError(f"Cannot reconfigure while {self.state}", client_id=self.config.client_id)
            self._configure(config)
        self._state_machine.begin_connect()
        config = self.config

        self.logger.debug(f"Connecting to {config.broker_url or 'transport'}")
        session, resumed = self._prepare_session(config)
        pending = self._expect(PacketType.CONNACK)
        try:
            self.transport.open(config)
            self._start_link(session, config)
            self._send(self._connect_packet(config))
            connack = pending.wait(config.handshake_timeout, cancel)
        except Exception as e:
            raise self._abort_connect(e) from e
        finally:
            self._forget(pending)

        if connack.return_code != 0:
            raise self._abort_connect(ConnectFailed(
                f"Connection refused with return code {connack.return_code}",
                client_id=config.client_id,
                return_code=connack.return_code,
            ))

        self._state_machine.connect_succeeded()
        if not self._link.is_running:
            error = ConnectionLost("Link failed during connect", client_id=config.client_id)
            self._fail_session(error)
            raise error

        self._start_timers(config)
        if resumed:
            if not connack.session_present:
                self.logger.info("Peer did not keep the session; re-asserting local state")
            self._resume(session)

        self.logger.info(
            f"Connected to {config.broker_url or 'transport'}",
            extra={"clean_session": config.clean_session, "resumed": resumed},
        )
        return self

    def disconnect(self, cancel: threading.Event | None = None) -> None:
        """
        Close the session gracefully (blocking).

        DISCONNECT is sent and flushed before the link is torn down. With a
        clean session, subscriptions and in-flight state are discarded and any
        unfinished publish fails with DeliveryFailed.

        Raises:
            NotConnected: If the session is not CONNECTED
            OperationCancelled: If `cancel` was set before the flush finished;
                the session still ends DISCONNECTED
        """
        self._state_machine.begin_disconnect()
        self.logger.debug("Disconnecting")
        try:
            link = self._link
            self._send(Packet(type=PacketType.DISCONNECT))
            link.flush(self.config.handshake_timeout, cancel)
        except (TransportError, HandshakeTimeout) as e:
            self.logger.warning(f"DISCONNECT not flushed: {e.detail}")
        finally:
            self._teardown(graceful=True)
            self._state_machine.disconnect_finished()
        self.logger.info("Disconnected")

    def reset_session(self) -> None:
        """
        Discard a retained session.

        Subscriptions and in-flight state kept for a persistent session are
        dropped; unfinished publishes fail with DeliveryFailed.

        Raises:
            SessionStateError: If the session is not DISCONNECTED
        """
        if self.state is not SessionState.DISCONNECTED:
            raise SessionStateError(f"Cannot reset session while {self.state}", client_id=self.config.client_id)
        if self._session is not None:
            self._discard_session("Session reset")
            self.logger.info("Session reset")

    # === Operations ===

    def subscribe(
        self,
        topic_filter: str,
        qos: int | None = None,
        handler: MessageHandlerProtocol | Any = None,
        cancel: threading.Event | None = None,
    ) -> Subscription:
        """
        Subscribe to a topic filter (blocking until SUBACK).

        Subscribing again to the same filter replaces its handler.

        Args:
            topic_filter: Filter, possibly with `+` and `#` wildcards
            qos: Requested QoS (uses qos_default if None)
            handler: Handler or callable taking a Message (logs if None)
            cancel: Set to abandon the handshake

        Returns:
            The active Subscription with its granted QoS

        Raises:
            InvalidFilter: If the filter breaks wildcard rules
            NotConnected: If the session is not CONNECTED
            SubscriptionRejected: If the peer refused the subscription
            HandshakeTimeout: If no SUBACK arrived within handshake_timeout
            OperationCancelled: If `cancel` was set first
        """
        topic_matcher.validate_filter(topic_filter)
        requested = QoS(parse_qos(self.config.qos_default if qos is None else qos))
        handler = as_handler(handler)

        session = self._active_session("subscribe")
        packet_id = session.inflight.allocate_packet_id(reserve=True)
        pending = self._expect(PacketType.SUBACK, packet_id, topic_filter)
        session.registry.subscribe(topic_filter, requested, handler, token=packet_id)
        try:
            self._send(Packet(type=PacketType.SUBSCRIBE, packet_id=packet_id, topic=topic_filter, qos=requested))
            subscription = pending.wait(self.config.handshake_timeout, cancel)
        except Exception:
            session.registry.cancel_pending(packet_id)
            session.inflight.release_packet_id(packet_id)
            raise
        finally:
            self._forget(pending)

        if subscription is None:
            self.logger.error(f"Subscription to '{topic_filter}' rejected", extra={"topic": topic_filter})
            raise SubscriptionRejected(
                "Peer rejected the subscription",
                client_id=self.config.client_id,
                topic=topic_filter,
                packet_id=packet_id,
            )

        self.logger.info(
            f"Subscribed to '{topic_filter}'",
            extra={"topic": topic_filter, "granted_qos": int(subscription.granted_qos)},
        )
        return subscription

    def unsubscribe(self, topic_filter: str, cancel: threading.Event | None = None) -> bool:
        """
        Remove a subscription (blocking until UNSUBACK).

        The handler stops receiving messages as soon as this is called.

        Returns:
            False if the filter was not subscribed (nothing is sent)

        Raises:
            InvalidFilter: If the filter breaks wildcard rules
            NotConnected: If the session is not CONNECTED
            HandshakeTimeout: If no UNSUBACK arrived within handshake_timeout
            OperationCancelled: If `cancel` was set first
        """
        topic_matcher.validate_filter(topic_filter)
        session = self._active_session("unsubscribe")
        if session.registry.unsubscribe(topic_filter) is None:
            self.logger.debug(f"Not subscribed to '{topic_filter}'", extra={"topic": topic_filter})
            return False

        packet_id = session.inflight.allocate_packet_id(reserve=True)
        pending = self._expect(PacketType.UNSUBACK, packet_id, topic_filter)
        try:
            self._send(Packet(type=PacketType.UNSUBSCRIBE, packet_id=packet_id, topic=topic_filter))
            pending.wait(self.config.handshake_timeout, cancel)
        finally:
            self._forget(pending)
            session.inflight.release_packet_id(packet_id)

        self.logger.info(f"Unsubscribed from '{topic_filter}'", extra={"topic": topic_filter})
        return True

    def publish(
        self,
        topic: str,
        payload: Any,
        qos: int | None = None,
        retain: bool = False,
        wait: bool = False,
        timeout: float | None = None,
    ) -> DeliveryToken:
        """
        Publish a message to a topic.

        Args:
            topic: Concrete topic (no wildcards)
            payload: bytes, str, or a JSON-serializable value
            qos: Quality of Service level (uses qos_default if None)
            retain: Ask the peer to retain the message
            wait: If True, block until the delivery completes or fails.
                Do not wait from inside a handler of a subscription that
                receives this publish.
            timeout: Seconds to wait when `wait` is True; None waits until
                the delivery completes or fails

        Returns:
            DeliveryToken tracking the delivery

        Raises:
            InvalidTopic: If the topic is empty or contains wildcards
            ValueError: If qos is invalid or the payload is not serializable
            NotConnected: If the session is not CONNECTED
            DeliveryFailed: If `wait` is True and the delivery failed
        """
        topic_matcher.validate_topic(topic)
        qos = QoS(parse_qos(self.config.qos_default if qos is None else qos))
        data = self.payload_handler.encode(payload)
        session = self._active_session("publish")
        packet_id = session.inflight.allocate_packet_id() if qos > QoS.AT_MOST_ONCE else None
        packet = Packet(
            type=PacketType.PUBLISH,
            packet_id=packet_id,
            topic=topic,
            payload=data,
            qos=qos,
            retain=retain,
        )
        token = DeliveryToken(topic, int(qos), packet_id)
        if packet_id is not None:
            with self._tokens_lock:
                self._tokens[packet_id] = token
            session.inflight.track_outgoing(packet)

        self.message_log.record(LogDirection.SENT, topic, data, qos=qos, retain=retain)
        try:
            self._send(packet)
        except TransportError as e:
            if packet_id is not None:
                session.inflight.abandon(packet_id)
                with self._tokens_lock:
                    self._tokens.pop(packet_id, None)
            raise NotConnected("Session closed while publishing", client_id=self.config.client_id, topic=topic, cause=e) from e

        self.logger.debug(
            f"Published to '{topic}': {PayloadHandler.preview(data)}",
            extra={"topic": topic, "qos": int(qos), "packet_id": packet_id},
        )
        if packet_id is None:
            token.complete()
        if wait:
            token.wait(timeout)
        return token

    # === Inspection ===

    @property
    def state(self) -> SessionState:
        return self._state_machine.state

    @property
    def is_connected(self) -> bool:
        """Check if the session is currently CONNECTED."""
        return self._state_machine.is_connected

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def subscriptions(self) -> list[Subscription]:
        """Snapshot of the registered subscriptions, pending ones included."""
        if self._session is None:
            return []
        return self._session.registry.snapshot()

    def wait_for_state(self, state: SessionState, timeout: float | None = None) -> bool:
        return self._state_machine.wait_for(state, timeout)

    # === Session setup and teardown ===

    def _configure(self, config: SessionConfig) -> None:
        self.config = config
        self._state_machine.client_id = config.client_id
        if not self._custom_logger:
            self.logger = self._make_logger(config)
        if config.message_log_size != self.message_log.max_entries:
            self.message_log = MessageLog(config.message_log_size)

    def _active_session(self, operation: str) -> Session:
        self._state_machine.require_connected(operation)
        session = self._session
        if session is None:
            raise NotConnected(f"Cannot {operation} without a session", client_id=self.config.client_id)
        return session

    def _prepare_session(self, config: SessionConfig) -> tuple[Session, bool]:
        session = self._session
        if session is not None and session.can_resume(config):
            session.apply(config)
            return session, True
        if session is not None:
            self._discard_session("Starting a new session")
        self._session = Session.from_config(config, state_machine=self._state_machine)
        return self._session, False

    def _connect_packet(self, config: SessionConfig) -> Packet:
        return Packet(
            type=PacketType.CONNECT,
            client_id=config.client_id,
            clean_session=config.clean_session,
            keepalive=config.keepalive,
            username=config.username,
            password=config.password,
        )

    def _start_link(self, session: Session, config: SessionConfig) -> None:
        self._clear_ping()
        self._dispatcher = Dispatcher(
            session.registry,
            session.inflight,
            send=self._send,
            capacity=config.work_queue_capacity,
            worker_count=config.worker_count,
            enqueue_timeout=config.dispatch_timeout,
            on_complete=self._on_delivery_complete,
            on_received=self._on_message_received,
            name=config.client_id,
        ).start()
        self._link = TransportLink(
            self.transport,
            on_packet=self._on_packet,
            on_failure=self._on_link_failure,
            name=config.client_id,
        ).start()

    def _start_timers(self, config: SessionConfig) -> None:
        self._timers.append(
            RecurringTask(_tick(config.retry_interval), self._retransmit, name=f"{config.client_id}-retry").start()
        )
        if config.keepalive > 0:
            interval = _tick(min(config.keepalive, config.keepalive_grace))
            self._timers.append(
                RecurringTask(interval, self._check_keepalive, name=f"{config.client_id}-keepalive").start()
            )

    def _resume(self, session: Session) -> None:
        """Re-assert subscriptions and restart unfinished publishes of a kept session."""
        for subscription in session.registry.active():
            if subscription.token is not None:
                session.inflight.release_packet_id(subscription.token)
            packet_id = session.inflight.allocate_packet_id(reserve=True)
            session.registry.mark_pending(subscription.topic_filter, packet_id)
            self._send(Packet(
                type=PacketType.SUBSCRIBE,
                packet_id=packet_id,
                topic=subscription.topic_filter,
                qos=subscription.requested_qos,
            ))
        resend = session.inflight.resume()
        for packet in resend:
            self._send(packet)
        self.logger.debug(
            "Session resumed",
            extra={"subscriptions": len(session.registry), "resent": len(resend)},
        )

    def _abort_connect(self, error: BaseException) -> ConnectFailed:
        self._teardown(graceful=False)
        self._state_machine.connect_failed()
        if isinstance(error, ConnectFailed):
            failure = error
        else:
            detail = error.detail if isinstance(error, SessionException) else str(error)
            failure = ConnectFailed(f"Connect failed: {detail}", client_id=self.config.client_id, cause=error)
        self.logger.error(failure.detail)
        self._emit(SessionEventType.SESSION_ERROR, error=failure)
        return failure

    def _fail_session(self, error: SessionException) -> None:
        if not self._state_machine.connection_lost():
            return
        self.logger.error(f"Session lost: {error.detail}", exc_info=error.cause)
        self._emit(SessionEventType.SESSION_ERROR, error=error)
        self._teardown(graceful=False, error=error)

    def _teardown(self, graceful: bool, error: SessionException | None = None) -> None:
        join_timeout = self.config.handshake_timeout if graceful else _FAULT_JOIN_TIMEOUT
        with self._teardown_lock:
            timers, self._timers = self._timers, []
            link, self._link = self._link, None
            dispatcher, self._dispatcher = self._dispatcher, None

            for task in timers:
                task.cancel(join_timeout)
            if link is not None:
                link.stop(join_timeout)
            if dispatcher is not None:
                dispatcher.stop(join_timeout)
            try:
                self.transport.close()
            except Exception as e:
                self.logger.warning(f"Transport close failed: {e}")

            self._fail_handshakes(error or NotConnected("Session closed", client_id=self.config.client_id))
            self._clear_ping()

        session = self._session
        if session is None:
            return
        if session.clean_session:
            self._discard_session("Clean session discarded")
        else:
            self._drop_unanswered_subscribes(session)

    def _drop_unanswered_subscribes(self, session: Session) -> None:
        """Release the packet ids of SUBSCRIBEs the link ended before answering."""
        for token in session.registry.pending_tokens():
            session.registry.cancel_pending(token)
            session.inflight.release_packet_id(token)

    def _discard_session(self, reason: str) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        abandoned = session.inflight.clear()
        session.registry.clear()
        for entry in abandoned:
            self._fail_delivery(entry, DeliveryFailed(
                f"{reason} before delivery completed",
                client_id=session.client_id,
                topic=entry.topic,
                packet_id=entry.packet_id,
            ))

    # === Handshake rendezvous ===

    def _expect(self, kind: PacketType, packet_id: int | None = None, topic: str | None = None) -> PendingHandshake:
        pending = PendingHandshake(str(kind), packet_id=packet_id, topic=topic)
        with self._handshakes_lock:
            self._handshakes[(kind, packet_id)] = pending
        return pending

    def _forget(self, pending: PendingHandshake) -> None:
        with self._handshakes_lock:
            for key, value in list(self._handshakes.items()):
                if value is pending:
                    del self._handshakes[key]

    def _take(self, kind: PacketType, packet_id: int | None = None) -> Optional[PendingHandshake]:
        with self._handshakes_lock:
            return self._handshakes.pop((kind, packet_id), None)

    def _fail_handshakes(self, error: BaseException) -> None:
        with self._handshakes_lock:
            pending, self._handshakes = list(self._handshakes.values()), {}
        for handshake in pending:
            handshake.fail(error)

    # === Reader path ===

    def _send(self, packet: Packet) -> None:
        link = self._link
        if link is None:
            raise TransportError("Link is not open", client_id=self.config.client_id, packet_id=packet.packet_id)
        link.send(packet)

    def _on_packet(self, packet: Packet) -> None:
        if packet.type in HANDSHAKE_TYPES:
            dispatcher = self._dispatcher
            if dispatcher is not None:
                dispatcher.handle(packet)
            return

        if packet.type is PacketType.CONNACK:
            pending = self._take(PacketType.CONNACK)
            if pending is None:
                self.logger.warning("Unexpected CONNACK")
            else:
                pending.resolve(packet)
        elif packet.type is PacketType.SUBACK:
            self._on_suback(packet)
        elif packet.type is PacketType.UNSUBACK:
            pending = self._take(PacketType.UNSUBACK, packet.packet_id)
            if pending is None:
                self.logger.warning(f"UNSUBACK for unknown packet {packet.packet_id}")
            else:
                pending.resolve(packet)
        elif packet.type is PacketType.PINGRESP:
            self._clear_ping()
        elif packet.type is PacketType.DISCONNECT:
            raise ConnectionLost("Peer closed the session", client_id=self.config.client_id)
        else:
            self.logger.warning(f"Ignoring unexpected {packet.type} packet")

    def _on_suback(self, packet: Packet) -> None:
        session = self._session
        if session is None:
            return
        granted = packet.granted_qos[0] if packet.granted_qos else None
        subscription = session.registry.confirm_grant(packet.packet_id, granted)
        session.inflight.release_packet_id(packet.packet_id)
        pending = self._take(PacketType.SUBACK, packet.packet_id)
        if pending is not None:
            pending.resolve(subscription)
        elif subscription is None:
            self.logger.warning(f"Re-asserted subscription rejected (packet {packet.packet_id})")

    def _on_link_failure(self, error: BaseException) -> None:
        if isinstance(error, SessionException) and error.is_fatal:
            fatal = error
        else:
            fatal = ConnectionLost(f"Transport failed: {error}", client_id=self.config.client_id, cause=error)

        if self.state is SessionState.CONNECTING:
            pending = self._take(PacketType.CONNACK)
            if pending is not None:
                pending.fail(fatal)
            return
        self._fail_session(fatal)

    def _on_message_received(self, message: Message) -> None:
        self.message_log.record(
            LogDirection.RECEIVED,
            message.topic,
            message.payload,
            qos=message.qos,
            retain=message.retain,
        )

    # === Delivery outcomes ===

    def _on_delivery_complete(self, entry: InFlightEntry) -> None:
        with self._tokens_lock:
            token = self._tokens.pop(entry.packet_id, None)
        if token is not None:
            token.complete()
        self._emit(SessionEventType.DELIVERY_COMPLETE, packet_id=entry.packet_id, topic=entry.topic)

    def _fail_delivery(self, entry: InFlightEntry, error: DeliveryFailed) -> None:
        with self._tokens_lock:
            token = self._tokens.pop(entry.packet_id, None)
        if token is not None:
            token.fail(error)
        self.logger.warning(error.detail, extra={"topic": entry.topic, "packet_id": entry.packet_id})
        self._emit(SessionEventType.DELIVERY_FAILED, packet_id=entry.packet_id, topic=entry.topic, error=error)

    # === Timers ===

    def _retransmit(self) -> None:
        session = self._session
        if session is None or not self.is_connected:
            return
        result = session.inflight.collect_due()
        for packet in result.resend:
            self.logger.warning(
                f"Retransmitting {packet.type} {packet.packet_id}",
                extra={"topic": packet.topic},
            )
            self._send(packet)
        for entry in result.failed:
            self._fail_delivery(entry, DeliveryFailed(
                f"No acknowledgment after {entry.retry_count} retries",
                client_id=session.client_id,
                topic=entry.topic,
                packet_id=entry.packet_id,
            ))

    def _check_keepalive(self) -> None:
        link = self._link
        if link is None or not self.is_connected:
            return
        now = time.monotonic()
        send_ping = False
        with self._ping_lock:
            ping_sent_at = self._ping_sent_at
            if ping_sent_at is None and now - link.last_sent >= self.config.keepalive:
                self._ping_sent_at = now
                send_ping = True

        if ping_sent_at is not None:
            if now - ping_sent_at >= self.config.keepalive_grace:
                self._fail_session(ConnectionLost(
                    f"No PINGRESP within {self.config.keepalive_grace}s",
                    client_id=self.config.client_id,
                ))
        elif send_ping:
            self._send(Packet(type=PacketType.PINGREQ))

    def _clear_ping(self) -> None:
        with self._ping_lock:
            self._ping_sent_at = None

    # === Events ===

    def _emit(self, event_type: SessionEventType, **fields: Any) -> None:
        self.events.emit(SessionEvent(type=event_type, client_id=self.config.client_id, **fields))

    def _on_state_changed(self, previous: SessionState, current: SessionState) -> None:
        self._emit(SessionEventType.STATE_CHANGED, state=current, previous_state=previous)

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        if self.is_connected:
            self.disconnect()


__all__ = ["SessionClient"]
