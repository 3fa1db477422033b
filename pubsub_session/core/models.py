"""
Data Models for the Pub/Sub Session Engine.

This module defines the data structures shared by every layer of the session
engine. All models use Pydantic for validation and serialization.

Key Models:
    - SessionConfig: Connection and engine tuning options
    - QoS: Delivery guarantee levels (0, 1, 2)
    - SessionState: Lifecycle states of a session
    - PacketType: Kinds of decoded protocol packets exchanged with the transport
    - Packet: A decoded protocol packet (inbound event or outbound command)
    - Message: An immutable inbound unit of data handed to handlers
    - SessionEvent: Observability record published on the client's event stream

Protocol Design:
    The engine never touches bytes on the wire. It consumes decoded Packet
    objects from a transport and hands decoded Packet objects back to it:
    - CONNECT/CONNACK open a session
    - SUBSCRIBE/SUBACK and UNSUBSCRIBE/UNSUBACK manage interest
    - PUBLISH with PUBACK (QoS 1) or PUBREC/PUBREL/PUBCOMP (QoS 2) move data
    - PINGREQ/PINGRESP keep the link alive
    - DISCONNECT closes it

Example:
    >>> from pubsub_session.core.models import Packet, PacketType, QoS
    >>> packet = Packet(
    ...     type=PacketType.PUBLISH,
    ...     packet_id=7,
    ...     topic="sensor/room1/temp",
    ...     payload=b"21.5",
    ...     qos=QoS.AT_LEAST_ONCE,
    ... )
"""
import os
import time
from enum import Enum, IntEnum, StrEnum
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .base import generate_unique_id


SUBACK_FAILURE = 0x80
"""Granted-QoS code a peer returns when it rejects a subscription."""

MAX_PACKET_ID = 65535


class QoS(IntEnum):
    """
    Quality of Service levels.

    - AT_MOST_ONCE (0): fire and forget, no acknowledgment
    - AT_LEAST_ONCE (1): acknowledged with PUBACK, may be duplicated
    - EXACTLY_ONCE (2): four-step PUBLISH/PUBREC/PUBREL/PUBCOMP exchange
    """
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class SessionState(StrEnum):
    """
    Lifecycle states of a session.

    DISCONNECTED is both the initial and the terminal state. CONNECTING and
    DISCONNECTING are transient states entered only by caller actions.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"

    def __str__(self):
        return self.name


class PacketType(StrEnum):
    """Decoded protocol packet kinds understood by the engine."""
    CONNECT = "connect"
    CONNACK = "connack"
    PUBLISH = "publish"
    PUBACK = "puback"
    PUBREC = "pubrec"
    PUBREL = "pubrel"
    PUBCOMP = "pubcomp"
    SUBSCRIBE = "subscribe"
    SUBACK = "suback"
    UNSUBSCRIBE = "unsubscribe"
    UNSUBACK = "unsuback"
    PINGREQ = "pingreq"
    PINGRESP = "pingresp"
    DISCONNECT = "disconnect"

    def __str__(self):
        return self.name


class Direction(Enum):
    """Which side of the session started an in-flight handshake."""
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class HandshakePhase(StrEnum):
    """
    Phase of a QoS handshake tracked in the in-flight table.

    Outgoing QoS 1:  SENT -> DONE
    Outgoing QoS 2:  SENT -> RECEIVED -> DONE
    Incoming QoS 2:  ACKED -> DONE
    """
    SENT = "sent"
    RECEIVED = "received"
    ACKED = "acked"
    DONE = "done"


class ErrorCategory(Enum):
    """
    Classification of engine errors.

    - CALLER_MISUSE: returned synchronously, never retried by the engine
    - TRANSIENT: retried up to the configured limit, scoped to one message
    - SESSION_FATAL: ends the session in DISCONNECTED, surfaced once as an event
    """
    CALLER_MISUSE = "caller_misuse"
    TRANSIENT = "transient"
    SESSION_FATAL = "session_fatal"


class SessionEventType(StrEnum):
    """Kinds of records published on a client's event stream."""
    STATE_CHANGED = "state_changed"
    DELIVERY_COMPLETE = "delivery_complete"
    DELIVERY_FAILED = "delivery_failed"
    SESSION_ERROR = "session_error"


class SessionConfig(BaseModel):
    """
    Session configuration.

    Encapsulates everything a client needs to open and run a session: identity,
    session persistence, liveness and retry policy, and dispatcher sizing.
    Timing values are in seconds.

    Attributes:
        client_id: Client identifier (generated when not supplied)
        clean_session: Discard subscriptions and in-flight state at teardown
        keepalive: Idle interval before a liveness probe is sent (0 disables)
        keepalive_grace: Time allowed for a probe response (defaults to keepalive)
        max_retries: Retransmissions attempted before a delivery is failed
        retry_interval: Deadline for each QoS handshake step
        work_queue_capacity: Deliveries that may be queued or running at once
        worker_count: Handler worker threads
        handshake_timeout: Time allowed for CONNACK, SUBACK and UNSUBACK
        dispatch_timeout: How long a full work queue may block the reader
            before the session is torn down (None blocks indefinitely)
        broker_url: Informational broker address handed to the transport
        username: Optional user name sent in CONNECT
        password: Optional password sent in CONNECT
        qos_default: QoS used when publish/subscribe are called without one
        message_log_size: Entries kept in the client's message log

    Example:
        >>> config = SessionConfig(
        ...     client_id="sensor-gateway",
        ...     clean_session=False,
        ...     keepalive=30,
        ...     max_retries=5,
        ... )
    """
    client_id: str = Field(default_factory=lambda: generate_unique_id("pubsub_client"))
    clean_session: bool = True
    keepalive: float = Field(default=60.0, ge=0)
    keepalive_grace: Optional[float] = Field(default=None, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_interval: float = Field(default=5.0, gt=0)
    work_queue_capacity: int = Field(default=100, ge=1)
    worker_count: int = Field(default=4, ge=1)
    handshake_timeout: float = Field(default=5.0, gt=0)
    dispatch_timeout: Optional[float] = Field(default=30.0, gt=0)
    broker_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    qos_default: QoS = QoS.AT_MOST_ONCE
    message_log_size: int = Field(default=500, ge=0)

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v):
        """
        Reject empty client identifiers.

        Raises:
            ValueError: If the identifier is empty or whitespace
        """
        if not v or not v.strip():
            raise ValueError("client_id must be a non-empty string")
        return v

    @model_validator(mode="after")
    def set_grace_if_none(self) -> "SessionConfig":
        """Default the keepalive grace period to the keepalive interval."""
        if self.keepalive_grace is None and self.keepalive > 0:
            self.keepalive_grace = self.keepalive
        return self

    @classmethod
    def from_env(cls, prefix: str = "PUBSUB_", **overrides: Any) -> "SessionConfig":
        """
        Build a configuration from environment variables.

        A `.env` file is loaded first when present. Recognized variables are the
        field names upper-cased behind the prefix, e.g. `PUBSUB_CLIENT_ID`,
        `PUBSUB_KEEPALIVE` or `PUBSUB_PASSWORD`. Keyword overrides win over the
        environment.

        Args:
            prefix: Variable name prefix
            **overrides: Explicit field values

        Returns:
            Validated SessionConfig

        Raises:
            ValidationError: If a variable holds an invalid value
        """
        load_dotenv()
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls(**values)


class Packet(BaseModel):
    """
    A decoded protocol packet.

    The same model carries inbound events (CONNACK, SUBACK, PUBLISH, ...) and
    outbound commands (CONNECT, SUBSCRIBE, PUBLISH, ...). Only the fields that
    make sense for a packet type are populated; the rest keep their defaults.

    Attributes:
        type: Packet kind
        packet_id: Identifier for PUBLISH (QoS > 0), acknowledgments,
            SUBSCRIBE and UNSUBSCRIBE
        topic: Topic name (PUBLISH) or topic filter (SUBSCRIBE/UNSUBSCRIBE)
        payload: PUBLISH payload
        qos: PUBLISH QoS or requested subscription QoS
        retain: PUBLISH retain flag
        dup: PUBLISH duplicate-delivery flag
        granted_qos: SUBACK result codes, 0x80 meaning rejected
        return_code: CONNACK result, 0 meaning accepted
        session_present: CONNACK flag reported by the peer
        client_id: CONNECT client identifier
        clean_session: CONNECT clean-session flag
        keepalive: CONNECT keepalive interval
        username: CONNECT user name
        password: CONNECT password
    """
    model_config = ConfigDict(frozen=True)

    type: PacketType
    packet_id: Optional[int] = Field(default=None, ge=1, le=MAX_PACKET_ID)
    topic: Optional[str] = None
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False
    dup: bool = False
    granted_qos: Optional[list[int]] = None
    return_code: int = 0
    session_present: bool = False
    client_id: Optional[str] = None
    clean_session: bool = True
    keepalive: float = 0
    username: Optional[str] = None
    password: Optional[SecretStr] = None


class Message(BaseModel):
    """
    An inbound unit of data delivered to subscription handlers.

    Immutable once constructed. Each matching subscription receives its own
    copy whose qos is the minimum of the delivered QoS and the QoS granted to
    that subscription.

    Attributes:
        topic: Concrete topic (no wildcards)
        payload: Raw payload bytes
        qos: QoS the message is delivered at
        retain: Retain flag as delivered by the peer
        dup: Duplicate flag as delivered by the peer
        timestamp: Receive time, Unix milliseconds
    """
    model_config = ConfigDict(frozen=True)

    topic: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False
    dup: bool = False
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def from_packet(cls, packet: Packet) -> "Message":
        """Build a message from an inbound PUBLISH packet."""
        return cls(
            topic=packet.topic,
            payload=packet.payload,
            qos=packet.qos,
            retain=packet.retain,
            dup=packet.dup,
        )

    def as_text(self, encoding: str = "utf-8") -> str:
        """Decode the payload as text, replacing undecodable bytes."""
        return self.payload.decode(encoding, errors="replace")


class SessionEvent(BaseModel):
    """
    Observability record published on a client's event stream.

    Attributes:
        type: Event kind
        client_id: Session the event belongs to
        state: State after a transition (STATE_CHANGED)
        previous_state: State before a transition (STATE_CHANGED)
        packet_id: Publish identifier (DELIVERY_COMPLETE/DELIVERY_FAILED)
        topic: Publish topic (DELIVERY_COMPLETE/DELIVERY_FAILED)
        error: The exception being reported (DELIVERY_FAILED/SESSION_ERROR)
        timestamp: Event time, Unix milliseconds
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: SessionEventType
    client_id: Optional[str] = None
    state: Optional[SessionState] = None
    previous_state: Optional[SessionState] = None
    packet_id: Optional[int] = None
    topic: Optional[str] = None
    error: Optional[Exception] = None
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


__all__ = [
    "SUBACK_FAILURE",
    "MAX_PACKET_ID",
    "QoS",
    "SessionState",
    "PacketType",
    "Direction",
    "HandshakePhase",
    "ErrorCategory",
    "SessionEventType",
    "SessionConfig",
    "Packet",
    "Message",
    "SessionEvent",
]
