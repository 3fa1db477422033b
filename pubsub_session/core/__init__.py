"""
Core components shared by every layer of the session engine.
"""
from .base import SessionLogger, SessionFormatter, generate_unique_id, parse_qos
from .models import (
    SUBACK_FAILURE,
    MAX_PACKET_ID,
    QoS,
    SessionState,
    PacketType,
    Direction,
    HandshakePhase,
    ErrorCategory,
    SessionEventType,
    SessionConfig,
    Packet,
    Message,
    SessionEvent,
)
from .exceptions import (
    SessionException,
    InvalidFilter,
    InvalidTopic,
    NotConnected,
    SessionStateError,
    OperationCancelled,
    HandshakeTimeout,
    DeliveryFailed,
    SubscriptionRejected,
    PacketIdExhausted,
    TransportError,
    ConnectFailed,
    ConnectionLost,
    DispatchOverload,
)
from .message_log import LogDirection, LogEntry, MessageLog
from .payload_handler import PayloadHandler
from . import topic_matcher

__all__ = [
    # Base utilities
    "SessionLogger",
    "SessionFormatter",
    "generate_unique_id",
    "parse_qos",
    # Models
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
    # Exceptions
    "SessionException",
    "InvalidFilter",
    "InvalidTopic",
    "NotConnected",
    "SessionStateError",
    "OperationCancelled",
    "HandshakeTimeout",
    "DeliveryFailed",
    "SubscriptionRejected",
    "PacketIdExhausted",
    "TransportError",
    "ConnectFailed",
    "ConnectionLost",
    "DispatchOverload",
    # Utilities
    "LogDirection",
    "LogEntry",
    "MessageLog",
    "PayloadHandler",
    "topic_matcher",
]
