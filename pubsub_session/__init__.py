"""
pubsub_session - client engine for topic-based pub/sub sessions.

Manages one logical session with a broker over a pluggable transport:
subscriptions with `+`/`#` wildcards, QoS 0/1/2 publication with
retransmission, and dispatch of inbound messages to handlers on a bounded
worker pool.
"""
from .core import (
    SessionConfig,
    QoS,
    SessionState,
    SessionEventType,
    Message,
    Packet,
    PacketType,
    SessionEvent,
    SessionLogger,
    SessionFormatter,
    PayloadHandler,
    MessageLog,
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
    topic_matcher,
)
from .engine import (
    SessionClient,
    DeliveryToken,
    Subscription,
    MessageHandlerProtocol,
    MessageHandlerBase,
    QueueHandler,
)
from .transport import TransportProtocol, LoopbackTransport, AutoAckPeer

__all__ = [
    "SessionClient",
    "SessionConfig",
    "QoS",
    "SessionState",
    "SessionEventType",
    "Message",
    "Packet",
    "PacketType",
    "SessionEvent",
    "DeliveryToken",
    "Subscription",
    "MessageHandlerProtocol",
    "MessageHandlerBase",
    "QueueHandler",
    "TransportProtocol",
    "LoopbackTransport",
    "AutoAckPeer",
    "SessionLogger",
    "SessionFormatter",
    "PayloadHandler",
    "MessageLog",
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
    "topic_matcher",
]
