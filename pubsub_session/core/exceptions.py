from typing import Optional

from .models import ErrorCategory


class SessionException(Exception):
    """
    Base for all session engine errors. Carries:
      - category: caller misuse, transient, or session fatal
      - detail: human readable description
      - client_id: the session the error belongs to
      - topic: topic or topic filter involved, if any
      - packet_id: packet identifier involved, if any
      - cause: the lower-level exception that triggered this one, if any
    """
    default_category: ErrorCategory = ErrorCategory.CALLER_MISUSE

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        client_id: Optional[str] = None,
        topic: Optional[str] = None,
        packet_id: Optional[int] = None,
        cause: Optional[BaseException] = None,
        category: Optional[ErrorCategory] = None,
    ):
        self.category = category if category is not None else self.default_category
        self.detail = detail
        self.client_id = client_id
        self.topic = topic
        self.packet_id = packet_id
        self.cause = cause

        parts = [f"category={self.category.value}"]
        if client_id:
            parts.append(f"client_id={client_id!r}")
        if topic is not None:
            parts.append(f"topic={topic!r}")
        if packet_id is not None:
            parts.append(f"packet_id={packet_id}")
        if cause is not None:
            parts.append(f"cause={cause!r}")

        super().__init__(f"{detail!r} {self.__class__.__name__}: " + ", ".join(parts))

    @property
    def is_fatal(self) -> bool:
        return self.category is ErrorCategory.SESSION_FATAL

    def __repr__(self):
        return (
            f"{self.__class__.__name__}("
            f"category={self.category.value!r}, "
            f"detail={self.detail!r}, "
            f"client_id={self.client_id!r}, "
            f"topic={self.topic!r}, "
            f"packet_id={self.packet_id!r}"
            f")"
        )


# === Caller misuse ===

class InvalidFilter(SessionException):
    """Topic filter violates wildcard placement rules."""

    default_category = ErrorCategory.CALLER_MISUSE


class InvalidTopic(SessionException):
    """Publish topic is empty or contains wildcards."""

    default_category = ErrorCategory.CALLER_MISUSE


class NotConnected(SessionException):
    """Operation requires a CONNECTED session."""

    default_category = ErrorCategory.CALLER_MISUSE


class SessionStateError(SessionException):
    """Lifecycle operation is not legal from the current state."""

    default_category = ErrorCategory.CALLER_MISUSE


class OperationCancelled(SessionException):
    """Caller-supplied cancellation signal fired during a handshake."""

    default_category = ErrorCategory.CALLER_MISUSE


# === Transient ===

class HandshakeTimeout(SessionException):
    """Peer did not complete a handshake step before its deadline."""

    default_category = ErrorCategory.TRANSIENT


class DeliveryFailed(SessionException):
    """Outgoing QoS 1/2 publish exhausted its retries or was abandoned."""

    default_category = ErrorCategory.TRANSIENT


class SubscriptionRejected(SessionException):
    """Peer refused a subscription request."""

    default_category = ErrorCategory.TRANSIENT


class PacketIdExhausted(SessionException):
    """Every packet identifier is held by an outstanding handshake."""

    default_category = ErrorCategory.TRANSIENT


class TransportError(SessionException):
    """Transport could not open, read or write."""

    default_category = ErrorCategory.TRANSIENT


# === Session fatal ===

class ConnectFailed(SessionException):
    """Connection handshake failed, timed out, was refused or was cancelled."""

    default_category = ErrorCategory.SESSION_FATAL

    def __init__(self, detail: Optional[str] = None, *, return_code: Optional[int] = None, **kwargs):
        self.return_code = return_code
        super().__init__(detail, **kwargs)


class ConnectionLost(SessionException):
    """Link failed, the peer disconnected, or keepalive expired while connected."""

    default_category = ErrorCategory.SESSION_FATAL


class DispatchOverload(SessionException):
    """Work queue stayed full past the dispatch timeout."""

    default_category = ErrorCategory.SESSION_FATAL


__all__ = [
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
]
