"""
Shared Utilities for the Session Engine.

This module holds the small pieces every engine component leans on:

Key Components:
    - SessionLogger: Logger adapter that attaches session context to every record
    - SessionFormatter: Log formatter that renders extra fields as key=value pairs
    - generate_unique_id(): Client identifier generation
    - parse_qos(): Flexible QoS parsing and validation

Logging Conventions:
    Components log through `logging.getLogger(__name__)`. The session client
    wraps its logger in a SessionLogger carrying `client_id`, so every record
    emitted on behalf of a session can be correlated. Per-call context such as
    `topic` or `packet_id` is passed via `extra` and merged with the base
    context.
"""
import uuid
import logging
from typing import Any


logger = logging.getLogger(__name__)


class SessionFormatter(logging.Formatter):
    """
    Log formatter that appends contextual metadata to log messages.

    Any extra fields supplied through a SessionLogger are rendered after the
    message as key=value pairs.

    Example:
        >>> formatter = SessionFormatter()
        >>> handler.setFormatter(formatter)
        >>> session_logger.info("Subscribed", extra={"topic": "sensor/#"})
        # Output: "Subscribed client_id=gateway-1 topic=sensor/#"
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Render the message followed by the session context.

        Args:
            record: Record produced by a SessionLogger call

        Returns:
            "<message> key=value ..." when context is present
        """
        if hasattr(record, 'extra') and isinstance(record.extra, dict):
            extra_info = ' '.join(f"{k}={v}" for k, v in record.extra.items())
            return f"{record.getMessage()} {extra_info}".rstrip()
        return super().format(record)


class SessionLogger(logging.LoggerAdapter):
    """
    Logger adapter carrying session context.

    Attributes:
        logger: Wrapped module logger
        extra: Base context attached to all records (typically client_id)
        merge_extra: If True, per-call extras are merged over the base context;
            if False, per-call extras replace it
        exclude_extras: Field names removed from the context before emitting

    Example:
        >>> log = SessionLogger(
        ...     logging.getLogger("pubsub_session"),
        ...     extra={"client_id": "gateway-1"},
        ...     merge_extra=True,
        ... )
        >>> log.info("Connected", extra={"broker": "tcp://localhost:1883"})
    """

    def __init__(
        self,
        logger: logging.Logger,
        extra: dict[str, Any] | None = None,
        merge_extra: bool = False,
        exclude_extras: list[str] | None = None
    ):
        super().__init__(logger, extra or {})
        self.logger = logger
        self.extra = extra or {}
        self.merge_extra = merge_extra
        self.exclude_extras = exclude_extras or []

    def process(self, msg, kwargs):
        """
        Inject the session context into the keyword arguments of a logging call.

        The combined context is stored both as individual record attributes and
        under `record.extra`, which is what SessionFormatter renders.

        Args:
            msg: Message passed to the logging call
            kwargs: Logging call keyword arguments, possibly holding `extra`

        Returns:
            Tuple of (message, modified_kwargs)
        """
        call_extra = kwargs.get("extra") or {}
        if self.merge_extra:
            context = {**self.extra, **call_extra}
        else:
            context = dict(call_extra or self.extra)

        for key in self.exclude_extras:
            context.pop(key, None)

        kwargs["extra"] = {**context, "extra": context}
        return msg, kwargs

    def bind(self, **context: Any) -> "SessionLogger":
        """Return a new adapter whose base context is extended with `context`."""
        return SessionLogger(
            self.logger,
            extra={**self.extra, **context},
            merge_extra=self.merge_extra,
            exclude_extras=list(self.exclude_extras),
        )


def generate_unique_id(prefix: str | None = "pubsub_client") -> str:
    """
    Build a client identifier from a prefix and a random UUID4.

    Args:
        prefix: Optional prefix string. If None, returns a raw UUID4.

    Returns:
        Identifier in the form "{prefix}-{uuid}" or just "{uuid}"

    Example:
        >>> generate_unique_id("gateway")
        "gateway-a7f3c8d9-1234-5678-9abc-def012345678"
    """
    if prefix is None:
        return str(uuid.uuid4())
    return f"{prefix}-{uuid.uuid4()}"


def parse_qos(qos: Any) -> int:
    """
    Parse and validate a QoS level.

    Accepts a QoS enum member, an integer 0-2, or a numeric string.

    Args:
        qos: The QoS value to parse

    Returns:
        QoS level as an int (an IntEnum member passes through unchanged)

    Raises:
        ValueError: If the value is not a valid QoS level

    Example:
        >>> parse_qos("1")
        1
        >>> parse_qos(3)
        ValueError: Invalid QoS: 3. Valid levels are 0, 1, 2
    """
    if isinstance(qos, bool):
        raise ValueError(f"QoS must be an int, got {type(qos).__name__}")
    if isinstance(qos, str) and qos.strip().isdigit():
        qos = int(qos.strip())
    if not isinstance(qos, int):
        logger.error(f"QoS must be an int or numeric string, got {type(qos).__name__}")
        raise ValueError(f"QoS must be an int, got {type(qos).__name__}")
    if qos not in (0, 1, 2):
        raise ValueError(f"Invalid QoS: {qos}. Valid levels are 0, 1, 2")
    return qos


__all__ = [
    "SessionFormatter",
    "SessionLogger",
    "generate_unique_id",
    "parse_qos",
]
