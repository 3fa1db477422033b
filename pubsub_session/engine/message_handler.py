"""
Subscription message handlers.

A handler is anything with a `deliver(message)` method. Handlers run on the
dispatcher's worker threads, never on the transport read path, so a handler
may block without stalling acknowledgments. Plain callables are accepted by
the client and wrapped in MessageHandlerBase.
"""
from typing import Any, Callable, Protocol, runtime_checkable
import logging
import queue

from ..core.models import Message
from ..core.payload_handler import PayloadHandler

logger = logging.getLogger(__name__)


# === Handler Protocol ===

@runtime_checkable
class MessageHandlerProtocol(Protocol):
    """
    Protocol for subscription handlers.

    The handler reference is stored opaquely in the subscription registry;
    one handler per topic filter.
    """
    def deliver(self, message: Message) -> Any:
        ...


# === Base Handler ===

class MessageHandlerBase:
    """
    Handler wrapping a callable that takes a Message.

    Args:
        process: Callable invoked with each delivered message
        name: Label used in logs (defaults to the callable's name)
    """
    def __init__(self, process: Callable[[Message], Any], name: str | None = None):
        if not callable(process):
            raise ValueError("process must be callable")
        self._process = process
        self.name = name or getattr(process, "__name__", process.__class__.__name__)

    def deliver(self, message: Message) -> Any:
        return self._process(message)

    def __repr__(self):
        return f"{self.__class__.__name__}(name={self.name!r})"


# === Queue Handler ===

class QueueHandler:
    """
    Handler that collects delivered messages on a thread-safe queue.

    Useful for consumers that prefer pulling messages over callbacks.
    """
    def __init__(self, maxsize: int = 0):
        self.messages: queue.Queue[Message] = queue.Queue(maxsize=maxsize)

    def deliver(self, message: Message) -> None:
        self.messages.put(message)

    def get(self, timeout: float | None = None) -> Message:
        """
        Raises:
            queue.Empty: If no message arrives within `timeout`
        """
        return self.messages.get(timeout=timeout)


# === Default Handler ===

class MessageHandlerDefault(MessageHandlerBase):
    """Default handler used when a subscription is made without one; logs each message."""
    def __init__(self):
        def process_default_message(message: Message) -> Message:
            logger.debug(
                f"Message received: {PayloadHandler.preview(message.payload)}",
                extra={"topic": message.topic, "qos": int(message.qos)},
            )
            return message

        super().__init__(process=process_default_message, name="default")


def as_handler(handler: Any) -> MessageHandlerProtocol:
    """
    Normalize a handler argument.

    Args:
        handler: A MessageHandlerProtocol implementation, a callable taking a
            Message, or None for the default logging handler

    Returns:
        An object implementing MessageHandlerProtocol

    Raises:
        ValueError: If the argument is neither a handler nor callable
    """
    if handler is None:
        return MessageHandlerDefault()
    if isinstance(handler, MessageHandlerProtocol):
        return handler
    if callable(handler):
        return MessageHandlerBase(process=handler)
    raise ValueError("Handler must implement MessageHandlerProtocol or be callable")


__all__ = [
    "MessageHandlerProtocol",
    "MessageHandlerBase",
    "QueueHandler",
    "MessageHandlerDefault",
    "as_handler",
]
