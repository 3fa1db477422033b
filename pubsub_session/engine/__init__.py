"""
Session engine: the client facade and the components it is built from.
"""
from .client import SessionClient
from .session import Session
from .subscription_registry import Subscription, SubscriptionMatch, SubscriptionRegistry
from .inflight import InFlightEntry, DeliveryToken, Retransmission, InFlightTable
from .state_machine import SessionStateMachine
from .dispatcher import Dispatcher
from .events import EventStream
from .message_handler import (
    MessageHandlerProtocol,
    MessageHandlerBase,
    QueueHandler,
    MessageHandlerDefault,
    as_handler,
)

__all__ = [
    # Client
    "SessionClient",
    "Session",
    # Components
    "Subscription",
    "SubscriptionMatch",
    "SubscriptionRegistry",
    "InFlightEntry",
    "DeliveryToken",
    "Retransmission",
    "InFlightTable",
    "SessionStateMachine",
    "Dispatcher",
    "EventStream",
    # Message handlers
    "MessageHandlerProtocol",
    "MessageHandlerBase",
    "QueueHandler",
    "MessageHandlerDefault",
    "as_handler",
]
