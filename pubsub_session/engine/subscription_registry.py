"""
Subscription Registry.

Owns the mapping from topic filters to requested/granted QoS and to the
handler registered for each filter. Entries go through two phases:

    pending  -> subscribe() stored the entry; granted QoS is unset
    active   -> confirm_grant() recorded the QoS the peer granted

Only active entries take part in dispatch. Entries are keyed by the exact
filter string, so subscribing to the same filter again replaces its handler
instead of adding a second entry. While a re-subscription is pending, the
previous grant keeps the entry active so deliveries are not interrupted.

All mutations take the registry lock; dispatch matches against a snapshot
taken under the lock, so concurrent subscribe/unsubscribe calls never
observe a half-updated map.

Example:
    >>> registry = SubscriptionRegistry()
    >>> token = registry.subscribe("sensor/+/temp", QoS.AT_LEAST_ONCE, handler, token=1)
    >>> registry.confirm_grant(token, 1)
    >>> [m.topic_filter for m in registry.dispatch(message)]
    ['sensor/+/temp']
"""
import itertools
import logging
import threading
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from ..core.base import parse_qos
from ..core.models import SUBACK_FAILURE, Message, QoS
from ..core import topic_matcher

logger = logging.getLogger(__name__)


class Subscription(BaseModel):
    """
    One registered interest.

    Attributes:
        topic_filter: Filter string, possibly containing wildcards
        requested_qos: QoS asked for in the most recent SUBSCRIBE
        granted_qos: QoS granted by the peer; None until acknowledged
        handler: Opaque handler reference
        token: Correlation token of the outstanding SUBSCRIBE, if any
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    topic_filter: str
    requested_qos: QoS
    granted_qos: Optional[QoS] = None
    handler: Any = None
    token: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.granted_qos is not None

    @property
    def is_pending(self) -> bool:
        return self.token is not None


class SubscriptionMatch(BaseModel):
    """A subscription selected by dispatch, with the QoS to deliver at."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    topic_filter: str
    handler: Any
    qos: QoS


class SubscriptionRegistry:
    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}
        self._pending: dict[int, str] = {}
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)

    def subscribe(self, topic_filter: str, qos: int, handler: Any, token: int | None = None) -> int:
        """
        Store a pending subscription.

        Args:
            topic_filter: Filter to subscribe to
            qos: Requested QoS
            handler: Handler reference stored for dispatch
            token: Correlation token; the client passes the SUBSCRIBE packet
                identifier. Generated when omitted.

        Returns:
            The token to pass to confirm_grant()

        Raises:
            InvalidFilter: If the filter breaks wildcard placement rules
            ValueError: If qos is not 0, 1 or 2
        """
        topic_matcher.validate_filter(topic_filter)
        requested = QoS(parse_qos(qos))

        with self._lock:
            if token is None:
                token = next(self._tokens)
            existing = self._subscriptions.get(topic_filter)
            if existing is not None and existing.token is not None:
                self._pending.pop(existing.token, None)

            self._subscriptions[topic_filter] = Subscription(
                topic_filter=topic_filter,
                requested_qos=requested,
                granted_qos=existing.granted_qos if existing else None,
                handler=handler,
                token=token,
            )
            self._pending[token] = topic_filter

        logger.debug(
            f"Subscription to '{topic_filter}' pending",
            extra={"token": token, "qos": int(requested), "replaced": existing is not None},
        )
        return token

    def confirm_grant(self, token: int, granted_qos: int | None) -> Optional[Subscription]:
        """
        Resolve a pending subscription.

        Args:
            token: Token returned by subscribe()
            granted_qos: QoS granted by the peer, or None / 0x80 if rejected

        Returns:
            The now active Subscription, or None if it was rejected or the
            token is unknown
        """
        with self._lock:
            topic_filter = self._pending.pop(token, None)
            if topic_filter is None:
                logger.warning(f"Grant for unknown subscription token {token}")
                return None
            subscription = self._subscriptions.get(topic_filter)
            if subscription is None:
                return None

            if granted_qos is None or granted_qos == SUBACK_FAILURE or granted_qos not in (0, 1, 2):
                del self._subscriptions[topic_filter]
                logger.warning(f"Subscription to '{topic_filter}' rejected", extra={"token": token})
                return None

            subscription.granted_qos = QoS(granted_qos)
            subscription.token = None
            logger.debug(
                f"Subscription to '{topic_filter}' granted QoS {granted_qos}",
                extra={"token": token},
            )
            return subscription.model_copy()

    def cancel_pending(self, token: int) -> Optional[Subscription]:
        """
        Abandon a SUBSCRIBE that will not be answered.

        An entry that already held a grant from an earlier subscription stays
        active with that grant; an entry that was never granted is removed.

        Returns:
            The entry if it is still registered, otherwise None
        """
        with self._lock:
            topic_filter = self._pending.pop(token, None)
            if topic_filter is None:
                return None
            subscription = self._subscriptions.get(topic_filter)
            if subscription is None:
                return None
            subscription.token = None
            if subscription.is_active:
                return subscription.model_copy()
            del self._subscriptions[topic_filter]
        logger.debug(f"Pending subscription to '{topic_filter}' abandoned", extra={"token": token})
        return None

    def mark_pending(self, topic_filter: str, token: int) -> bool:
        """
        Attach a new correlation token to an existing entry being re-asserted.

        The entry keeps its current grant (and stays in dispatch) until the
        peer answers.

        Returns:
            False if the filter is not registered
        """
        with self._lock:
            subscription = self._subscriptions.get(topic_filter)
            if subscription is None:
                return False
            if subscription.token is not None:
                self._pending.pop(subscription.token, None)
            subscription.token = token
            self._pending[token] = topic_filter
            return True

    def unsubscribe(self, topic_filter: str) -> Optional[Subscription]:
        """
        Remove the entry for `topic_filter`.

        Returns:
            The removed Subscription, or None if the filter was not registered
        """
        with self._lock:
            subscription = self._subscriptions.pop(topic_filter, None)
            if subscription is not None and subscription.token is not None:
                self._pending.pop(subscription.token, None)
        if subscription is not None:
            logger.debug(f"Unsubscribed from '{topic_filter}'")
        return subscription

    def dispatch(self, message: Message) -> list[SubscriptionMatch]:
        """
        Select every active subscription whose filter matches the message topic.

        Each match carries min(message QoS, granted QoS).

        Args:
            message: Inbound message

        Returns:
            Matches in subscription order; empty if none match
        """
        with self._lock:
            active = [s for s in self._subscriptions.values() if s.is_active]

        return [
            SubscriptionMatch(
                topic_filter=s.topic_filter,
                handler=s.handler,
                qos=QoS(min(message.qos, s.granted_qos)),
            )
            for s in active
            if topic_matcher.matches(s.topic_filter, message.topic)
        ]

    def get(self, topic_filter: str) -> Optional[Subscription]:
        with self._lock:
            subscription = self._subscriptions.get(topic_filter)
            return subscription.model_copy() if subscription else None

    def active(self) -> list[Subscription]:
        with self._lock:
            return [s.model_copy() for s in self._subscriptions.values() if s.is_active]

    def snapshot(self) -> list[Subscription]:
        with self._lock:
            return [s.model_copy() for s in self._subscriptions.values()]

    def pending_tokens(self) -> list[int]:
        with self._lock:
            return list(self._pending)

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()
            self._pending.clear()

    def __contains__(self, topic_filter: str) -> bool:
        with self._lock:
            return topic_filter in self._subscriptions

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)


__all__ = ["Subscription", "SubscriptionMatch", "SubscriptionRegistry"]
