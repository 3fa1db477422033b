"""
Session container.

A Session groups the state that belongs to one logical session with the peer:
identity, persistence flag, keepalive interval, lifecycle state, and the
session-scoped Subscription Registry and In-Flight Table. The client creates
a Session on connect and either discards it on terminal disconnect (clean
session) or keeps it for the next connect with the same client identifier.
"""
import logging

from ..core.models import SessionConfig, SessionState
from .inflight import InFlightTable
from .state_machine import SessionStateMachine
from .subscription_registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class Session:
    def __init__(
        self,
        client_id: str,
        clean_session: bool = True,
        keepalive: float = 60.0,
        max_retries: int = 3,
        retry_interval: float = 5.0,
        state_machine: SessionStateMachine | None = None,
    ):
        self.client_id = client_id
        self.clean_session = clean_session
        self.keepalive = keepalive
        self.registry = SubscriptionRegistry()
        self.inflight = InFlightTable(max_retries=max_retries, retry_interval=retry_interval)
        self.state_machine = state_machine or SessionStateMachine(client_id)

    @classmethod
    def from_config(cls, config: SessionConfig, state_machine: SessionStateMachine | None = None) -> "Session":
        return cls(
            client_id=config.client_id,
            clean_session=config.clean_session,
            keepalive=config.keepalive,
            max_retries=config.max_retries,
            retry_interval=config.retry_interval,
            state_machine=state_machine,
        )

    def can_resume(self, config: SessionConfig) -> bool:
        """True if `config` continues this session instead of starting a new one."""
        return not config.clean_session and not self.clean_session and config.client_id == self.client_id

    def apply(self, config: SessionConfig) -> None:
        """Carry the tunables of a resuming connect over to the kept session."""
        self.keepalive = config.keepalive
        self.inflight.max_retries = config.max_retries
        self.inflight.retry_interval = config.retry_interval

    @property
    def state(self) -> SessionState:
        return self.state_machine.state

    @property
    def is_empty(self) -> bool:
        return len(self.registry) == 0 and len(self.inflight) == 0

    def __repr__(self):
        return (
            f"Session(client_id={self.client_id!r}, clean_session={self.clean_session}, "
            f"state={self.state}, subscriptions={len(self.registry)}, inflight={len(self.inflight)})"
        )


__all__ = ["Session"]
