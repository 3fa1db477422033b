"""
Session lifecycle state machine.

    DISCONNECTED --connect()--> CONNECTING --success--> CONNECTED
                                    |                      |   \\
                                 failure              disconnect()  fault
                                    v                      v      \\
                              DISCONNECTED          DISCONNECTING   v
                                                           |   DISCONNECTED
                                                           v
                                                     DISCONNECTED

Caller actions drive every transition except CONNECTED -> DISCONNECTED on a
fault (transport failure, keepalive expiry, dispatch overload). Transitions
are atomic: concurrent callers racing for the same transition see exactly one
winner, which is how session-fatal errors are surfaced exactly once.
"""
import logging
import threading
from typing import Callable

from ..core.exceptions import NotConnected, SessionStateError
from ..core.models import SessionState

logger = logging.getLogger(__name__)

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.CONNECTED, SessionState.DISCONNECTED}),
    SessionState.CONNECTED: frozenset({SessionState.DISCONNECTING, SessionState.DISCONNECTED}),
    SessionState.DISCONNECTING: frozenset({SessionState.DISCONNECTED}),
}

StateListener = Callable[[SessionState, SessionState], None]


class SessionStateMachine:
    """
    Thread-safe holder of the current SessionState.

    Listeners are called with (previous, current) after each transition,
    outside the lock, on the thread that made the transition.
    """

    def __init__(self, client_id: str | None = None):
        self.client_id = client_id
        self._state = SessionState.DISCONNECTED
        self._condition = threading.Condition()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> SessionState:
        with self._condition:
            return self._state

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def transition(self, expected: SessionState | frozenset[SessionState], target: SessionState) -> SessionState:
        """
        Move to `target` if the current state is one of `expected`.

        Args:
            expected: State (or states) the caller requires
            target: Destination state

        Returns:
            The previous state

        Raises:
            SessionStateError: If the current state is not expected or the
                transition is not in the transition table
        """
        previous = self._try(expected, target)
        if previous is None:
            raise SessionStateError(
                f"Cannot move to {target} from {self.state}",
                client_id=self.client_id,
            )
        return previous

    def try_transition(self, expected: SessionState | frozenset[SessionState], target: SessionState) -> bool:
        """Like transition(), but returns False instead of raising."""
        return self._try(expected, target) is not None

    def _try(self, expected, target) -> SessionState | None:
        allowed = frozenset({expected}) if isinstance(expected, SessionState) else expected
        with self._condition:
            previous = self._state
            if previous not in allowed or target not in TRANSITIONS[previous]:
                return None
            self._state = target
            self._condition.notify_all()

        logger.debug(f"Session state {previous} -> {target}", extra={"client_id": self.client_id})
        for listener in list(self._listeners):
            try:
                listener(previous, target)
            except Exception as e:
                logger.error(f"State listener error: {e}", exc_info=True)
        return previous

    # === Lifecycle helpers ===

    def begin_connect(self) -> None:
        self.transition(SessionState.DISCONNECTED, SessionState.CONNECTING)

    def connect_succeeded(self) -> None:
        self.transition(SessionState.CONNECTING, SessionState.CONNECTED)

    def connect_failed(self) -> bool:
        return self.try_transition(SessionState.CONNECTING, SessionState.DISCONNECTED)

    def begin_disconnect(self) -> None:
        """
        Raises:
            NotConnected: If the session is not CONNECTED
        """
        if not self.try_transition(SessionState.CONNECTED, SessionState.DISCONNECTING):
            raise NotConnected(f"Cannot disconnect while {self.state}", client_id=self.client_id)

    def disconnect_finished(self) -> bool:
        return self.try_transition(SessionState.DISCONNECTING, SessionState.DISCONNECTED)

    def connection_lost(self) -> bool:
        """
        Fault-driven CONNECTED -> DISCONNECTED.

        Returns:
            True for the single caller that performed the transition
        """
        return self.try_transition(SessionState.CONNECTED, SessionState.DISCONNECTED)

    def require_connected(self, operation: str = "operation") -> None:
        """
        Raises:
            NotConnected: If the session is not CONNECTED
        """
        state = self.state
        if state is not SessionState.CONNECTED:
            raise NotConnected(f"Cannot {operation} while {state}", client_id=self.client_id)

    def wait_for(self, state: SessionState, timeout: float | None = None) -> bool:
        """Block until the machine reaches `state`; False on timeout."""
        with self._condition:
            return self._condition.wait_for(lambda: self._state is state, timeout=timeout)

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED


__all__ = ["TRANSITIONS", "SessionStateMachine"]
