"""
Session Connection State Machine

States:
    CONNECTING → CONNECTED → DISCONNECTED → CONNECTING (reconnect)
         ↓            ↓            ↓
       ERROR ←────────┴────────────┘

ERROR is terminal: a session that exhausted its reconnect budget or received
a fatal backend error is only ever destroyed, never revived.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .errors import InvalidTransitionError
from .models import ConnectionState


# Valid transitions: from_state -> [allowed_to_states]
VALID_TRANSITIONS: Dict[ConnectionState, List[ConnectionState]] = {
    ConnectionState.CONNECTING: [
        ConnectionState.CONNECTED,     # Handshake acked
        ConnectionState.DISCONNECTED,  # Handshake failed, will retry
        ConnectionState.ERROR,
    ],
    ConnectionState.CONNECTED: [
        ConnectionState.DISCONNECTED,  # Transport loss or probe failures
        ConnectionState.ERROR,         # Fatal backend error
    ],
    ConnectionState.DISCONNECTED: [
        ConnectionState.CONNECTING,    # Reconnect attempt
        ConnectionState.ERROR,         # Retries exhausted
    ],
    ConnectionState.ERROR: [],
}


def can_transition(from_state: ConnectionState, to_state: ConnectionState) -> bool:
    """Check if transition from one connection state to another is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def check_transition(
    from_state: ConnectionState,
    to_state: ConnectionState,
    session_id: Optional[str] = None,
) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not can_transition(from_state, to_state):
        allowed = [s.value for s in VALID_TRANSITIONS.get(from_state, [])]
        raise InvalidTransitionError(
            session_id,
            from_state.value,
            to_state.value,
            f"allowed targets are {allowed or 'none (terminal state)'}",
        )


@dataclass
class StateTransition:
    """Record of a single connection state transition."""
    from_state: ConnectionState
    to_state: ConnectionState
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    detail: str = ""
