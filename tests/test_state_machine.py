"""
Tests for the session connection state machine.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashterm.terminal.errors import InvalidTransitionError
from dashterm.terminal.models import ConnectionState
from dashterm.terminal.state_machine import VALID_TRANSITIONS, can_transition, check_transition


class TestTransitions:
    """Allowed and forbidden connection state changes."""

    @pytest.mark.parametrize("from_state,to_state", [
        (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
        (ConnectionState.CONNECTING, ConnectionState.DISCONNECTED),
        (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED),
        (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
        (ConnectionState.CONNECTED, ConnectionState.ERROR),
        (ConnectionState.DISCONNECTED, ConnectionState.ERROR),
    ])
    def test_allowed(self, from_state, to_state):
        assert can_transition(from_state, to_state)

    @pytest.mark.parametrize("from_state,to_state", [
        (ConnectionState.CONNECTED, ConnectionState.CONNECTING),
        (ConnectionState.DISCONNECTED, ConnectionState.CONNECTED),
        (ConnectionState.ERROR, ConnectionState.CONNECTING),
        (ConnectionState.ERROR, ConnectionState.CONNECTED),
    ])
    def test_forbidden(self, from_state, to_state):
        assert not can_transition(from_state, to_state)

    def test_error_is_terminal(self):
        """Nothing leaves ERROR."""
        assert VALID_TRANSITIONS[ConnectionState.ERROR] == []

    def test_every_state_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(ConnectionState)

    def test_check_transition_raises_with_context(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(ConnectionState.ERROR, ConnectionState.CONNECTING, "wb_1_1")
        err = exc_info.value
        assert err.session_id == "wb_1_1"
        assert err.from_state == "error"
        assert err.to_state == "connecting"
        assert "terminal state" in err.reason

    def test_check_transition_passes_silently(self):
        check_transition(ConnectionState.CONNECTING, ConnectionState.CONNECTED)
