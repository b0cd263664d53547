"""
Transition table tests for work orders and operations.
"""

import pytest

from src.core.errors import ErrorCode, InvalidTransitionError, ValidationFailed
from src.core.state_machine import (
    can_transition,
    get_valid_transitions,
    is_terminal,
    validate_transition,
)


class TestWorkOrderTransitions:

    def test_planned_moves(self):
        """Test planned can start or be cancelled, nothing else."""
        assert get_valid_transitions("work_order", "planned") == ["active", "cancelled"]

    def test_blocked_only_resumes_or_cancels(self):
        """Test blocked cannot jump to done or shipped."""
        assert not can_transition("work_order", "blocked", "done")
        assert can_transition("work_order", "blocked", "active")

    def test_terminal_states(self):
        """Test shipped and cancelled are terminal."""
        assert is_terminal("work_order", "shipped")
        assert is_terminal("work_order", "cancelled")
        assert not is_terminal("work_order", "active")

    def test_invalid_transition_lists_valid(self):
        """Test the error names the legal targets."""
        with pytest.raises(InvalidTransitionError) as exc:
            validate_transition("work_order", "planned", "shipped")
        assert exc.value.code == ErrorCode.INVALID_TRANSITION
        assert exc.value.details["valid"] == ["active", "cancelled"]

    def test_terminal_error_message(self):
        """Test moving out of a terminal state says so."""
        with pytest.raises(InvalidTransitionError, match="terminal"):
            validate_transition("work_order", "shipped", "active")

    def test_hyphenated_entity_type(self):
        """Test the URL form work-order is accepted."""
        assert get_valid_transitions("work-order", "done") == ["shipped"]


class TestOperationTransitions:

    def test_in_progress_moves(self):
        """Test in_progress can finish, loop, block or be retried."""
        assert set(get_valid_transitions("operation", "in_progress")) == {
            "review", "done", "blocked", "rework", "todo"}

    def test_review_returns_to_todo(self):
        """Test a loop operation waiting on verification can pick up its next story."""
        assert can_transition("operation", "review", "todo")
        assert not can_transition("operation", "review", "in_progress")

    def test_done_is_terminal(self):
        """Test done operations never reopen."""
        assert get_valid_transitions("operation", "done") == []

    def test_todo_cannot_finish_directly(self):
        """Test todo must be claimed before it completes."""
        assert not can_transition("operation", "todo", "done")


class TestUnknownInputs:

    def test_unknown_state(self):
        """Test an unknown state is a validation error."""
        with pytest.raises(ValidationFailed):
            get_valid_transitions("work_order", "paused")

    def test_unknown_entity(self):
        """Test an unknown entity type is a validation error."""
        with pytest.raises(ValidationFailed):
            get_valid_transitions("station", "active")
