"""Tests for the vendor assignment state machine."""

from types import SimpleNamespace

import pytest

from vendor_ledger.errors import AuthorizationError, StateError
from vendor_ledger.models.wallet import PenaltyKind
from vendor_ledger.services.state_machine import (
    AssignmentStateMachine,
    HistoryStatus,
    VendorStatus,
)


def unit(vendor_status: str, vendor_id: str | None = "V1"):
    return SimpleNamespace(case_id="TK-1", vendor_status=vendor_status, assigned_vendor_id=vendor_id)


class TestAssignmentStateMachine:
    """Test state machine transitions."""

    def test_valid_transitions(self):
        """Test that valid transitions are allowed."""
        # Unassigned → Pending (assign)
        assert AssignmentStateMachine.can_transition("Unassigned", "Pending") is True

        # Pending → Accepted / Declined / Unassigned (auto-reject)
        assert AssignmentStateMachine.can_transition("Pending", "Accepted") is True
        assert AssignmentStateMachine.can_transition("Pending", "Declined") is True
        assert AssignmentStateMachine.can_transition("Pending", "Unassigned") is True

        # Accepted → Completed / Cancelled
        assert AssignmentStateMachine.can_transition("Accepted", "Completed") is True
        assert AssignmentStateMachine.can_transition("Accepted", "Cancelled") is True

        # Declined → Pending (re-assign)
        assert AssignmentStateMachine.can_transition("Declined", "Pending") is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        # Can't accept without an assignment
        assert AssignmentStateMachine.can_transition("Unassigned", "Accepted") is False

        # Can't complete before accepting
        assert AssignmentStateMachine.can_transition("Pending", "Completed") is False

        # Accepted can't be declined or re-assigned
        assert AssignmentStateMachine.can_transition("Accepted", "Declined") is False
        assert AssignmentStateMachine.can_transition("Accepted", "Pending") is False

        # Completed and Cancelled are terminal
        assert AssignmentStateMachine.can_transition("Completed", "Pending") is False
        assert AssignmentStateMachine.can_transition("Cancelled", "Pending") is False

        # Unknown statuses go nowhere
        assert AssignmentStateMachine.can_transition("Lost", "Pending") is False

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(StateError) as exc_info:
            AssignmentStateMachine.validate_transition("Completed", "Cancelled")

        assert exc_info.value.from_status == "Completed"
        assert exc_info.value.to_status == "Cancelled"

    def test_get_next_statuses(self):
        """Test getting valid next statuses."""
        assert AssignmentStateMachine.get_next_statuses("Accepted") == [
            VendorStatus.COMPLETED,
            VendorStatus.CANCELLED,
        ]
        assert AssignmentStateMachine.get_next_statuses("Completed") == []

    def test_is_terminal(self):
        assert AssignmentStateMachine.is_terminal("Completed") is True
        assert AssignmentStateMachine.is_terminal("Cancelled") is True
        assert AssignmentStateMachine.is_terminal("Declined") is False

    def test_penalties(self):
        """Decline, auto-reject and cancel are the penalized transitions."""
        assert AssignmentStateMachine.penalty_for("Pending", "Declined") is PenaltyKind.REJECTION
        assert AssignmentStateMachine.penalty_for("Pending", "Unassigned") is PenaltyKind.AUTO_REJECTION
        assert AssignmentStateMachine.penalty_for("Accepted", "Cancelled") is PenaltyKind.CANCELLATION
        assert AssignmentStateMachine.penalty_for("Pending", "Accepted") is None
        assert AssignmentStateMachine.penalty_for("Accepted", "Completed") is None

    def test_history_status(self):
        assert AssignmentStateMachine.history_status("Pending") is HistoryStatus.ASSIGNED
        assert AssignmentStateMachine.history_status("Unassigned") is HistoryStatus.AUTO_REJECTED


class TestAuthorization:
    """Only the assigned vendor may answer an assignment."""

    def test_assigned_vendor_passes(self):
        AssignmentStateMachine.validate_for_transition(unit("Pending"), "Accepted", "V1")

    def test_other_vendor_rejected(self):
        with pytest.raises(AuthorizationError) as exc_info:
            AssignmentStateMachine.validate_for_transition(unit("Pending"), "Accepted", "V2")

        assert exc_info.value.vendor_id == "V2"
        assert exc_info.value.case_id == "TK-1"

    def test_missing_actor_rejected(self):
        with pytest.raises(AuthorizationError):
            AssignmentStateMachine.validate_for_transition(unit("Pending"), "Declined")

    def test_actor_checked_before_state(self):
        """A stranger gets AuthorizationError even when the state is wrong too."""
        with pytest.raises(AuthorizationError):
            AssignmentStateMachine.validate_for_transition(unit("Completed"), "Accepted", "V2")

    def test_wrong_state_for_assigned_vendor(self):
        with pytest.raises(StateError):
            AssignmentStateMachine.validate_for_transition(unit("Completed"), "Cancelled", "V1")

    def test_assignment_skips_actor_check(self):
        AssignmentStateMachine.validate_for_transition(unit("Unassigned", None), "Pending")
