"""Vendor assignment state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from vendor_ledger.errors import AuthorizationError, StateError
from vendor_ledger.models.wallet import PenaltyKind

if TYPE_CHECKING:
    from vendor_ledger.models import WorkUnit


class VendorStatus(str, Enum):
    """Vendor-side status of a work unit."""

    UNASSIGNED = "Unassigned"
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    COMPLETED = "Completed"
    DECLINED = "Declined"
    CANCELLED = "Cancelled"


class PublicStatus(str, Enum):
    """Customer-facing status the transitions write through to."""

    SUBMITTED = "Submitted"
    AWAITING_ASSIGNMENT = "Awaiting Assignment"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CANCELLED = "Cancelled"
    CLOSED = "Closed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COLLECTED = "collected"


class HistoryStatus(str, Enum):
    """Status recorded on an assignment history entry."""

    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    AUTO_REJECTED = "auto_rejected"


class AssignmentStateMachine:
    """State machine for vendor status transitions.

    Allowed transitions:
    - Unassigned → Pending (assign)
    - Pending → Accepted (accept)
    - Pending → Declined (decline, penalized)
    - Pending → Unassigned (auto-reject back to the pool, penalized)
    - Accepted → Completed (complete)
    - Accepted → Cancelled (cancel, penalized)
    - Declined → Pending (re-assign)
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        VendorStatus.UNASSIGNED: [VendorStatus.PENDING],
        VendorStatus.PENDING: [
            VendorStatus.ACCEPTED,
            VendorStatus.DECLINED,
            VendorStatus.UNASSIGNED,
        ],
        VendorStatus.ACCEPTED: [VendorStatus.COMPLETED, VendorStatus.CANCELLED],
        VendorStatus.DECLINED: [VendorStatus.PENDING],
        VendorStatus.COMPLETED: [],  # Terminal state
        VendorStatus.CANCELLED: [],  # Terminal state
    }

    # Transitions that post a penalty, and which kind
    PENALTIES: dict[tuple[str, str], PenaltyKind] = {
        (VendorStatus.PENDING, VendorStatus.DECLINED): PenaltyKind.REJECTION,
        (VendorStatus.PENDING, VendorStatus.UNASSIGNED): PenaltyKind.AUTO_REJECTION,
        (VendorStatus.ACCEPTED, VendorStatus.CANCELLED): PenaltyKind.CANCELLATION,
    }

    # History entry status written when entering each vendor status
    HISTORY: dict[str, HistoryStatus] = {
        VendorStatus.PENDING: HistoryStatus.ASSIGNED,
        VendorStatus.ACCEPTED: HistoryStatus.ACCEPTED,
        VendorStatus.DECLINED: HistoryStatus.DECLINED,
        VendorStatus.COMPLETED: HistoryStatus.COMPLETED,
        VendorStatus.CANCELLED: HistoryStatus.CANCELLED,
        VendorStatus.UNASSIGNED: HistoryStatus.AUTO_REJECTED,
    }

    TERMINAL = {VendorStatus.COMPLETED, VendorStatus.CANCELLED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising StateError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise StateError(from_status, to_status)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def penalty_for(cls, from_status: str, to_status: str) -> PenaltyKind | None:
        """Penalty kind a transition posts, or None."""
        return cls.PENALTIES.get((VendorStatus(from_status), VendorStatus(to_status)))

    @classmethod
    def history_status(cls, to_status: str) -> HistoryStatus:
        return cls.HISTORY[VendorStatus(to_status)]

    @classmethod
    def authorize(cls, work_unit: WorkUnit, vendor_id: str) -> None:
        """Raise AuthorizationError unless vendor_id is the assigned vendor."""
        if not vendor_id or work_unit.assigned_vendor_id != vendor_id:
            raise AuthorizationError(work_unit.case_id, vendor_id)

    @classmethod
    def validate_for_transition(
        cls, work_unit: WorkUnit, to_status: str, vendor_id: str | None = None
    ) -> None:
        """Check actor and state for a vendor-driven transition.

        Assignment (to Pending) is an admin action and skips the actor
        check. Every other vendor-driven transition requires the actor to
        be the assigned vendor; that is checked before the state so a
        stranger learns nothing about the unit.
        """
        if to_status != VendorStatus.PENDING:
            cls.authorize(work_unit, vendor_id or "")
        cls.validate_transition(work_unit.vendor_status, to_status)
