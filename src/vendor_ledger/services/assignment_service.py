"""Work unit assignment service - vendor-driven transitions and their ledger steps.

Each transition is a two-step saga:
1. The state change is validated, applied and flushed.
2. The ledger step (penalty, fee, earning) runs in a savepoint.

The state change is authoritative. If step 2 fails the transition still
stands, the posting is queued for reconciliation, and the failure comes
back on TransitionResult.ledger_error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from vendor_ledger.calculators.types import CompletionData
from vendor_ledger.clock import Clock, utc_now
from vendor_ledger.config import Settings, get_settings
from vendor_ledger.errors import (
    ConcurrencyError,
    StateError,
    ValidationError,
    WorkUnitNotFoundError,
)
from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.events.types import (
    DomainEvent,
    EventMetadata,
    PaymentConfirmed,
    TaskAccepted,
    TaskAssigned,
    TaskAutoRejected,
    TaskCancelled,
    TaskCompleted,
    TaskDeclined,
)
from vendor_ledger.models import (
    AssignmentRecord,
    LedgerReconciliationItem,
    WalletTransaction,
    WorkUnit,
)
from vendor_ledger.models.wallet import PaymentMethod, PenaltyKind
from vendor_ledger.services.reconciliation import (
    LedgerStep,
    StepOutcome,
    WalletLedger,
    run_ledger_step,
)
from vendor_ledger.services.state_machine import (
    AssignmentStateMachine,
    PaymentStatus,
    PublicStatus,
    VendorStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    """Outcome of a transition.

    ``transaction`` is the ledger entry the transition posted (or found
    already posted). ``ledger_error`` is set when the state change committed
    but its ledger step did not; the step is then queued as
    ``reconciliation_item``.
    """

    work_unit: WorkUnit
    transaction: WalletTransaction | None = None
    ledger_error: Exception | None = None
    reconciliation_item: LedgerReconciliationItem | None = None

    @property
    def ledger_ok(self) -> bool:
        return self.ledger_error is None

    @classmethod
    def of(cls, work_unit: WorkUnit, outcome: StepOutcome | None) -> TransitionResult:
        if outcome is None:
            return cls(work_unit=work_unit)
        return cls(
            work_unit=work_unit,
            transaction=outcome.transaction,
            ledger_error=outcome.error,
            reconciliation_item=outcome.reconciliation_item,
        )


class AssignmentService:
    """Drives work units through AssignmentStateMachine.

    Depends on the ledger only through the WalletLedger operations;
    the ledger knows nothing about work units. Flushes, never commits.
    """

    def __init__(
        self,
        db: Session,
        ledger: WalletLedger,
        *,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        emitter: EventEmitter | None = None,
    ):
        self.db = db
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.clock = clock
        self.emitter = emitter

    # ------------------------------------------------------------------
    # Work units
    # ------------------------------------------------------------------

    def create_work_unit(self, case_id: str, *, kind: str = "ticket", title: str = "") -> WorkUnit:
        """Register a ticket or booking so it can be assigned."""
        if not case_id:
            raise ValidationError("case_id is required")
        if kind not in ("ticket", "booking"):
            raise ValidationError(f"Unknown work unit kind '{kind}'")
        if self._find(case_id) is not None:
            raise ValidationError(f"Work unit '{case_id}' already exists")

        now = self.clock()
        unit = WorkUnit(
            case_id=case_id,
            kind=kind,
            title=title,
            status=PublicStatus.SUBMITTED.value,
            vendor_status=VendorStatus.UNASSIGNED.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(unit)
        self._flush()
        return unit

    def get_work_unit(self, case_id: str) -> WorkUnit:
        unit = self._find(case_id)
        if unit is None:
            raise WorkUnitNotFoundError(case_id)
        return unit

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def assign(
        self,
        case_id: str,
        vendor_id: str,
        *,
        assigned_by: str | None = None,
        notes: str = "",
    ) -> TransitionResult:
        """Hand a work unit to a vendor and start the response window."""
        if not vendor_id:
            raise ValidationError("vendor_id is required")
        unit = self._lock(case_id)
        AssignmentStateMachine.validate_for_transition(unit, VendorStatus.PENDING)

        now = self.clock()
        unit.assignment_seq += 1
        unit.assigned_vendor_id = vendor_id
        unit.assigned_at = now
        unit.assigned_by = assigned_by
        unit.response_deadline = now + timedelta(minutes=self.settings.response_window_minutes)
        unit.accepted_at = None
        unit.declined_at = None
        unit.decline_reason = None
        unit.vendor_status = VendorStatus.PENDING.value
        unit.updated_at = now
        unit.assignments.append(
            AssignmentRecord(
                sequence=unit.assignment_seq,
                vendor_id=vendor_id,
                assigned_at=now,
                assigned_by=assigned_by,
                status=AssignmentStateMachine.history_status(VendorStatus.PENDING).value,
                notes=notes or None,
                created_at=now,
            )
        )
        self._flush()

        logger.info(
            "Assigned %s to vendor %s (assignment %d, respond by %s)",
            case_id, vendor_id, unit.assignment_seq, unit.response_deadline,
        )
        self._emit(
            TaskAssigned(
                metadata=self._metadata(assigned_by, "admin"),
                case_id=case_id,
                vendor_id=vendor_id,
                assigned_by=assigned_by,
                response_deadline=unit.response_deadline,
            )
        )
        return TransitionResult(work_unit=unit)

    def accept(self, case_id: str, vendor_id: str) -> TransitionResult:
        """Vendor takes the job; posts the acceptance fee when configured."""
        unit = self._lock(case_id)
        AssignmentStateMachine.validate_for_transition(unit, VendorStatus.ACCEPTED, vendor_id)

        now = self.clock()
        unit.vendor_status = VendorStatus.ACCEPTED.value
        unit.accepted_at = now
        unit.response_deadline = None
        unit.status = PublicStatus.IN_PROGRESS.value
        unit.updated_at = now
        self._record_history(unit, VendorStatus.ACCEPTED)
        self._flush()
        logger.info("Vendor %s accepted %s", vendor_id, case_id)

        outcome = None
        if self.settings.acceptance_fee_enabled:
            outcome = self._run_step(
                LedgerStep.acceptance_fee(
                    vendor_id, case_id, self.settings.task_acceptance_fee, unit.assignment_seq
                ),
                actor_id=vendor_id,
            )

        self._emit(
            TaskAccepted(metadata=self._metadata(vendor_id, "vendor"), case_id=case_id, vendor_id=vendor_id)
        )
        return TransitionResult.of(unit, outcome)

    def decline(self, case_id: str, vendor_id: str, *, reason: str = "") -> TransitionResult:
        """Vendor refuses the job. Closes the unit and always penalizes."""
        unit = self._lock(case_id)
        AssignmentStateMachine.validate_for_transition(unit, VendorStatus.DECLINED, vendor_id)
        kind = AssignmentStateMachine.penalty_for(unit.vendor_status, VendorStatus.DECLINED)

        now = self.clock()
        unit.vendor_status = VendorStatus.DECLINED.value
        unit.declined_at = now
        unit.decline_reason = reason
        unit.response_deadline = None
        unit.status = PublicStatus.CANCELLED.value
        unit.updated_at = now
        # assigned_vendor_id stays so the vendor still sees the unit as declined
        self._record_history(unit, VendorStatus.DECLINED, notes=reason)
        self._flush()
        logger.info("Vendor %s declined %s: %s", vendor_id, case_id, reason or "no reason")

        amount = self._penalty_amount(kind)
        outcome = self._run_step(
            LedgerStep.penalty(vendor_id, case_id, kind.value, amount, unit.assignment_seq),
            actor_id=vendor_id,
        )
        self._emit(
            TaskDeclined(
                metadata=self._metadata(vendor_id, "vendor"),
                case_id=case_id,
                vendor_id=vendor_id,
                reason=reason,
                penalty_amount=amount,
            )
        )
        return TransitionResult.of(unit, outcome)

    def complete(
        self, case_id: str, vendor_id: str, completion: CompletionData | dict[str, Any]
    ) -> TransitionResult:
        """Vendor finishes the job.

        Cash jobs resolve immediately; online jobs stay in progress until the
        payment is confirmed. No ledger step: money moves in settle_completion.
        """
        if isinstance(completion, dict):
            completion = CompletionData.from_dict(completion)
        method = getattr(completion.payment_method, "value", completion.payment_method)
        if method not in (PaymentMethod.ONLINE.value, PaymentMethod.CASH.value):
            raise ValidationError(f"Unknown payment method '{completion.payment_method}'")
        billing = completion.billing()
        if billing.spare_amount + billing.travel_amount > billing.billing_amount:
            raise ValidationError("Spare and travel amounts exceed the billing amount")

        unit = self._lock(case_id)
        AssignmentStateMachine.validate_for_transition(unit, VendorStatus.COMPLETED, vendor_id)

        now = self.clock()
        completion.payment_method = method
        completion.completed_at = completion.completed_at or now
        unit.vendor_status = VendorStatus.COMPLETED.value
        unit.completed_at = completion.completed_at
        unit.completion_data = completion.to_dict()
        unit.billing_amount = billing.billing_amount
        unit.payment_mode = method
        if method == PaymentMethod.CASH.value:
            unit.payment_status = PaymentStatus.COLLECTED.value
            unit.status = PublicStatus.RESOLVED.value
            unit.resolved_at = now
        else:
            unit.payment_status = PaymentStatus.PENDING.value
            unit.status = PublicStatus.IN_PROGRESS.value
        unit.updated_at = now
        self._record_history(unit, VendorStatus.COMPLETED)
        self._flush()
        logger.info("Vendor %s completed %s (%s, billed %s)", vendor_id, case_id, method, billing.billing_amount)

        self._emit(
            TaskCompleted(
                metadata=self._metadata(vendor_id, "vendor"),
                case_id=case_id,
                vendor_id=vendor_id,
                payment_method=method,
                billing_amount=billing.billing_amount,
            )
        )
        return TransitionResult(work_unit=unit)

    def cancel(self, case_id: str, vendor_id: str, *, reason: str = "") -> TransitionResult:
        """Vendor walks away from an accepted job. Closes the unit and penalizes."""
        unit = self._lock(case_id)
        AssignmentStateMachine.validate_for_transition(unit, VendorStatus.CANCELLED, vendor_id)
        kind = AssignmentStateMachine.penalty_for(unit.vendor_status, VendorStatus.CANCELLED)

        now = self.clock()
        unit.cancellation_data = {
            "cancelled_by_vendor": {
                "vendor_id": vendor_id,
                "cancelled_at": now.isoformat(),
                "reason": reason,
                "accepted_at": unit.accepted_at.isoformat() if unit.accepted_at else None,
            }
        }
        unit.vendor_status = VendorStatus.CANCELLED.value
        unit.status = PublicStatus.CLOSED.value
        unit.updated_at = now
        self._record_history(unit, VendorStatus.CANCELLED, notes=reason)
        self._flush()
        logger.info("Vendor %s cancelled %s: %s", vendor_id, case_id, reason or "no reason")

        amount = self._penalty_amount(kind)
        outcome = self._run_step(
            LedgerStep.penalty(vendor_id, case_id, kind.value, amount, unit.assignment_seq),
            actor_id=vendor_id,
        )
        self._emit(
            TaskCancelled(
                metadata=self._metadata(vendor_id, "vendor"),
                case_id=case_id,
                vendor_id=vendor_id,
                reason=reason,
                penalty_amount=amount,
            )
        )
        return TransitionResult.of(unit, outcome)

    def auto_reject(self, case_id: str, now: datetime | None = None) -> TransitionResult | None:
        """Return an overdue unit to the pool and penalize the silent vendor.

        Returns None if the unit no longer qualifies (already answered,
        deadline moved, or a concurrent sweep got there first).
        """
        now = now or self.clock()
        unit = self._lock(case_id)
        if (
            unit.vendor_status != VendorStatus.PENDING.value
            or unit.assigned_vendor_id is None
            or unit.response_deadline is None
            or unit.response_deadline > now
        ):
            return None
        AssignmentStateMachine.validate_transition(unit.vendor_status, VendorStatus.UNASSIGNED)
        kind = AssignmentStateMachine.penalty_for(unit.vendor_status, VendorStatus.UNASSIGNED)

        vendor_id = unit.assigned_vendor_id
        deadline = unit.response_deadline
        seq = unit.assignment_seq
        self._record_history(unit, VendorStatus.UNASSIGNED, notes="No response before deadline")
        unit.vendor_status = VendorStatus.UNASSIGNED.value
        unit.status = PublicStatus.AWAITING_ASSIGNMENT.value
        unit.assigned_vendor_id = None
        unit.assigned_at = None
        unit.assigned_by = None
        unit.response_deadline = None
        unit.updated_at = now
        self._flush()
        logger.info("Auto-rejected %s for vendor %s (deadline %s)", case_id, vendor_id, deadline)

        amount = self._penalty_amount(kind)
        outcome = self._run_step(
            LedgerStep.penalty(vendor_id, case_id, kind.value, amount, seq),
            actor_id=None,
        )
        self._emit(
            TaskAutoRejected(
                metadata=self._metadata(None, "scheduler"),
                case_id=case_id,
                vendor_id=vendor_id,
                response_deadline=deadline,
                penalty_amount=amount,
            )
        )
        return TransitionResult.of(unit, outcome)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def confirm_online_payment(
        self, case_id: str, *, payment_reference: str | None = None
    ) -> TransitionResult:
        """Mark an online payment as received, resolve the unit and credit the vendor."""
        unit = self._lock(case_id)
        if unit.vendor_status != VendorStatus.COMPLETED.value:
            raise StateError(unit.vendor_status, "payment_confirmed", "work unit is not completed")
        if unit.payment_mode != PaymentMethod.ONLINE.value:
            raise StateError(unit.payment_mode or "none", "payment_confirmed", "not an online payment")

        if unit.payment_status != PaymentStatus.COLLECTED.value:
            now = self.clock()
            unit.payment_status = PaymentStatus.COLLECTED.value
            unit.payment_reference = payment_reference
            unit.status = PublicStatus.RESOLVED.value
            unit.resolved_at = now
            unit.updated_at = now
            self._flush()
            logger.info("Online payment confirmed for %s (%s)", case_id, payment_reference)
            self._emit(
                PaymentConfirmed(
                    metadata=self._metadata(None, "system"),
                    case_id=case_id,
                    vendor_id=unit.assigned_vendor_id,
                    payment_reference=payment_reference,
                )
            )

        return self._settle(unit)

    def settle_completion(self, case_id: str) -> TransitionResult:
        """Post the ledger entry a completed unit is owed.

        Cash: deduct the platform share of the cash the vendor collected.
        Online: credit the earning, once the payment is confirmed.
        Safe to call repeatedly; the ledger deduplicates per case.
        """
        unit = self._lock(case_id)
        if unit.vendor_status != VendorStatus.COMPLETED.value:
            raise StateError(unit.vendor_status, "settled", "work unit is not completed")
        if unit.payment_status != PaymentStatus.COLLECTED.value:
            raise StateError(
                unit.payment_status or "none", "settled", "online payment not confirmed yet"
            )
        return self._settle(unit)

    def _settle(self, unit: WorkUnit) -> TransitionResult:
        completion = CompletionData.from_dict(unit.completion_data or {})
        billing = completion.billing()
        vendor_id = unit.assigned_vendor_id
        if unit.payment_mode == PaymentMethod.CASH.value:
            step = LedgerStep.cash_collection(vendor_id, unit.case_id, billing)
        else:
            step = LedgerStep.earning(vendor_id, unit.case_id, billing, PaymentMethod.ONLINE.value)
        return TransitionResult.of(unit, self._run_step(step, actor_id=None))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_step(self, step: LedgerStep, *, actor_id: str | None) -> StepOutcome:
        return run_ledger_step(
            self.db, self.ledger, step, emitter=self.emitter, clock=self.clock, actor_id=actor_id
        )

    def _penalty_amount(self, kind: PenaltyKind) -> Decimal:
        return {
            PenaltyKind.REJECTION: self.settings.rejection_penalty,
            PenaltyKind.CANCELLATION: self.settings.cancellation_penalty,
            PenaltyKind.AUTO_REJECTION: self.settings.auto_rejection_penalty,
        }[kind]

    def _record_history(
        self, unit: WorkUnit, to_status: VendorStatus, notes: str | None = None
    ) -> None:
        # Loading the history must not flush the unit ahead of _flush()
        with self.db.no_autoflush:
            record = unit.current_assignment()
        if record is None:
            logger.warning("No history entry for %s assignment %d", unit.case_id, unit.assignment_seq)
            return
        record.status = AssignmentStateMachine.history_status(to_status).value
        if notes:
            record.notes = notes

    def _find(self, case_id: str) -> WorkUnit | None:
        result = self.db.execute(select(WorkUnit).where(WorkUnit.case_id == case_id))
        return result.scalar_one_or_none()

    def _lock(self, case_id: str) -> WorkUnit:
        """Load a work unit for a transition, refreshed and row-locked."""
        result = self.db.execute(
            select(WorkUnit)
            .where(WorkUnit.case_id == case_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        unit = result.scalar_one_or_none()
        if unit is None:
            raise WorkUnitNotFoundError(case_id)
        return unit

    def _flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as e:
            raise ConcurrencyError("Work unit was modified concurrently; retry the operation") from e

    def _metadata(self, actor_id: str | None, actor_type: str) -> EventMetadata:
        return EventMetadata.create(actor_id=actor_id, actor_type=actor_type, timestamp=self.clock())

    def _emit(self, event: DomainEvent) -> None:
        if self.emitter is not None:
            self.emitter.emit(event)
