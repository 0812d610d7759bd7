"""Ledger reconciliation - postings owed after a committed transition.

A state transition is authoritative: when the ledger mutation that should
follow it fails (missing wallet, lock conflict, database error), the
transition still commits and the mutation is queued as a
LedgerReconciliationItem. Retries reuse the original idempotency key, so
an item can be retried any number of times and posts at most once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vendor_ledger.calculators.types import BillingBreakdown
from vendor_ledger.clock import Clock, utc_now
from vendor_ledger.errors import ValidationError, VendorLedgerError
from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.events.types import EventMetadata, LedgerPostingFailed
from vendor_ledger.models import LedgerReconciliationItem, WalletTransaction
from vendor_ledger.services.ledger_service import PostResult

logger = logging.getLogger(__name__)

PENALTY = "penalty"
TASK_ACCEPTANCE_FEE = "task_acceptance_fee"
EARNING = "earning"
CASH_COLLECTION = "cash_collection"


class WalletLedger(Protocol):
    """Ledger operations a state transition may trigger.

    LedgerService implements this; assignment code depends only on it.
    """

    def add_penalty(
        self,
        vendor_id: str,
        *,
        case_id: str,
        penalty_kind: str,
        amount: Decimal,
        idempotency_key: str | None = None,
    ) -> PostResult: ...

    def add_task_acceptance_fee(
        self, vendor_id: str, *, case_id: str, fee: Decimal, idempotency_key: str | None = None
    ) -> PostResult: ...

    def add_earning(
        self, vendor_id: str, *, case_id: str, billing: BillingBreakdown, payment_method: str
    ) -> PostResult: ...

    def add_cash_collection_deduction(
        self, vendor_id: str, *, case_id: str, billing: BillingBreakdown
    ) -> PostResult: ...


@dataclass(frozen=True)
class LedgerStep:
    """A ledger mutation that follows a state transition."""

    operation: str
    vendor_id: str
    case_id: str
    idempotency_key: str
    amount: Decimal | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def penalty(
        cls, vendor_id: str, case_id: str, kind: str, amount: Decimal, assignment_seq: int
    ) -> LedgerStep:
        return cls(
            operation=PENALTY,
            vendor_id=vendor_id,
            case_id=case_id,
            idempotency_key=f"penalty:{kind}:{case_id}:{assignment_seq}",
            amount=amount,
            payload={"penalty_kind": kind},
        )

    @classmethod
    def acceptance_fee(
        cls, vendor_id: str, case_id: str, fee: Decimal, assignment_seq: int
    ) -> LedgerStep:
        return cls(
            operation=TASK_ACCEPTANCE_FEE,
            vendor_id=vendor_id,
            case_id=case_id,
            idempotency_key=f"task_acceptance_fee:{case_id}:{assignment_seq}",
            amount=fee,
        )

    @classmethod
    def earning(
        cls, vendor_id: str, case_id: str, billing: BillingBreakdown, payment_method: str
    ) -> LedgerStep:
        return cls(
            operation=EARNING,
            vendor_id=vendor_id,
            case_id=case_id,
            idempotency_key=f"earning:{case_id}:{payment_method}",
            amount=billing.billing_amount,
            payload={"payment_method": payment_method, "billing": _billing_payload(billing)},
        )

    @classmethod
    def cash_collection(
        cls, vendor_id: str, case_id: str, billing: BillingBreakdown
    ) -> LedgerStep:
        return cls(
            operation=CASH_COLLECTION,
            vendor_id=vendor_id,
            case_id=case_id,
            idempotency_key=f"cash_collection:{case_id}",
            amount=billing.billing_amount,
            payload={"billing": _billing_payload(billing)},
        )

    @classmethod
    def from_item(cls, item: LedgerReconciliationItem) -> LedgerStep:
        return cls(
            operation=item.operation,
            vendor_id=item.vendor_id,
            case_id=item.case_id or "",
            idempotency_key=item.idempotency_key,
            amount=item.amount,
            payload=dict(item.payload_json or {}),
        )


@dataclass
class StepOutcome:
    """What happened to a ledger step run after a transition."""

    transaction: WalletTransaction | None = None
    is_new: bool = False
    error: Exception | None = None
    reconciliation_item: LedgerReconciliationItem | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def apply_step(ledger: WalletLedger, step: LedgerStep) -> PostResult:
    """Execute a ledger step against the ledger."""
    if step.operation == PENALTY:
        return ledger.add_penalty(
            step.vendor_id,
            case_id=step.case_id,
            penalty_kind=step.payload["penalty_kind"],
            amount=step.amount,
            idempotency_key=step.idempotency_key,
        )
    if step.operation == TASK_ACCEPTANCE_FEE:
        return ledger.add_task_acceptance_fee(
            step.vendor_id,
            case_id=step.case_id,
            fee=step.amount,
            idempotency_key=step.idempotency_key,
        )
    if step.operation == EARNING:
        return ledger.add_earning(
            step.vendor_id,
            case_id=step.case_id,
            billing=BillingBreakdown.of(**step.payload["billing"]),
            payment_method=step.payload["payment_method"],
        )
    if step.operation == CASH_COLLECTION:
        return ledger.add_cash_collection_deduction(
            step.vendor_id,
            case_id=step.case_id,
            billing=BillingBreakdown.of(**step.payload["billing"]),
        )
    raise ValidationError(f"Unknown ledger operation '{step.operation}'")


def run_ledger_step(
    db: Session,
    ledger: WalletLedger,
    step: LedgerStep,
    *,
    emitter: EventEmitter | None = None,
    clock: Clock = utc_now,
    actor_id: str | None = None,
) -> StepOutcome:
    """Run a ledger step inside a savepoint, queueing it on failure.

    Pending state changes are flushed before the savepoint opens, so a
    failed step rolls back only its own writes.
    """
    try:
        with db.begin_nested():
            result = apply_step(ledger, step)
    except (VendorLedgerError, SQLAlchemyError) as e:
        logger.error(
            "Ledger %s for vendor %s case %s failed, queued for reconciliation: %s",
            step.operation, step.vendor_id, step.case_id, e,
        )
        item = _queue(db, step, e, clock)
        if emitter is not None:
            emitter.emit(
                LedgerPostingFailed(
                    metadata=EventMetadata.create(actor_id=actor_id, timestamp=clock()),
                    vendor_id=step.vendor_id,
                    case_id=step.case_id,
                    operation=step.operation,
                    idempotency_key=step.idempotency_key,
                    error=str(e),
                )
            )
        return StepOutcome(error=e, reconciliation_item=item)

    return StepOutcome(transaction=result.transaction, is_new=result.is_new)


def _queue(
    db: Session, step: LedgerStep, error: Exception, clock: Clock
) -> LedgerReconciliationItem:
    existing = db.execute(
        select(LedgerReconciliationItem).where(
            LedgerReconciliationItem.vendor_id == step.vendor_id,
            LedgerReconciliationItem.idempotency_key == step.idempotency_key,
            LedgerReconciliationItem.status == "open",
        )
    ).scalar_one_or_none()
    if existing is not None:
        existing.attempts += 1
        existing.last_error = str(error)
        db.flush()
        return existing

    item = LedgerReconciliationItem(
        vendor_id=step.vendor_id,
        case_id=step.case_id,
        operation=step.operation,
        amount=step.amount,
        idempotency_key=step.idempotency_key,
        payload_json=step.payload,
        attempts=1,
        last_error=str(error),
        created_at=clock(),
    )
    db.add(item)
    db.flush()
    return item


@dataclass
class ReconciliationResult:
    """Result of a reconciliation run."""

    items_processed: int = 0
    items_resolved: int = 0
    items_failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether every processed item was posted."""
        return self.items_failed == 0


class ReconciliationService:
    """Retries ledger postings queued by failed saga steps."""

    def __init__(self, db: Session, ledger: WalletLedger, *, clock: Clock = utc_now):
        self.db = db
        self.ledger = ledger
        self.clock = clock

    def get_open_items(self, limit: int | None = None) -> list[LedgerReconciliationItem]:
        stmt = (
            select(LedgerReconciliationItem)
            .where(LedgerReconciliationItem.status == "open")
            .order_by(LedgerReconciliationItem.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def retry_pending(self, limit: int | None = None) -> ReconciliationResult:
        """Retry open items oldest first; each item in its own savepoint."""
        result = ReconciliationResult()
        for item in self.get_open_items(limit):
            result.items_processed += 1
            step = LedgerStep.from_item(item)
            try:
                with self.db.begin_nested():
                    posted = apply_step(self.ledger, step)
            except (VendorLedgerError, SQLAlchemyError) as e:
                item.attempts += 1
                item.last_error = str(e)
                result.items_failed += 1
                result.errors.append({"item_id": str(item.item_id), "error": str(e)})
                logger.warning(
                    "Reconciliation retry %d for %s (%s) failed: %s",
                    item.attempts, item.idempotency_key, item.vendor_id, e,
                )
                continue

            item.status = "resolved"
            item.resolved_at = self.clock()
            item.last_error = None
            result.items_resolved += 1
            logger.info(
                "Reconciled %s for vendor %s (%s)",
                item.idempotency_key,
                item.vendor_id,
                "posted" if posted.is_new else "already posted",
            )

        self.db.flush()
        return result


def _billing_payload(billing: BillingBreakdown) -> dict[str, Any]:
    return {
        "billing_amount": str(billing.billing_amount),
        "spare_amount": str(billing.spare_amount),
        "travel_amount": str(billing.travel_amount),
        "booking_amount": str(billing.booking_amount),
        "gst_included": billing.gst_included,
        "gst_amount": None if billing.gst_amount is None else str(billing.gst_amount),
    }
