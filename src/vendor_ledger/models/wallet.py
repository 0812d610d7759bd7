"""Vendor wallet models.

A wallet holds one running balance per vendor plus an append-only log of
transactions. The aggregate counters on the wallet are a cached projection
of that log and can be rebuilt from it at any time.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vendor_ledger.clock import utc_now
from vendor_ledger.errors import ImmutableRecordError
from vendor_ledger.models.base import Base

ZERO = Decimal("0")


class TransactionType(str, Enum):
    """Wallet transaction types."""

    EARNING = "earning"
    PENALTY = "penalty"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TASK_ACCEPTANCE_FEE = "task_acceptance_fee"
    CASH_COLLECTION = "cash_collection"
    REFUND = "refund"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class PaymentMethod(str, Enum):
    """How money for a transaction moved."""

    ONLINE = "online"
    CASH = "cash"
    SYSTEM = "system"


class PenaltyKind(str, Enum):
    """Reason a penalty was posted."""

    REJECTION = "rejection"
    CANCELLATION = "cancellation"
    AUTO_REJECTION = "auto_rejection"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


REFERENCE_PREFIXES = {
    TransactionType.EARNING: "EARN",
    TransactionType.PENALTY: "PEN",
    TransactionType.DEPOSIT: "DEP",
    TransactionType.WITHDRAWAL: "WTH",
    TransactionType.TASK_ACCEPTANCE_FEE: "FEE",
    TransactionType.CASH_COLLECTION: "CASH",
    TransactionType.REFUND: "REF",
    TransactionType.MANUAL_ADJUSTMENT: "ADJ",
}


class VendorWallet(Base):
    """One wallet per vendor, keyed by vendor identifier."""

    __tablename__ = "vendor_wallet"

    wallet_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    current_balance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    security_deposit: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    # Cached projection of the transaction log
    total_earnings: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_penalties: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_rejection_penalties: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_cancellation_penalties: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_deposits: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_withdrawals: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_task_acceptance_fees: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_cash_collections: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_refunds: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_tasks_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tasks_rejected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tasks_cancelled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_transaction_at: Mapped[datetime | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="vendor_wallet_balance_ck"),
        CheckConstraint("security_deposit >= 0", name="vendor_wallet_deposit_ck"),
    )

    transactions: Mapped[list[WalletTransaction]] = relationship(
        "WalletTransaction",
        back_populates="wallet",
        order_by="WalletTransaction.sequence",
    )

    @property
    def available_for_withdrawal(self) -> Decimal:
        """Balance above the security deposit."""
        return max(ZERO, self.current_balance - self.security_deposit)


class WalletTransaction(Base):
    """Append-only wallet entry.

    CRITICAL: never updated or deleted after insert. ORM hooks below refuse
    both; corrections are posted as new entries.
    """

    __tablename__ = "wallet_transaction"

    transaction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    wallet_id: Mapped[UUID] = mapped_column(
        ForeignKey("vendor_wallet.wallet_id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    reference: Mapped[str] = mapped_column(String(96), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    case_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    billing_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    spare_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    travel_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    booking_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    gst_included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gst_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    calculated_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    penalty_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TransactionStatus.COMPLETED.value
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    balance_before: Mapped[Decimal] = mapped_column(nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(nullable=False)
    processed_by: Mapped[str] = mapped_column(String(16), nullable=False, default="system")
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            """type IN (
                'earning', 'penalty', 'deposit', 'withdrawal',
                'task_acceptance_fee', 'cash_collection', 'refund', 'manual_adjustment'
            )""",
            name="wallet_transaction_type_ck",
        ),
        CheckConstraint(
            "payment_method IN ('online', 'cash', 'system')",
            name="wallet_transaction_payment_method_ck",
        ),
        CheckConstraint("balance_after >= 0", name="wallet_transaction_balance_ck"),
        UniqueConstraint("wallet_id", "idempotency_key", name="wallet_transaction_idem_uq"),
        UniqueConstraint("wallet_id", "sequence", name="wallet_transaction_seq_uq"),
        Index("wallet_transaction_by_case", "wallet_id", "case_id", "type"),
    )

    wallet: Mapped[VendorWallet] = relationship("VendorWallet", back_populates="transactions")

    @property
    def is_debit(self) -> bool:
        return self.amount < 0


@event.listens_for(WalletTransaction, "before_update")
def _refuse_transaction_update(mapper, connection, target) -> None:
    raise ImmutableRecordError(
        f"wallet_transaction {target.transaction_id} is append-only"
    )


@event.listens_for(WalletTransaction, "before_delete")
def _refuse_transaction_delete(mapper, connection, target) -> None:
    raise ImmutableRecordError(
        f"wallet_transaction {target.transaction_id} is append-only"
    )
