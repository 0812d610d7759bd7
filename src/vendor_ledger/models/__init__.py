"""ORM models."""

from vendor_ledger.models.base import Base
from vendor_ledger.models.reconciliation import LedgerReconciliationItem
from vendor_ledger.models.wallet import (
    PaymentMethod,
    PenaltyKind,
    TransactionStatus,
    TransactionType,
    VendorWallet,
    WalletTransaction,
)
from vendor_ledger.models.work_unit import AssignmentRecord, WorkUnit

__all__ = [
    "Base",
    "PaymentMethod",
    "PenaltyKind",
    "TransactionStatus",
    "TransactionType",
    "VendorWallet",
    "WalletTransaction",
    "WorkUnit",
    "AssignmentRecord",
    "LedgerReconciliationItem",
]
