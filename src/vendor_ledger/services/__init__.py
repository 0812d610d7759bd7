"""Vendor ledger services."""

from vendor_ledger.services.wallet_projection import MonthlyEarning, WalletTotals
from vendor_ledger.services.ledger_service import (
    Balance,
    LedgerService,
    PostResult,
    WalletCheck,
    WalletSummary,
)
from vendor_ledger.services.reconciliation import (
    LedgerStep,
    ReconciliationResult,
    ReconciliationService,
    WalletLedger,
)
from vendor_ledger.services.state_machine import (
    AssignmentStateMachine,
    PublicStatus,
    VendorStatus,
)
from vendor_ledger.services.assignment_service import AssignmentService, TransitionResult
from vendor_ledger.services.auto_reject import AutoRejectScheduler, SweepResult

__all__ = [
    # Ledger
    "LedgerService",
    "Balance",
    "PostResult",
    "WalletCheck",
    "WalletSummary",
    "WalletTotals",
    "MonthlyEarning",
    # Assignment
    "AssignmentStateMachine",
    "AssignmentService",
    "TransitionResult",
    "VendorStatus",
    "PublicStatus",
    # Scheduler
    "AutoRejectScheduler",
    "SweepResult",
    # Reconciliation
    "LedgerStep",
    "ReconciliationService",
    "ReconciliationResult",
    "WalletLedger",
]
