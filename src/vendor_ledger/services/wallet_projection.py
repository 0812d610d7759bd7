"""Wallet totals derived from the transaction log.

The log is the source of truth. The counters stored on VendorWallet are a
cached projection maintained by applying each new entry with the same
``apply_entry`` step used here to rebuild them from scratch.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, Protocol

from vendor_ledger.models.wallet import PenaltyKind, TransactionType

ZERO = Decimal("0")


class LedgerEntry(Protocol):
    """Anything shaped like a WalletTransaction."""

    type: str
    amount: Decimal
    penalty_kind: str | None


@dataclass
class WalletTotals:
    """Balance and aggregate counters for one wallet.

    Field names match the cached columns on VendorWallet.
    """

    current_balance: Decimal = ZERO
    total_earnings: Decimal = ZERO
    total_penalties: Decimal = ZERO
    total_rejection_penalties: Decimal = ZERO
    total_cancellation_penalties: Decimal = ZERO
    total_deposits: Decimal = ZERO
    total_withdrawals: Decimal = ZERO
    total_task_acceptance_fees: Decimal = ZERO
    total_cash_collections: Decimal = ZERO
    total_refunds: Decimal = ZERO
    total_tasks_completed: int = 0
    total_tasks_rejected: int = 0
    total_tasks_cancelled: int = 0

    @classmethod
    def of(cls, wallet: Any) -> WalletTotals:
        """Read the cached projection off a wallet row."""
        return cls(**{f.name: getattr(wallet, f.name) for f in fields(cls)})

    def store(self, wallet: Any) -> None:
        """Write the projection onto a wallet row."""
        for f in fields(self):
            setattr(wallet, f.name, getattr(self, f.name))

    def diff(self, other: WalletTotals) -> dict[str, tuple[Any, Any]]:
        """Fields whose values differ, as {name: (self, other)}."""
        return {
            f.name: (getattr(self, f.name), getattr(other, f.name))
            for f in fields(self)
            if getattr(self, f.name) != getattr(other, f.name)
        }


@dataclass(frozen=True)
class MonthlyEarning:
    year: int
    month: int
    amount: Decimal


def next_balance(balance: Decimal, amount: Decimal) -> Decimal:
    """Balance after applying a signed amount; deductions floor at zero."""
    if amount >= 0:
        return balance + amount
    return max(ZERO, balance + amount)


def apply_entry(totals: WalletTotals, entry: LedgerEntry) -> WalletTotals:
    """Fold one entry into the running totals (mutates and returns them)."""
    amount = entry.amount
    totals.current_balance = next_balance(totals.current_balance, amount)

    kind = entry.type
    if kind == TransactionType.EARNING.value:
        totals.total_earnings += amount
        totals.total_tasks_completed += 1
    elif kind == TransactionType.PENALTY.value:
        penalty = -amount
        totals.total_penalties += penalty
        if entry.penalty_kind in (PenaltyKind.REJECTION.value, PenaltyKind.AUTO_REJECTION.value):
            totals.total_tasks_rejected += 1
            totals.total_rejection_penalties += penalty
        elif entry.penalty_kind == PenaltyKind.CANCELLATION.value:
            totals.total_tasks_cancelled += 1
            totals.total_cancellation_penalties += penalty
    elif kind == TransactionType.DEPOSIT.value:
        totals.total_deposits += amount
    elif kind == TransactionType.WITHDRAWAL.value:
        totals.total_withdrawals += -amount
    elif kind == TransactionType.TASK_ACCEPTANCE_FEE.value:
        totals.total_task_acceptance_fees += -amount
    elif kind == TransactionType.CASH_COLLECTION.value:
        totals.total_cash_collections += -amount
    elif kind == TransactionType.REFUND.value:
        totals.total_refunds += amount
    # manual adjustments move the balance only

    return totals


def fold(entries: Iterable[LedgerEntry]) -> WalletTotals:
    """Rebuild wallet totals from an ordered transaction log."""
    totals = WalletTotals()
    for entry in entries:
        apply_entry(totals, entry)
    return totals


def audit_chain(entries: Iterable[Any]) -> list[str]:
    """Check that balance_before/balance_after link up entry to entry.

    Returns a list of problems (empty if the chain is intact).
    """
    problems: list[str] = []
    balance = ZERO
    for entry in entries:
        if entry.balance_before != balance:
            problems.append(
                f"#{entry.sequence} {entry.reference}: balance_before {entry.balance_before} "
                f"!= previous balance_after {balance}"
            )
        expected = next_balance(entry.balance_before, entry.amount)
        if entry.balance_after != expected:
            problems.append(
                f"#{entry.sequence} {entry.reference}: balance_after {entry.balance_after} "
                f"!= {expected}"
            )
        balance = entry.balance_after
    return problems


def monthly_earnings(entries: Iterable[Any]) -> list[MonthlyEarning]:
    """Per-month earning totals, oldest month first."""
    by_month: dict[tuple[int, int], Decimal] = {}
    for entry in entries:
        if entry.type != TransactionType.EARNING.value:
            continue
        key = (entry.created_at.year, entry.created_at.month)
        by_month[key] = by_month.get(key, ZERO) + entry.amount
    return [
        MonthlyEarning(year=year, month=month, amount=amount)
        for (year, month), amount in sorted(by_month.items())
    ]
