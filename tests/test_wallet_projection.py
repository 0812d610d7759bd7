"""Tests for the wallet totals fold. Pure, no database."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from vendor_ledger.services.wallet_projection import (
    WalletTotals,
    audit_chain,
    fold,
    monthly_earnings,
    next_balance,
)


@dataclass
class Entry:
    type: str
    amount: Decimal
    penalty_kind: str | None = None
    sequence: int = 0
    reference: str = ""
    balance_before: Decimal = Decimal("0")
    balance_after: Decimal = Decimal("0")
    created_at: datetime = datetime(2024, 1, 1)


def chained(*entries: Entry) -> list[Entry]:
    """Fill in sequence and balance links the way the ledger would."""
    balance = Decimal("0")
    for i, entry in enumerate(entries, start=1):
        entry.sequence = i
        entry.reference = f"X_{i}"
        entry.balance_before = balance
        entry.balance_after = next_balance(balance, entry.amount)
        balance = entry.balance_after
    return list(entries)


class TestNextBalance:
    def test_credit_adds(self):
        assert next_balance(Decimal("10"), Decimal("5")) == Decimal("15")

    def test_debit_floors_at_zero(self):
        assert next_balance(Decimal("10"), Decimal("-25")) == Decimal("0")

    def test_zero_amount_is_noop(self):
        assert next_balance(Decimal("10"), Decimal("0")) == Decimal("10")


class TestFold:
    """Rebuilding totals from the log."""

    def test_empty_log(self):
        assert fold([]) == WalletTotals()

    def test_counters_by_type(self):
        totals = fold(
            [
                Entry("deposit", Decimal("500")),
                Entry("earning", Decimal("575")),
                Entry("penalty", Decimal("-100"), "rejection"),
                Entry("penalty", Decimal("-100"), "auto_rejection"),
                Entry("penalty", Decimal("-100"), "cancellation"),
                Entry("task_acceptance_fee", Decimal("-25")),
                Entry("cash_collection", Decimal("-50")),
                Entry("refund", Decimal("100")),
                Entry("withdrawal", Decimal("-200")),
                Entry("manual_adjustment", Decimal("3")),
            ]
        )

        assert totals.current_balance == Decimal("603")
        assert totals.total_deposits == Decimal("500")
        assert totals.total_earnings == Decimal("575")
        assert totals.total_penalties == Decimal("300")
        assert totals.total_rejection_penalties == Decimal("200")
        assert totals.total_cancellation_penalties == Decimal("100")
        assert totals.total_task_acceptance_fees == Decimal("25")
        assert totals.total_cash_collections == Decimal("50")
        assert totals.total_refunds == Decimal("100")
        assert totals.total_withdrawals == Decimal("200")
        assert totals.total_tasks_completed == 1
        assert totals.total_tasks_rejected == 2
        assert totals.total_tasks_cancelled == 1

    def test_penalty_totals_record_full_amount_even_when_floored(self):
        totals = fold([Entry("deposit", Decimal("30")), Entry("penalty", Decimal("-100"), "rejection")])

        assert totals.current_balance == Decimal("0")
        assert totals.total_penalties == Decimal("100")

    def test_diff_names_drifted_fields(self):
        cached = WalletTotals(current_balance=Decimal("10"), total_tasks_completed=2)
        derived = WalletTotals(current_balance=Decimal("10"), total_tasks_completed=1)

        assert cached.diff(derived) == {"total_tasks_completed": (2, 1)}


class TestAuditChain:
    def test_intact_chain(self):
        log = chained(
            Entry("deposit", Decimal("100")),
            Entry("penalty", Decimal("-150"), "rejection"),
            Entry("earning", Decimal("40")),
        )
        assert audit_chain(log) == []

    def test_broken_link_reported(self):
        log = chained(Entry("deposit", Decimal("100")), Entry("earning", Decimal("40")))
        log[1].balance_before = Decimal("90")

        problems = audit_chain(log)

        assert len(problems) == 2
        assert problems[0].startswith("#2 X_2: balance_before 90")

    def test_wrong_balance_after_reported(self):
        log = chained(Entry("deposit", Decimal("100")))
        log[0].balance_after = Decimal("101")

        assert audit_chain(log) == ["#1 X_1: balance_after 101 != 100"]


class TestMonthlyEarnings:
    def test_groups_earnings_by_month_oldest_first(self):
        log = [
            Entry("earning", Decimal("50"), created_at=datetime(2024, 2, 3)),
            Entry("earning", Decimal("10"), created_at=datetime(2023, 12, 31)),
            Entry("penalty", Decimal("-100"), "rejection", created_at=datetime(2024, 2, 4)),
            Entry("earning", Decimal("25"), created_at=datetime(2024, 2, 28)),
        ]

        months = monthly_earnings(log)

        assert [(m.year, m.month, m.amount) for m in months] == [
            (2023, 12, Decimal("10")),
            (2024, 2, Decimal("75")),
        ]
