"""Property-based tests for ledger and assignment invariants.

These tests use hypothesis to generate random sequences of operations
and verify that invariants always hold, regardless of the order or
combination of operations.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

from hypothesis import HealthCheck, given, settings, strategies as st
from sqlalchemy import select
from sqlalchemy.orm import Session

from tests.conftest import FakeClock, make_settings
from vendor_ledger.calculators.earning import (
    FLAT_FEE_POLICY,
    TWO_TIER_POLICY,
    calculate_cash_collection,
    calculate_earning,
)
from vendor_ledger.calculators.types import BillingBreakdown
from vendor_ledger.database import create_schema, get_engine, make_session_factory
from vendor_ledger.errors import InsufficientFundsError, VendorLedgerError
from vendor_ledger.models import WalletTransaction
from vendor_ledger.services.assignment_service import AssignmentService
from vendor_ledger.services.ledger_service import LedgerService
from vendor_ledger.services.state_machine import AssignmentStateMachine, VendorStatus

PROPERTY_SETTINGS = settings(
    max_examples=40,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)


@contextmanager
def fresh_session() -> Iterator[Session]:
    """Throwaway in-memory database per generated example."""
    engine = get_engine("sqlite://")
    create_schema(engine)
    try:
        with make_session_factory(engine)() as session:
            yield session
    finally:
        engine.dispose()


amounts = st.integers(min_value=1, max_value=1000).map(Decimal)

ledger_ops = st.lists(
    st.one_of(
        st.tuples(st.just("deposit"), amounts),
        st.tuples(
            st.just("penalty"),
            st.sampled_from(["rejection", "cancellation", "auto_rejection"]),
            amounts,
        ),
        st.tuples(
            st.just("earning"),
            st.integers(min_value=0, max_value=2000),
            st.sampled_from(["cash", "online"]),
        ),
        st.tuples(st.just("cash_collection"), st.integers(min_value=0, max_value=2000)),
        st.tuples(st.just("fee"), amounts),
        st.tuples(st.just("withdraw"), amounts),
        st.tuples(
            st.just("adjust"),
            st.integers(min_value=-500, max_value=500).filter(bool).map(Decimal),
        ),
    ),
    max_size=25,
)


class TestLedgerInvariants:
    """The wallet is always a faithful projection of its log."""

    @given(ops=ledger_ops)
    @PROPERTY_SETTINGS
    def test_balance_never_negative_and_totals_match_log(self, ops):
        with fresh_session() as db:
            ledger = LedgerService(db, policy=FLAT_FEE_POLICY, clock=FakeClock())
            ledger.open_wallet("V1", security_deposit=Decimal("100"))

            for i, op in enumerate(ops):
                case_id = f"TK-{i}"
                kind = op[0]
                if kind == "deposit":
                    ledger.add_deposit("V1", amount=op[1])
                elif kind == "penalty":
                    ledger.add_penalty("V1", case_id=case_id, penalty_kind=op[1], amount=op[2])
                elif kind == "earning":
                    ledger.add_earning(
                        "V1", case_id=case_id, billing=BillingBreakdown.of(op[1]), payment_method=op[2]
                    )
                elif kind == "cash_collection":
                    ledger.add_cash_collection_deduction(
                        "V1", case_id=case_id, billing=BillingBreakdown.of(op[1])
                    )
                elif kind == "fee":
                    ledger.add_task_acceptance_fee("V1", case_id=case_id, fee=op[1])
                elif kind == "withdraw":
                    before = ledger.get_balance("V1")
                    try:
                        ledger.add_withdrawal("V1", amount=op[1])
                    except InsufficientFundsError:
                        assert op[1] > before.available
                    else:
                        assert ledger.get_balance("V1").current >= before.security_deposit
                else:
                    ledger.add_manual_adjustment("V1", amount=op[1], description="correction")

                assert ledger.get_balance("V1").current >= 0

            check = ledger.verify_wallet("V1")
            assert check.ok, (check.drift, check.chain_problems)
            assert ledger.get_wallet("V1").transaction_count == len(ledger.get_transactions("V1"))

    @given(
        billing=st.integers(min_value=0, max_value=5000),
        method=st.sampled_from(["cash", "online"]),
        repeats=st.integers(min_value=2, max_value=5),
    )
    @PROPERTY_SETTINGS
    def test_earning_posts_at_most_once(self, billing, method, repeats):
        with fresh_session() as db:
            ledger = LedgerService(db, policy=FLAT_FEE_POLICY, clock=FakeClock())
            ledger.open_wallet("V1")
            results = [
                ledger.add_earning(
                    "V1", case_id="TK-1", billing=BillingBreakdown.of(billing), payment_method=method
                )
                for _ in range(repeats)
            ]

            assert [r.is_new for r in results] == [True] + [False] * (repeats - 1)
            assert len(ledger.get_transactions("V1")) == 1
            assert ledger.get_balance("V1").current == results[0].transaction.amount


class TestCalculatorInvariants:
    @given(
        billing=st.integers(min_value=0, max_value=100_000),
        spare_share=st.floats(min_value=0, max_value=1),
        travel_share=st.floats(min_value=0, max_value=1),
        method=st.sampled_from(["cash", "online"]),
        policy=st.sampled_from([FLAT_FEE_POLICY, TWO_TIER_POLICY]),
        gst_included=st.booleans(),
    )
    @settings(max_examples=200)
    def test_earning_never_negative(
        self, billing, spare_share, travel_share, method, policy, gst_included
    ):
        spare = int(billing * spare_share)
        travel = int((billing - spare) * travel_share)
        breakdown = BillingBreakdown.of(
            billing, spare_amount=spare, travel_amount=travel, gst_included=gst_included
        )

        result = calculate_earning(breakdown, method, policy)

        assert result.calculated_amount >= 0
        assert result.calculated_amount == result.calculated_amount.quantize(Decimal("0.01"))

    @given(
        billing=st.integers(min_value=0, max_value=100_000),
        spare_share=st.floats(min_value=0, max_value=1),
        travel_share=st.floats(min_value=0, max_value=1),
    )
    @settings(max_examples=200)
    def test_cash_earning_and_collection_split_the_bill(self, billing, spare_share, travel_share):
        """For cash without GST, vendor share plus platform share is the billing amount."""
        spare = int(billing * spare_share)
        travel = int((billing - spare) * travel_share)
        breakdown = BillingBreakdown.of(billing, spare_amount=spare, travel_amount=travel)

        earning = calculate_earning(breakdown, "cash")
        owed = calculate_cash_collection(breakdown)

        assert earning.calculated_amount + owed.calculated_amount == breakdown.billing_amount


actions = st.lists(
    st.sampled_from(["assign", "accept", "decline", "cancel", "complete", "wait"]),
    max_size=20,
)


class TestAssignmentInvariants:
    """Random vendor behaviour never breaks the state machine or double-penalizes."""

    @given(actions=actions)
    @PROPERTY_SETTINGS
    def test_random_walk(self, actions):
        clock = FakeClock(datetime(2024, 3, 15, 9, 0))
        with fresh_session() as db:
            ledger = LedgerService(db, policy=FLAT_FEE_POLICY, clock=clock)
            service = AssignmentService(db, ledger, settings=make_settings(), clock=clock)
            ledger.open_wallet("V1")
            ledger.add_deposit("V1", amount=Decimal("10000"))
            service.create_work_unit("TK-1")
            expected_penalties = 0

            for action in actions:
                before = service.get_work_unit("TK-1").vendor_status
                try:
                    if action == "assign":
                        service.assign("TK-1", "V1")
                    elif action == "accept":
                        service.accept("TK-1", "V1")
                    elif action == "decline":
                        service.decline("TK-1", "V1")
                    elif action == "cancel":
                        service.cancel("TK-1", "V1")
                    elif action == "complete":
                        service.complete("TK-1", "V1", {"payment_method": "cash", "billing_amount": 300})
                    else:
                        clock.advance(minutes=30)
                        if service.auto_reject("TK-1") is None:
                            continue
                except VendorLedgerError:
                    assert service.get_work_unit("TK-1").vendor_status == before
                    continue

                after = service.get_work_unit("TK-1").vendor_status
                assert AssignmentStateMachine.can_transition(before, after)
                if AssignmentStateMachine.penalty_for(before, after) is not None:
                    expected_penalties += 1

            keys = db.execute(
                select(WalletTransaction.idempotency_key).where(WalletTransaction.type == "penalty")
            ).scalars().all()
            assert len(keys) == expected_penalties
            assert len(set(keys)) == len(keys)
            unit = service.get_work_unit("TK-1")
            if unit.vendor_status != VendorStatus.PENDING.value:
                assert unit.response_deadline is None
