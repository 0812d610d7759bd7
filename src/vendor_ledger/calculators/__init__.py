"""Payout calculation."""

from vendor_ledger.calculators.earning import (
    FLAT_FEE_POLICY,
    TWO_TIER_POLICY,
    calculate_cash_collection,
    calculate_earning,
    get_policy,
)
from vendor_ledger.calculators.types import (
    BillingBreakdown,
    CompletionData,
    EarningResult,
    PayoutPolicy,
    SparePart,
    money,
)

__all__ = [
    "FLAT_FEE_POLICY",
    "TWO_TIER_POLICY",
    "calculate_cash_collection",
    "calculate_earning",
    "get_policy",
    "BillingBreakdown",
    "CompletionData",
    "EarningResult",
    "PayoutPolicy",
    "SparePart",
    "money",
]
