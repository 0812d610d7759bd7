"""Vendor payout calculation.

Pure functions: no datastore, no clock. Two rule sets exist historically;
FLAT_FEE_POLICY is canonical and TWO_TIER_POLICY is kept so the older
behaviour stays reproducible.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from vendor_ledger.calculators.types import (
    CENT,
    ZERO,
    BillingBreakdown,
    EarningResult,
    PayoutPolicy,
)
from vendor_ledger.errors import ValidationError
from vendor_ledger.models.wallet import PaymentMethod

FLAT_FEE_POLICY = PayoutPolicy(
    name="flat_fee",
    low_threshold=Decimal("500"),
    online_flat_fee=Decimal("20"),
)

TWO_TIER_POLICY = PayoutPolicy(
    name="two_tier",
    low_threshold=Decimal("300"),
    mid_threshold=Decimal("600"),
)

POLICIES = {p.name: p for p in (FLAT_FEE_POLICY, TWO_TIER_POLICY)}

EARNING_METHODS = {PaymentMethod.ONLINE.value, PaymentMethod.CASH.value}


def get_policy(name: str) -> PayoutPolicy:
    """Look up a payout policy by name."""
    try:
        return POLICIES[name]
    except KeyError:
        raise ValidationError(
            f"Unknown payout policy '{name}' (expected one of {sorted(POLICIES)})"
        ) from None


def _round(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def resolve_gst(billing: BillingBreakdown, policy: PayoutPolicy) -> Decimal:
    """GST on a GST-exclusive billing amount; zero when not included."""
    if not billing.gst_included:
        return ZERO
    if billing.gst_amount is not None and billing.gst_amount > 0:
        return billing.gst_amount
    return _round(billing.billing_amount * policy.gst_rate)


def _shared_base(billing: BillingBreakdown) -> Decimal:
    base = billing.billing_amount - billing.spare_amount - billing.travel_amount
    if base < 0:
        raise ValidationError(
            "Spare and travel amounts exceed the billing amount "
            f"({billing.spare_amount} + {billing.travel_amount} > {billing.billing_amount})"
        )
    return base


def calculate_earning(
    billing: BillingBreakdown,
    payment_method: str,
    policy: PayoutPolicy = FLAT_FEE_POLICY,
) -> EarningResult:
    """Compute what a vendor is owed for a completed job.

    Args:
        billing: Billing breakdown; billing_amount is GST-exclusive
        payment_method: 'online' or 'cash'
        policy: Tiering rules to apply

    Returns:
        EarningResult with the 2dp payout and a breakdown for audit
    """
    method = getattr(payment_method, "value", payment_method)
    if method not in EARNING_METHODS:
        raise ValidationError(f"Unknown payment method '{payment_method}'")

    gst = resolve_gst(billing, policy)
    amount = billing.billing_amount
    band = policy.band(amount)

    if band == "low":
        flat_fee = policy.online_flat_fee if method == PaymentMethod.ONLINE.value else ZERO
        calculated = max(ZERO, amount - flat_fee) + gst
        share = f"Fixed -{flat_fee}" if flat_fee else "100%"
        base = amount
    else:
        base = _shared_base(billing)
        calculated = base * policy.vendor_share + billing.spare_amount + billing.travel_amount
        share = f"{policy.vendor_share * 100:.0f}%"

    calculated = _round(calculated)
    return EarningResult(
        calculated_amount=calculated,
        gst_amount=gst,
        breakdown={
            "policy": policy.name,
            "band": band,
            "base_amount": base,
            "vendor_share": share,
            "spare_amount": billing.spare_amount,
            "travel_amount": billing.travel_amount,
            "booking_amount": billing.booking_amount,
            "gst_amount": gst,
            "platform_amount": _round(amount + gst - calculated),
        },
    )


def calculate_cash_collection(
    billing: BillingBreakdown,
    policy: PayoutPolicy = FLAT_FEE_POLICY,
) -> EarningResult:
    """Platform share a vendor owes after collecting cash from the customer.

    Nothing is owed at or below the low threshold. Above it the vendor owes
    the platform's share of billing net of spare parts and travel, plus any
    GST collected.
    """
    gst = resolve_gst(billing, policy)
    band = policy.band(billing.billing_amount)

    if band == "low":
        base = billing.billing_amount
        owed = ZERO
    else:
        base = _shared_base(billing)
        owed = base * (Decimal("1") - policy.vendor_share) + gst

    owed = _round(owed)
    return EarningResult(
        calculated_amount=owed,
        gst_amount=gst,
        breakdown={
            "policy": policy.name,
            "band": band,
            "base_amount": base,
            "platform_share": "0%" if band == "low" else f"{(1 - policy.vendor_share) * 100:.0f}%",
            "spare_amount": billing.spare_amount,
            "travel_amount": billing.travel_amount,
            "booking_amount": billing.booking_amount,
            "gst_amount": gst,
        },
    )
