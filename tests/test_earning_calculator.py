"""Tests for vendor payout calculation.

The calculator is pure: no database, no clock.
"""

from decimal import Decimal

import pytest

from vendor_ledger.calculators.earning import (
    FLAT_FEE_POLICY,
    TWO_TIER_POLICY,
    calculate_cash_collection,
    calculate_earning,
    get_policy,
    resolve_gst,
)
from vendor_ledger.calculators.types import BillingBreakdown, CompletionData, money
from vendor_ledger.errors import ValidationError


class TestFlatFeePolicy:
    """Canonical payout rules: ₹500 threshold, ₹20 online fee below it."""

    def test_high_band_splits_net_of_spare_and_travel(self):
        """billing=1000, spare=100, travel=50, online → 575."""
        billing = BillingBreakdown.of(1000, spare_amount=100, travel_amount=50)

        result = calculate_earning(billing, "online")

        assert result.calculated_amount == Decimal("575.00")
        assert result.breakdown["band"] == "high"
        assert result.breakdown["base_amount"] == Decimal("850")

    def test_low_band_online_deducts_flat_fee(self):
        """billing=400, online → 380."""
        result = calculate_earning(BillingBreakdown.of(400), "online")
        assert result.calculated_amount == Decimal("380.00")

    def test_low_band_cash_passes_through(self):
        """billing=400, cash → 400."""
        result = calculate_earning(BillingBreakdown.of(400), "cash")
        assert result.calculated_amount == Decimal("400.00")

    def test_threshold_is_inclusive(self):
        """Exactly 500 is still the low band."""
        result = calculate_earning(BillingBreakdown.of(500), "cash")
        assert result.breakdown["band"] == "low"
        assert result.calculated_amount == Decimal("500.00")

    def test_low_band_adds_gst(self):
        """GST is derived at 18% and added back below the threshold."""
        billing = BillingBreakdown.of(400, gst_included=True)

        result = calculate_earning(billing, "online")

        assert result.gst_amount == Decimal("72.00")
        assert result.calculated_amount == Decimal("452.00")

    def test_supplied_gst_amount_wins(self):
        billing = BillingBreakdown.of(400, gst_included=True, gst_amount=50)
        result = calculate_earning(billing, "cash")
        assert result.calculated_amount == Decimal("450.00")

    def test_high_band_does_not_add_gst(self):
        billing = BillingBreakdown.of(1000, gst_included=True)

        result = calculate_earning(billing, "online")

        assert result.gst_amount == Decimal("180.00")
        assert result.calculated_amount == Decimal("500.00")

    def test_tiny_online_job_never_negative(self):
        """The flat fee cannot push the payout below zero."""
        result = calculate_earning(BillingBreakdown.of(15), "online")
        assert result.calculated_amount == Decimal("0.00")

    def test_rounds_half_up_to_two_places(self):
        billing = BillingBreakdown.of("1000.01")
        result = calculate_earning(billing, "cash")
        assert result.calculated_amount == Decimal("500.01")

    def test_unknown_payment_method_rejected(self):
        with pytest.raises(ValidationError, match="payment method"):
            calculate_earning(BillingBreakdown.of(400), "card")

    def test_spare_and_travel_above_billing_rejected(self):
        billing = BillingBreakdown.of(600, spare_amount=500, travel_amount=200)
        with pytest.raises(ValidationError, match="exceed"):
            calculate_earning(billing, "cash")


class TestTwoTierPolicy:
    """Historical rules kept reproducible: 300/600 thresholds, no flat fee."""

    def test_low_band_passes_through_for_online(self):
        result = calculate_earning(BillingBreakdown.of(300), "online", TWO_TIER_POLICY)
        assert result.calculated_amount == Decimal("300.00")

    def test_mid_band_splits(self):
        billing = BillingBreakdown.of(500, spare_amount=100)

        result = calculate_earning(billing, "online", TWO_TIER_POLICY)

        assert result.breakdown["band"] == "mid"
        assert result.calculated_amount == Decimal("300.00")

    def test_high_band_splits(self):
        result = calculate_earning(BillingBreakdown.of(700), "cash", TWO_TIER_POLICY)
        assert result.breakdown["band"] == "high"
        assert result.calculated_amount == Decimal("350.00")

    def test_policies_disagree_between_thresholds(self):
        """Same job, different payout: the reason only one policy is canonical."""
        billing = BillingBreakdown.of(400)
        flat = calculate_earning(billing, "online", FLAT_FEE_POLICY)
        two_tier = calculate_earning(billing, "online", TWO_TIER_POLICY)
        assert flat.calculated_amount == Decimal("380.00")
        assert two_tier.calculated_amount == Decimal("200.00")

    def test_get_policy_by_name(self):
        assert get_policy("flat_fee") is FLAT_FEE_POLICY
        assert get_policy("two_tier") is TWO_TIER_POLICY
        with pytest.raises(ValidationError):
            get_policy("generous")


class TestCashCollection:
    """Platform share owed after a cash job."""

    def test_nothing_owed_in_low_band(self):
        result = calculate_cash_collection(BillingBreakdown.of(400))
        assert result.calculated_amount == Decimal("0.00")

    def test_half_of_net_billing_above_threshold(self):
        billing = BillingBreakdown.of(1000, spare_amount=100, travel_amount=50)
        result = calculate_cash_collection(billing)
        assert result.calculated_amount == Decimal("425.00")

    def test_gst_added_above_threshold(self):
        billing = BillingBreakdown.of(1000, gst_included=True)
        result = calculate_cash_collection(billing)
        assert result.calculated_amount == Decimal("680.00")

    def test_earning_and_collection_add_up_to_billing(self):
        billing = BillingBreakdown.of(1200, spare_amount=300, travel_amount=100)
        earning = calculate_earning(billing, "cash")
        owed = calculate_cash_collection(billing)
        assert earning.calculated_amount + owed.calculated_amount == Decimal("1200.00")


class TestBillingInput:
    """Parsing of loosely typed amounts."""

    def test_money_strips_currency_and_grouping(self):
        assert money("₹1,200") == Decimal("1200.00")
        assert money(" 99.999 ") == Decimal("100.00")
        assert money(None) == Decimal("0.00")

    def test_money_rejects_garbage(self):
        with pytest.raises(ValidationError):
            money("twelve")

    def test_negative_billing_rejected(self):
        with pytest.raises(ValidationError, match="billing_amount"):
            BillingBreakdown.of(-1)

    def test_direct_construction_coerces_floats(self):
        billing = BillingBreakdown(billing_amount=1000.0, spare_amount=100.5, travel_amount=49.5)

        assert billing.spare_amount == Decimal("100.50")
        assert isinstance(billing.billing_amount, Decimal)
        assert calculate_earning(billing, "online").calculated_amount == Decimal("575.00")

    def test_direct_construction_rejects_negative_amounts(self):
        with pytest.raises(ValidationError, match="travel_amount"):
            BillingBreakdown(billing_amount=Decimal("100"), travel_amount=-5)

    def test_gst_zero_when_not_included(self):
        billing = BillingBreakdown.of(400, gst_amount=50)
        assert resolve_gst(billing, FLAT_FEE_POLICY) == Decimal("0")

    def test_completion_data_from_display_strings(self):
        completion = CompletionData.from_dict(
            {
                "payment_method": "online",
                "billing_amount": "₹1,000",
                "travel_amount": "50",
                "spare_parts": [
                    {"name": "Capacitor", "amount": "60"},
                    {"name": "Fan motor", "amount": "₹40", "warranty": "6 months"},
                ],
            }
        )

        billing = completion.billing()

        assert billing.billing_amount == Decimal("1000.00")
        assert billing.spare_amount == Decimal("100.00")
        assert calculate_earning(billing, completion.payment_method).calculated_amount == Decimal(
            "575.00"
        )

    def test_completion_data_round_trips_through_storage(self):
        completion = CompletionData.from_dict(
            {"payment_method": "cash", "billing_amount": 800, "gst_included": True}
        )
        restored = CompletionData.from_dict(completion.to_dict())
        assert restored.billing() == completion.billing()
