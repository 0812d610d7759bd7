"""Type definitions for payout calculation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from vendor_ledger.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0")

_AMOUNT_NOISE = re.compile(r"[₹,\s]")


def money(value: Any) -> Decimal:
    """Coerce a number or numeric string to a 2dp Decimal."""
    if value is None or value == "":
        return ZERO.quantize(CENT)
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(_AMOUNT_NOISE.sub("", str(value)))
        except InvalidOperation as e:
            raise ValidationError(f"Not a monetary amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Not a monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative(name: str, value: Any) -> Decimal:
    """money() that rejects negative input."""
    amount = money(value)
    if amount < 0:
        raise ValidationError(f"{name} must not be negative")
    return amount


@dataclass(frozen=True)
class PayoutPolicy:
    """Tiering rules for splitting a billing amount with a vendor.

    Billing at or below ``low_threshold`` passes through to the vendor
    (minus ``online_flat_fee`` for online payments, plus GST when included).
    Above it the vendor gets ``vendor_share`` of billing net of spare parts
    and travel, plus spare parts and travel in full.
    """

    name: str
    low_threshold: Decimal
    online_flat_fee: Decimal = ZERO
    mid_threshold: Decimal | None = None
    vendor_share: Decimal = Decimal("0.5")
    gst_rate: Decimal = Decimal("0.18")

    def band(self, billing: Decimal) -> str:
        if billing <= self.low_threshold:
            return "low"
        if self.mid_threshold is not None and billing <= self.mid_threshold:
            return "mid"
        return "high"


@dataclass(frozen=True)
class BillingBreakdown:
    """Money a completed job billed, as reported by the vendor."""

    billing_amount: Decimal
    spare_amount: Decimal = ZERO
    travel_amount: Decimal = ZERO
    booking_amount: Decimal = ZERO
    gst_included: bool = False
    gst_amount: Decimal | None = None

    def __post_init__(self) -> None:
        """Coerce amounts to 2dp Decimals; negatives are rejected."""
        for name in ("billing_amount", "spare_amount", "travel_amount", "booking_amount"):
            object.__setattr__(self, name, non_negative(name, getattr(self, name)))
        if self.gst_amount is not None:
            object.__setattr__(self, "gst_amount", non_negative("gst_amount", self.gst_amount))
        object.__setattr__(self, "gst_included", bool(self.gst_included))

    @classmethod
    def of(
        cls,
        billing_amount: Any,
        spare_amount: Any = 0,
        travel_amount: Any = 0,
        booking_amount: Any = 0,
        gst_included: bool = False,
        gst_amount: Any = None,
    ) -> BillingBreakdown:
        """Positional shorthand for loosely typed input."""
        return cls(
            billing_amount=billing_amount,
            spare_amount=spare_amount,
            travel_amount=travel_amount,
            booking_amount=booking_amount,
            gst_included=gst_included,
            gst_amount=gst_amount,
        )


@dataclass(frozen=True)
class EarningResult:
    """Outcome of a payout calculation."""

    calculated_amount: Decimal
    gst_amount: Decimal
    breakdown: dict[str, Any]


@dataclass(frozen=True)
class SparePart:
    name: str
    amount: Decimal
    warranty: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "amount": str(self.amount), "warranty": self.warranty}


@dataclass
class CompletionData:
    """What a vendor reports when finishing a job."""

    payment_method: str
    billing_amount: Decimal
    resolution_note: str = ""
    spare_parts: list[SparePart] = field(default_factory=list)
    travel_amount: Decimal = ZERO
    gst_included: bool = False
    gst_amount: Decimal | None = None
    completed_at: datetime | None = None

    @property
    def spare_amount(self) -> Decimal:
        return sum((p.amount for p in self.spare_parts), ZERO)

    def billing(self) -> BillingBreakdown:
        return BillingBreakdown.of(
            billing_amount=self.billing_amount,
            spare_amount=self.spare_amount,
            travel_amount=self.travel_amount,
            gst_included=self.gst_included,
            gst_amount=self.gst_amount,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form stored on the work unit."""
        return {
            "payment_method": self.payment_method,
            "billing_amount": str(self.billing_amount),
            "resolution_note": self.resolution_note,
            "spare_parts": [p.to_dict() for p in self.spare_parts],
            "travel_amount": str(self.travel_amount),
            "gst_included": self.gst_included,
            "gst_amount": None if self.gst_amount is None else str(self.gst_amount),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompletionData:
        """Parse stored or client-supplied completion data.

        Amounts may arrive as display strings such as ``"₹1,200"``.
        """
        completed_at = data.get("completed_at")
        return cls(
            payment_method=data.get("payment_method") or "cash",
            billing_amount=non_negative("billing_amount", data.get("billing_amount")),
            resolution_note=data.get("resolution_note") or "",
            spare_parts=[
                SparePart(
                    name=part.get("name", ""),
                    amount=non_negative("spare part amount", part.get("amount")),
                    warranty=part.get("warranty"),
                )
                for part in data.get("spare_parts") or []
            ],
            travel_amount=non_negative("travel_amount", data.get("travel_amount")),
            gst_included=bool(data.get("gst_included", False)),
            gst_amount=(
                None
                if data.get("gst_amount") in (None, "")
                else non_negative("gst_amount", data["gst_amount"])
            ),
            completed_at=(
                datetime.fromisoformat(completed_at) if isinstance(completed_at, str) else completed_at
            ),
        )
