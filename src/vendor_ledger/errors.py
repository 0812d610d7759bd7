"""Error taxonomy for ledger and assignment operations.

Ledger and state machine operations raise these to their caller; the
auto-reject sweep catches them per item and keeps going.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from vendor_ledger.models import WalletTransaction


class VendorLedgerError(Exception):
    """Base class for all vendor ledger errors."""


class ValidationError(VendorLedgerError):
    """Raised for malformed input (negative amount, unknown payment method)."""


class AuthorizationError(VendorLedgerError):
    """Raised when the actor is not the vendor assigned to the work unit."""

    def __init__(self, case_id: str, vendor_id: str):
        self.case_id = case_id
        self.vendor_id = vendor_id
        super().__init__(f"Vendor '{vendor_id}' is not assigned to '{case_id}'")


class StateError(VendorLedgerError):
    """Raised when a transition is attempted from an invalid state."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InsufficientFundsError(VendorLedgerError):
    """Raised when a withdrawal would dip into the security deposit."""

    def __init__(self, available: Decimal, requested: Decimal):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance for withdrawal: available {available}, "
            f"requested {requested}. Security deposit cannot be withdrawn."
        )


class DuplicateTransactionError(VendorLedgerError):
    """Idempotency short-circuit: the transaction already exists.

    Ledger operations return the existing record instead of raising this;
    callers that want an exception use ``PostResult.raise_if_duplicate()``.
    """

    def __init__(self, existing: WalletTransaction):
        self.existing = existing
        super().__init__(
            f"Duplicate {existing.type} transaction for case '{existing.case_id}'"
        )


class NotFoundError(VendorLedgerError):
    """Raised when a referenced record does not exist."""

    entity = "record"

    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"{self.entity} '{key}' not found")


class WalletNotFoundError(NotFoundError):
    entity = "Wallet"


class WorkUnitNotFoundError(NotFoundError):
    entity = "Work unit"


class ConcurrencyError(VendorLedgerError):
    """Raised when a concurrent writer updated the same row first."""


class ImmutableRecordError(VendorLedgerError):
    """Raised on an attempt to update or delete an append-only record."""
