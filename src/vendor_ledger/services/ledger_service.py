"""Vendor wallet ledger - append-only postings against a running balance.

Provides idempotent, serialized posting of wallet transactions with:
- One locked read-modify-write per operation (row lock + version check)
- Idempotency via (wallet_id, idempotency_key) uniqueness
- Deductions floored at zero, withdrawals guarded by the security deposit
- balance_before/balance_after on every entry for independent audit
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from vendor_ledger.calculators.earning import (
    calculate_cash_collection,
    calculate_earning,
    get_policy,
)
from vendor_ledger.calculators.types import BillingBreakdown, PayoutPolicy, money
from vendor_ledger.clock import Clock, utc_now
from vendor_ledger.config import get_settings
from vendor_ledger.errors import (
    ConcurrencyError,
    DuplicateTransactionError,
    InsufficientFundsError,
    ValidationError,
    WalletNotFoundError,
)
from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.events.types import EventMetadata, LedgerEntryPosted
from vendor_ledger.models.wallet import (
    REFERENCE_PREFIXES,
    PaymentMethod,
    PenaltyKind,
    TransactionStatus,
    TransactionType,
    VendorWallet,
    WalletTransaction,
)
from vendor_ledger.services.wallet_projection import (
    MonthlyEarning,
    WalletTotals,
    apply_entry,
    audit_chain,
    fold,
    monthly_earnings,
    next_balance,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class Balance:
    """Wallet balance with the withdrawable portion."""

    current: Decimal
    security_deposit: Decimal

    @property
    def available(self) -> Decimal:
        """Amount that may be withdrawn (never negative)."""
        return max(ZERO, self.current - self.security_deposit)


@dataclass(frozen=True)
class PostResult:
    """Result of a ledger posting operation.

    IMPORTANT: check `is_new` before triggering downstream actions.
    If `is_new=False` the request was a duplicate and the existing entry
    was returned unchanged.
    """

    transaction: WalletTransaction
    is_new: bool

    @property
    def was_duplicate(self) -> bool:
        return not self.is_new

    def raise_if_duplicate(self) -> PostResult:
        """Turn an idempotent short-circuit into DuplicateTransactionError."""
        if not self.is_new:
            raise DuplicateTransactionError(self.transaction)
        return self


@dataclass(frozen=True)
class WalletSummary:
    vendor_id: str
    balance: Balance
    totals: WalletTotals
    transaction_count: int
    last_transaction_at: datetime | None
    is_active: bool


@dataclass
class WalletCheck:
    """Outcome of comparing a wallet's cached totals against its log."""

    vendor_id: str
    drift: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    chain_problems: list[str] = field(default_factory=list)
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return not self.drift and not self.chain_problems


class LedgerService:
    """Per-vendor wallet ledger.

    Notes:
    - wallet_transaction is append-only (ORM hooks enforce).
    - Every mutation locks the wallet row and bumps its version, so two
      mutations on one wallet never interleave.
    - The service flushes; the caller owns commit/rollback.
    """

    def __init__(
        self,
        db: Session,
        *,
        policy: PayoutPolicy | None = None,
        clock: Clock = utc_now,
        emitter: EventEmitter | None = None,
    ):
        self.db = db
        self.policy = policy or get_policy(get_settings().payout_policy)
        self.clock = clock
        self.emitter = emitter

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    def open_wallet(
        self, vendor_id: str, *, security_deposit: Decimal | None = None
    ) -> VendorWallet:
        """Get existing or create a new wallet for a vendor."""
        existing = self._find_wallet(vendor_id)
        if existing is not None:
            return existing

        deposit = (
            get_settings().default_security_deposit
            if security_deposit is None
            else security_deposit
        )
        deposit = money(deposit)
        if deposit < 0:
            raise ValidationError("security_deposit must not be negative")

        wallet = VendorWallet(
            vendor_id=vendor_id,
            security_deposit=deposit,
            transaction_count=0,
            is_active=True,
            created_at=self.clock(),
        )
        WalletTotals().store(wallet)
        try:
            with self.db.begin_nested():
                self.db.add(wallet)
        except IntegrityError:
            # Another writer opened it first
            existing = self._find_wallet(vendor_id)
            if existing is None:
                raise
            return existing

        logger.info("Opened wallet for vendor %s (security deposit %s)", vendor_id, deposit)
        return wallet

    def set_security_deposit(self, vendor_id: str, amount: Decimal) -> VendorWallet:
        """Change the minimum balance withdrawals must leave behind."""
        amount = money(amount)
        if amount < 0:
            raise ValidationError("security_deposit must not be negative")
        wallet = self._lock_wallet(vendor_id)
        wallet.security_deposit = amount
        self._flush()
        return wallet

    def set_active(self, vendor_id: str, active: bool) -> VendorWallet:
        """Enable or disable withdrawals from a wallet."""
        wallet = self._lock_wallet(vendor_id)
        wallet.is_active = active
        self._flush()
        return wallet

    # ------------------------------------------------------------------
    # Postings
    # ------------------------------------------------------------------

    def add_earning(
        self,
        vendor_id: str,
        *,
        case_id: str,
        billing: BillingBreakdown,
        payment_method: str,
        description: str | None = None,
    ) -> PostResult:
        """Credit the payout for a completed job.

        Idempotent per (case_id, payment_method): a repeat returns the
        existing entry and leaves the balance untouched.
        """
        self._require_case(case_id)
        method = getattr(payment_method, "value", payment_method)
        wallet = self._lock_wallet(vendor_id)
        key = f"earning:{case_id}:{method}"
        existing = self._find_by_key(wallet, key)
        if existing is not None:
            logger.info(
                "Duplicate earning prevented for case %s (%s), vendor %s",
                case_id, method, vendor_id,
            )
            return PostResult(transaction=existing, is_new=False)

        result = calculate_earning(billing, method, self.policy)
        return self._post(
            wallet,
            type=TransactionType.EARNING,
            amount=result.calculated_amount,
            case_id=case_id,
            idempotency_key=key,
            payment_method=method,
            billing=billing,
            gst_amount=result.gst_amount,
            calculated_amount=result.calculated_amount,
            description=description or f"Task completion earning - {case_id}",
            metadata={"breakdown": _jsonable(result.breakdown)},
        )

    def add_penalty(
        self,
        vendor_id: str,
        *,
        case_id: str,
        penalty_kind: str,
        amount: Decimal,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> PostResult:
        """Debit a sanction; the balance never goes below zero.

        Without an idempotency key every call appends a new penalty.
        """
        self._require_case(case_id)
        kind = getattr(penalty_kind, "value", penalty_kind)
        if kind not in {k.value for k in PenaltyKind}:
            raise ValidationError(f"Unknown penalty kind '{penalty_kind}'")
        amount = self._positive(amount)

        wallet = self._lock_wallet(vendor_id)
        key = idempotency_key or f"penalty:{uuid4().hex}"
        existing = self._find_by_key(wallet, key)
        if existing is not None:
            logger.info("Duplicate %s penalty prevented for case %s", kind, case_id)
            return PostResult(transaction=existing, is_new=False)

        return self._post(
            wallet,
            type=TransactionType.PENALTY,
            amount=-amount,
            case_id=case_id,
            idempotency_key=key,
            payment_method=PaymentMethod.SYSTEM.value,
            calculated_amount=-amount,
            penalty_kind=kind,
            description=description or f"Task {kind.replace('_', ' ')} penalty - {case_id}",
        )

    def add_task_acceptance_fee(
        self,
        vendor_id: str,
        *,
        case_id: str,
        fee: Decimal,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> PostResult:
        """Debit the fee a vendor pays to take a task; floors at zero."""
        self._require_case(case_id)
        fee = self._positive(fee)

        wallet = self._lock_wallet(vendor_id)
        key = idempotency_key or f"task_acceptance_fee:{case_id}"
        existing = self._find_by_key(wallet, key)
        if existing is not None:
            return PostResult(transaction=existing, is_new=False)

        return self._post(
            wallet,
            type=TransactionType.TASK_ACCEPTANCE_FEE,
            amount=-fee,
            case_id=case_id,
            idempotency_key=key,
            payment_method=PaymentMethod.SYSTEM.value,
            billing=BillingBreakdown(billing_amount=fee),
            calculated_amount=-fee,
            description=description or f"Task acceptance fee - {case_id}",
        )

    def add_cash_collection_deduction(
        self,
        vendor_id: str,
        *,
        case_id: str,
        billing: BillingBreakdown,
        description: str | None = None,
    ) -> PostResult:
        """Debit the platform share of cash the vendor collected.

        Idempotent per case. Jobs at or below the low threshold still get a
        zero-amount entry so the case is marked as settled.
        """
        self._require_case(case_id)
        wallet = self._lock_wallet(vendor_id)
        key = f"cash_collection:{case_id}"
        existing = self._find_by_key(wallet, key)
        if existing is not None:
            logger.info("Duplicate cash collection prevented for case %s", case_id)
            return PostResult(transaction=existing, is_new=False)

        result = calculate_cash_collection(billing, self.policy)
        owed = result.calculated_amount
        return self._post(
            wallet,
            type=TransactionType.CASH_COLLECTION,
            amount=-owed if owed else ZERO,
            case_id=case_id,
            idempotency_key=key,
            payment_method=PaymentMethod.CASH.value,
            billing=billing,
            gst_amount=result.gst_amount,
            calculated_amount=-owed if owed else ZERO,
            description=description or f"Cash collection deduction - {case_id}",
            metadata={"breakdown": _jsonable(result.breakdown)},
        )

    def add_deposit(
        self,
        vendor_id: str,
        *,
        amount: Decimal,
        reference: str | None = None,
        description: str = "Wallet deposit",
    ) -> PostResult:
        """Credit money the vendor paid in.

        A gateway reference makes the deposit idempotent.
        """
        amount = self._positive(amount)
        wallet = self._lock_wallet(vendor_id)
        key = f"deposit:{reference}" if reference else f"deposit:{uuid4().hex}"
        existing = self._find_by_key(wallet, key)
        if existing is not None:
            return PostResult(transaction=existing, is_new=False)

        return self._post(
            wallet,
            type=TransactionType.DEPOSIT,
            amount=amount,
            idempotency_key=key,
            payment_method=PaymentMethod.ONLINE.value,
            billing=BillingBreakdown(billing_amount=amount),
            calculated_amount=amount,
            description=description,
            metadata={"reference": reference} if reference else None,
        )

    def add_withdrawal(
        self,
        vendor_id: str,
        *,
        amount: Decimal,
        reference: str | None = None,
        description: str = "Wallet withdrawal",
    ) -> PostResult:
        """Debit a payout request.

        Raises InsufficientFundsError if the amount exceeds the balance
        above the security deposit. The entry stays 'pending' until the
        payout is made outside this ledger.
        """
        amount = self._positive(amount)
        wallet = self._lock_wallet(vendor_id)
        if not wallet.is_active:
            raise ValidationError(f"Wallet for vendor '{vendor_id}' is inactive")

        key = f"withdrawal:{reference}" if reference else f"withdrawal:{uuid4().hex}"
        existing = self._find_by_key(wallet, key)
        if existing is not None:
            return PostResult(transaction=existing, is_new=False)

        available = wallet.current_balance - wallet.security_deposit
        if amount > available:
            raise InsufficientFundsError(available=max(ZERO, available), requested=amount)

        return self._post(
            wallet,
            type=TransactionType.WITHDRAWAL,
            amount=-amount,
            idempotency_key=key,
            payment_method=PaymentMethod.ONLINE.value,
            billing=BillingBreakdown(billing_amount=amount),
            calculated_amount=-amount,
            status=TransactionStatus.PENDING,
            description=description,
        )

    def add_refund(
        self,
        vendor_id: str,
        *,
        case_id: str,
        amount: Decimal,
        reference: str | None = None,
        description: str | None = None,
        processed_by: str = "admin",
    ) -> PostResult:
        """Credit back a penalty or fee for a case."""
        self._require_case(case_id)
        amount = self._positive(amount)
        wallet = self._lock_wallet(vendor_id)
        key = f"refund:{reference}" if reference else f"refund:{uuid4().hex}"
        existing = self._find_by_key(wallet, key)
        if existing is not None:
            return PostResult(transaction=existing, is_new=False)

        return self._post(
            wallet,
            type=TransactionType.REFUND,
            amount=amount,
            case_id=case_id,
            idempotency_key=key,
            payment_method=PaymentMethod.SYSTEM.value,
            billing=BillingBreakdown(billing_amount=amount),
            calculated_amount=amount,
            description=description or f"Penalty refund - {case_id}",
            processed_by=processed_by,
        )

    def add_manual_adjustment(
        self,
        vendor_id: str,
        *,
        amount: Decimal,
        description: str,
        processed_by: str = "admin",
        case_id: str | None = None,
    ) -> PostResult:
        """Signed admin correction. Negative adjustments floor at zero."""
        amount = money(amount)
        if amount == 0:
            raise ValidationError("Adjustment amount must not be zero")
        if not description:
            raise ValidationError("Adjustment requires a description")

        wallet = self._lock_wallet(vendor_id)
        return self._post(
            wallet,
            type=TransactionType.MANUAL_ADJUSTMENT,
            amount=amount,
            case_id=case_id,
            idempotency_key=f"manual_adjustment:{uuid4().hex}",
            payment_method=PaymentMethod.SYSTEM.value,
            calculated_amount=amount,
            description=description,
            processed_by=processed_by,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_wallet(self, vendor_id: str) -> VendorWallet:
        wallet = self._find_wallet(vendor_id)
        if wallet is None:
            raise WalletNotFoundError(vendor_id)
        return wallet

    def get_balance(self, vendor_id: str) -> Balance:
        """Current balance and the withdrawable portion."""
        wallet = self.get_wallet(vendor_id)
        return Balance(current=wallet.current_balance, security_deposit=wallet.security_deposit)

    def get_recent_transactions(self, vendor_id: str, limit: int = 10) -> list[WalletTransaction]:
        """Most recent entries first."""
        if limit <= 0:
            raise ValidationError("limit must be positive")
        wallet = self.get_wallet(vendor_id)
        result = self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.wallet_id)
            .order_by(WalletTransaction.sequence.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    def get_transactions(self, vendor_id: str) -> list[WalletTransaction]:
        """Full log, oldest first."""
        wallet = self.get_wallet(vendor_id)
        return self._log(wallet)

    def get_monthly_earnings(self, vendor_id: str) -> list[MonthlyEarning]:
        """Earnings per calendar month, derived from the log."""
        wallet = self.get_wallet(vendor_id)
        result = self.db.execute(
            select(WalletTransaction)
            .where(
                WalletTransaction.wallet_id == wallet.wallet_id,
                WalletTransaction.type == TransactionType.EARNING.value,
            )
            .order_by(WalletTransaction.sequence)
        )
        return monthly_earnings(result.scalars().all())

    def get_summary(self, vendor_id: str) -> WalletSummary:
        wallet = self.get_wallet(vendor_id)
        return WalletSummary(
            vendor_id=vendor_id,
            balance=Balance(current=wallet.current_balance, security_deposit=wallet.security_deposit),
            totals=WalletTotals.of(wallet),
            transaction_count=wallet.transaction_count,
            last_transaction_at=wallet.last_transaction_at,
            is_active=wallet.is_active,
        )

    def find_transaction(
        self,
        vendor_id: str,
        *,
        case_id: str,
        type: str,
        payment_method: str | None = None,
    ) -> WalletTransaction | None:
        """Latest entry of a type for a case, optionally by payment method."""
        wallet = self.get_wallet(vendor_id)
        stmt = select(WalletTransaction).where(
            WalletTransaction.wallet_id == wallet.wallet_id,
            WalletTransaction.case_id == case_id,
            WalletTransaction.type == getattr(type, "value", type),
        )
        if payment_method is not None:
            stmt = stmt.where(
                WalletTransaction.payment_method == getattr(payment_method, "value", payment_method)
            )
        result = self.db.execute(stmt.order_by(WalletTransaction.sequence.desc()).limit(1))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def verify_wallet(self, vendor_id: str) -> WalletCheck:
        """Compare cached totals with a fold over the log. Read-only."""
        wallet = self.get_wallet(vendor_id)
        log = self._log(wallet)
        derived = fold(log)
        return WalletCheck(
            vendor_id=vendor_id,
            drift=WalletTotals.of(wallet).diff(derived),
            chain_problems=audit_chain(log),
        )

    def rebuild_wallet(self, vendor_id: str) -> WalletCheck:
        """Recompute the cached totals from the log and store them."""
        wallet = self._lock_wallet(vendor_id)
        log = self._log(wallet)
        derived = fold(log)
        check = WalletCheck(
            vendor_id=vendor_id,
            drift=WalletTotals.of(wallet).diff(derived),
            chain_problems=audit_chain(log),
        )
        if check.drift:
            logger.warning("Rebuilding wallet %s, drift: %s", vendor_id, check.drift)
            derived.store(wallet)
            wallet.transaction_count = len(log)
            self._flush()
            check.repaired = True
        return check

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _post(
        self,
        wallet: VendorWallet,
        *,
        type: TransactionType,
        amount: Decimal,
        idempotency_key: str,
        payment_method: str,
        calculated_amount: Decimal,
        description: str,
        case_id: str | None = None,
        billing: BillingBreakdown | None = None,
        gst_amount: Decimal = ZERO,
        penalty_kind: str | None = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        processed_by: str = "system",
        metadata: dict[str, Any] | None = None,
    ) -> PostResult:
        now = self.clock()
        before = wallet.current_balance
        sequence = wallet.transaction_count + 1
        billing = billing or BillingBreakdown(billing_amount=ZERO)

        txn = WalletTransaction(
            wallet_id=wallet.wallet_id,
            sequence=sequence,
            reference=f"{REFERENCE_PREFIXES[type]}_{wallet.vendor_id}_{sequence}",
            idempotency_key=idempotency_key,
            case_id=case_id,
            type=type.value,
            amount=amount,
            payment_method=payment_method,
            billing_amount=billing.billing_amount,
            spare_amount=billing.spare_amount,
            travel_amount=billing.travel_amount,
            booking_amount=billing.booking_amount,
            gst_included=billing.gst_included,
            gst_amount=gst_amount,
            calculated_amount=calculated_amount,
            penalty_kind=penalty_kind,
            status=status.value,
            description=description,
            balance_before=before,
            balance_after=next_balance(before, amount),
            processed_by=processed_by,
            metadata_json=metadata or {},
            created_at=now,
        )
        self.db.add(txn)

        totals = apply_entry(WalletTotals.of(wallet), txn)
        totals.store(wallet)
        wallet.transaction_count = sequence
        wallet.last_transaction_at = now
        self._flush()

        logger.info(
            "Posted %s %s for vendor %s case %s: %s -> %s",
            txn.type, amount, wallet.vendor_id, case_id, before, txn.balance_after,
        )
        if self.emitter is not None:
            self.emitter.emit(
                LedgerEntryPosted(
                    metadata=EventMetadata.create(actor_id=processed_by, timestamp=now),
                    vendor_id=wallet.vendor_id,
                    case_id=case_id,
                    transaction_id=txn.transaction_id,
                    transaction_type=txn.type,
                    amount=amount,
                    balance_after=txn.balance_after,
                )
            )
        return PostResult(transaction=txn, is_new=True)

    def _find_wallet(self, vendor_id: str) -> VendorWallet | None:
        result = self.db.execute(select(VendorWallet).where(VendorWallet.vendor_id == vendor_id))
        return result.scalar_one_or_none()

    def _lock_wallet(self, vendor_id: str) -> VendorWallet:
        """Load a wallet for mutation, refreshed and row-locked."""
        result = self.db.execute(
            select(VendorWallet)
            .where(VendorWallet.vendor_id == vendor_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None:
            raise WalletNotFoundError(vendor_id)
        return wallet

    def _find_by_key(self, wallet: VendorWallet, key: str) -> WalletTransaction | None:
        result = self.db.execute(
            select(WalletTransaction).where(
                WalletTransaction.wallet_id == wallet.wallet_id,
                WalletTransaction.idempotency_key == key,
            )
        )
        return result.scalar_one_or_none()

    def _log(self, wallet: VendorWallet) -> list[WalletTransaction]:
        result = self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.wallet_id)
            .order_by(WalletTransaction.sequence)
        )
        return list(result.scalars().all())

    def _flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as e:
            raise ConcurrencyError("Wallet was modified concurrently; retry the operation") from e

    @staticmethod
    def _positive(amount: Any) -> Decimal:
        value = money(amount)
        if value <= 0:
            raise ValidationError("Amount must be positive")
        return value

    @staticmethod
    def _require_case(case_id: str | None) -> None:
        if not case_id:
            raise ValidationError("case_id is required for this transaction type")


def _jsonable(data: dict[str, Any]) -> dict[str, Any]:
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in data.items()}
