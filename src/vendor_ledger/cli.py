"""Vendor ledger command line interface.

Provides operational tools for:
- Schema creation
- Wallet queries and audits
- Auto-reject sweeps (one-off or as a long-running scheduler)
- Reconciliation retries

Usage:
    vendor-ledger init-db
    vendor-ledger open-wallet --vendor-id V1 --security-deposit 3999
    vendor-ledger balance --vendor-id V1
    vendor-ledger transactions --vendor-id V1 --limit 20
    vendor-ledger verify-wallet --vendor-id V1
    vendor-ledger sweep
    vendor-ledger run-scheduler --interval 60
    vendor-ledger retry-reconciliation
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from decimal import Decimal
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from vendor_ledger.calculators.earning import get_policy
from vendor_ledger.config import get_settings
from vendor_ledger.database import create_schema, get_engine, make_session_factory, session_scope
from vendor_ledger.errors import VendorLedgerError
from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.logging_config import configure_logging
from vendor_ledger.notifications import NotificationDispatcher
from vendor_ledger.services.auto_reject import AutoRejectScheduler
from vendor_ledger.services.ledger_service import LedgerService, WalletCheck
from vendor_ledger.services.reconciliation import ReconciliationService


def parse_amount(s: str) -> Decimal:
    """Parse a monetary amount argument."""
    try:
        return Decimal(s)
    except ArithmeticError:
        raise argparse.ArgumentTypeError(f"not an amount: {s!r}") from None


class VendorLedgerCli:
    """Vendor ledger command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()
        self._engine: Engine | None = None
        self._factory: sessionmaker[Session] | None = None

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="vendor-ledger",
            description="Vendor wallet ledger and task assignment tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            help="Log level (default: $LOG_LEVEL)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        open_wallet = subparsers.add_parser("open-wallet", help="Open a vendor wallet")
        open_wallet.add_argument("--vendor-id", required=True, help="Vendor ID")
        open_wallet.add_argument(
            "--security-deposit",
            type=parse_amount,
            help="Minimum balance withdrawals must leave (default: $DEFAULT_SECURITY_DEPOSIT)",
        )

        balance = subparsers.add_parser("balance", help="Show wallet balance")
        balance.add_argument("--vendor-id", required=True, help="Vendor ID")

        transactions = subparsers.add_parser("transactions", help="List recent transactions")
        transactions.add_argument("--vendor-id", required=True, help="Vendor ID")
        transactions.add_argument("--limit", type=int, default=10, help="Number of entries")
        transactions.add_argument("--json", action="store_true", help="Output JSON lines")

        monthly = subparsers.add_parser("monthly", help="Show earnings per month")
        monthly.add_argument("--vendor-id", required=True, help="Vendor ID")

        verify = subparsers.add_parser(
            "verify-wallet", help="Compare cached wallet totals with the transaction log"
        )
        verify.add_argument("--vendor-id", required=True, help="Vendor ID")

        rebuild = subparsers.add_parser(
            "rebuild-wallet", help="Recompute cached wallet totals from the transaction log"
        )
        rebuild.add_argument("--vendor-id", required=True, help="Vendor ID")

        subparsers.add_parser("sweep", help="Run one auto-reject sweep now")

        scheduler = subparsers.add_parser("run-scheduler", help="Run the auto-reject scheduler")
        scheduler.add_argument(
            "--interval",
            type=float,
            help="Seconds between sweeps (default: $AUTO_REJECT_INTERVAL_SECONDS)",
        )

        retry = subparsers.add_parser(
            "retry-reconciliation", help="Retry ledger postings queued for reconciliation"
        )
        retry.add_argument("--limit", type=int, help="Maximum items to retry")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(parsed.log_level)

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "init-db": self._cmd_init_db,
            "open-wallet": self._cmd_open_wallet,
            "balance": self._cmd_balance,
            "transactions": self._cmd_transactions,
            "monthly": self._cmd_monthly,
            "verify-wallet": self._cmd_verify_wallet,
            "rebuild-wallet": self._cmd_rebuild_wallet,
            "sweep": self._cmd_sweep,
            "run-scheduler": self._cmd_run_scheduler,
            "retry-reconciliation": self._cmd_retry_reconciliation,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return handler(parsed)
        except VendorLedgerError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _sessions(self, args: argparse.Namespace) -> sessionmaker[Session]:
        if self._factory is None:
            self._engine = get_engine(args.database_url)
            self._factory = make_session_factory(self._engine)
        return self._factory

    def _ledger(self, session: Session) -> LedgerService:
        return LedgerService(session, policy=get_policy(get_settings().payout_policy))

    def _emitter(self) -> EventEmitter:
        emitter = EventEmitter()
        NotificationDispatcher().subscribe(emitter)
        return emitter

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        self._sessions(args)
        create_schema(self._engine)
        print(f"Schema ready at {self._engine.url.render_as_string(hide_password=True)}")
        return 0

    def _cmd_open_wallet(self, args: argparse.Namespace) -> int:
        with session_scope(self._sessions(args)) as session:
            wallet = self._ledger(session).open_wallet(
                args.vendor_id, security_deposit=args.security_deposit
            )
            print(f"Wallet for {wallet.vendor_id}")
            print(f"  Balance:          {wallet.current_balance:>12,.2f}")
            print(f"  Security deposit: {wallet.security_deposit:>12,.2f}")
        return 0

    def _cmd_balance(self, args: argparse.Namespace) -> int:
        """Query wallet balance."""
        with session_scope(self._sessions(args)) as session:
            balance = self._ledger(session).get_balance(args.vendor_id)
        print(f"Balance for vendor: {args.vendor_id}")
        print(f"\n  Current:          {balance.current:>12,.2f}")
        print(f"  Security deposit: {balance.security_deposit:>12,.2f}")
        print(f"  Available:        {balance.available:>12,.2f}")
        return 0

    def _cmd_transactions(self, args: argparse.Namespace) -> int:
        with session_scope(self._sessions(args)) as session:
            entries = self._ledger(session).get_recent_transactions(args.vendor_id, args.limit)
            for txn in entries:
                if args.json:
                    print(
                        json.dumps(
                            {
                                "reference": txn.reference,
                                "type": txn.type,
                                "case_id": txn.case_id,
                                "amount": str(txn.amount),
                                "balance_after": str(txn.balance_after),
                                "status": txn.status,
                                "created_at": txn.created_at.isoformat(),
                            }
                        )
                    )
                else:
                    print(
                        f"  {txn.created_at:%Y-%m-%d %H:%M} {txn.reference:<28} "
                        f"{txn.type:<20} {txn.amount:>10,.2f} {txn.balance_after:>12,.2f}"
                    )
        if not entries and not args.json:
            print("  No transactions")
        return 0

    def _cmd_monthly(self, args: argparse.Namespace) -> int:
        with session_scope(self._sessions(args)) as session:
            months = self._ledger(session).get_monthly_earnings(args.vendor_id)
        print(f"Monthly earnings for vendor: {args.vendor_id}")
        for month in months:
            print(f"  {month.year}-{month.month:02d}  {month.amount:>12,.2f}")
        if not months:
            print("  No earnings")
        return 0

    def _cmd_verify_wallet(self, args: argparse.Namespace) -> int:
        with session_scope(self._sessions(args)) as session:
            check = self._ledger(session).verify_wallet(args.vendor_id)
        self._print_check(check)
        return 0 if check.ok else 1

    def _cmd_rebuild_wallet(self, args: argparse.Namespace) -> int:
        with session_scope(self._sessions(args)) as session:
            check = self._ledger(session).rebuild_wallet(args.vendor_id)
        self._print_check(check)
        if check.repaired:
            print("Cached totals rebuilt from the transaction log.")
        return 0 if not check.chain_problems else 1

    def _print_check(self, check: WalletCheck) -> None:
        print(f"Wallet check for vendor: {check.vendor_id}")
        if check.ok:
            print("  Totals match the transaction log.")
            return
        for name, (cached, derived) in check.drift.items():
            print(f"  {name}: cached {cached}, log says {derived}")
        for problem in check.chain_problems:
            print(f"  {problem}")

    def _cmd_sweep(self, args: argparse.Namespace) -> int:
        scheduler = AutoRejectScheduler(self._sessions(args), emitter=self._emitter())
        result = scheduler.trigger()
        print("Auto-reject sweep")
        print(f"  Overdue:    {result.scanned}")
        print(f"  Rejected:   {result.rejected}")
        print(f"  Penalized:  {result.penalized}")
        print(f"  Queued:     {result.queued_for_reconciliation}")
        print(f"  Failed:     {result.failed}")
        return 0 if result.success else 1

    def _cmd_run_scheduler(self, args: argparse.Namespace) -> int:
        scheduler = AutoRejectScheduler(
            self._sessions(args), emitter=self._emitter(), interval=args.interval
        )
        scheduler.start()
        print(f"Auto-reject scheduler running every {scheduler.interval}s (Ctrl+C to stop)")
        try:
            while scheduler.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.stop()
        return 0

    def _cmd_retry_reconciliation(self, args: argparse.Namespace) -> int:
        with session_scope(self._sessions(args)) as session:
            service = ReconciliationService(session, self._ledger(session))
            result = service.retry_pending(limit=args.limit)
        print("Reconciliation retry")
        print(f"  Processed: {result.items_processed}")
        print(f"  Resolved:  {result.items_resolved}")
        print(f"  Failed:    {result.items_failed}")
        for error in result.errors:
            print(f"    - {error['item_id']}: {error['error']}")
        return 0 if result.success else 1


def main() -> int:
    """CLI entry point."""
    cli = VendorLedgerCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
