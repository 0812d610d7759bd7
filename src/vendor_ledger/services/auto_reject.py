"""Auto-reject scheduler.

Periodically returns work units to the pool when the assigned vendor has
not answered by the response deadline, posting an auto-rejection penalty
for each. The scheduler is an ordinary object: construct it with a session
factory, then drive it with start()/stop() or call run_once() directly.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from vendor_ledger.calculators.earning import get_policy
from vendor_ledger.clock import Clock, utc_now
from vendor_ledger.config import Settings, get_settings
from vendor_ledger.database import session_scope
from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.models import WorkUnit
from vendor_ledger.services.assignment_service import AssignmentService
from vendor_ledger.services.ledger_service import LedgerService
from vendor_ledger.services.state_machine import VendorStatus

logger = logging.getLogger(__name__)


class SchedulerStatus(str, Enum):
    """Status of the auto-reject scheduler."""

    STOPPED = "stopped"
    WAITING = "waiting"
    SWEEPING = "sweeping"


@dataclass
class SweepResult:
    """Result of one sweep."""

    started_at: datetime
    scanned: int = 0
    rejected: int = 0
    penalized: int = 0
    queued_for_reconciliation: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass
class SchedulerStats:
    """Statistics across sweeps."""

    last_run: datetime | None = None
    total_runs: int = 0
    total_rejected: int = 0
    total_failed: int = 0
    last_result: SweepResult | None = None


class AutoRejectScheduler:
    """Background sweep for overdue vendor responses.

    Each overdue unit is handled in its own transaction, so one failure
    never rolls back or blocks the others. A unit that another sweep (or
    the vendor) got to first is skipped, which keeps penalties exactly-once
    across overlapping or repeated sweeps.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        emitter: EventEmitter | None = None,
        interval: float | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self.emitter = emitter
        self.interval = interval if interval is not None else self.settings.auto_reject_interval_seconds
        self.policy = get_policy(self.settings.payout_policy)

        self.status = SchedulerStatus.STOPPED
        self.stats = SchedulerStats()
        self._stop_event = threading.Event()
        self._sweep_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> AutoRejectScheduler:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------

    def find_overdue(self, session: Session, now: datetime) -> list[str]:
        """Case ids of Pending units whose response deadline has passed."""
        result = session.execute(
            select(WorkUnit.case_id)
            .where(
                WorkUnit.vendor_status == VendorStatus.PENDING.value,
                WorkUnit.assigned_vendor_id.is_not(None),
                WorkUnit.response_deadline.is_not(None),
                WorkUnit.response_deadline <= now,
            )
            .order_by(WorkUnit.response_deadline)
        )
        return list(result.scalars().all())

    def run_once(self) -> SweepResult:
        """Run one sweep now and return what it did."""
        with self._sweep_lock:
            previous = self.status
            self.status = SchedulerStatus.SWEEPING
            try:
                return self._sweep()
            finally:
                self.status = previous

    def trigger(self) -> SweepResult:
        """Manual sweep, for operations and testing."""
        logger.info("Manual auto-reject sweep triggered")
        return self.run_once()

    def _sweep(self) -> SweepResult:
        now = self.clock()
        result = SweepResult(started_at=now)

        with self.session_factory() as session:
            case_ids = self.find_overdue(session, now)
        result.scanned = len(case_ids)
        if case_ids:
            logger.info("Auto-reject sweep found %d overdue work unit(s)", len(case_ids))

        for case_id in case_ids:
            try:
                with session_scope(self.session_factory) as session:
                    outcome = self._service(session).auto_reject(case_id, now)
            except Exception as e:
                result.failed += 1
                result.errors.append({"case_id": case_id, "error": str(e)})
                logger.exception("Auto-reject failed for %s", case_id)
                continue

            if outcome is None:
                continue
            result.rejected += 1
            if outcome.ledger_ok:
                if outcome.transaction is not None:
                    result.penalized += 1
            else:
                result.queued_for_reconciliation += 1

        self.stats.last_run = now
        self.stats.total_runs += 1
        self.stats.total_rejected += result.rejected
        self.stats.total_failed += result.failed
        self.stats.last_result = result
        if result.rejected or result.failed:
            logger.info(
                "Auto-reject sweep done: %d rejected, %d penalized, %d queued, %d failed",
                result.rejected, result.penalized, result.queued_for_reconciliation, result.failed,
            )
        return result

    def _service(self, session: Session) -> AssignmentService:
        ledger = LedgerService(session, policy=self.policy, clock=self.clock, emitter=self.emitter)
        return AssignmentService(
            session, ledger, settings=self.settings, clock=self.clock, emitter=self.emitter
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sweeping in a background thread, first sweep immediately."""
        if self.is_running:
            logger.warning("Auto-reject scheduler already running")
            return

        self._stop_event.clear()
        self.status = SchedulerStatus.WAITING
        self._thread = threading.Thread(
            target=self._loop, name="auto-reject-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Auto-reject scheduler started (every %ss)", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the background thread and wait for the current sweep."""
        if not self.is_running:
            self.status = SchedulerStatus.STOPPED
            return

        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        self.status = SchedulerStatus.STOPPED
        logger.info("Auto-reject scheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Auto-reject sweep failed")
            self._stop_event.wait(self.interval)

    def get_status(self) -> dict[str, Any]:
        """Scheduler state for health checks."""
        last = self.stats.last_result
        return {
            "status": self.status.value,
            "is_running": self.is_running,
            "interval_seconds": self.interval,
            "response_window_minutes": self.settings.response_window_minutes,
            "penalty_amount": str(self.settings.auto_rejection_penalty),
            "last_run": self.stats.last_run.isoformat() if self.stats.last_run else None,
            "total_runs": self.stats.total_runs,
            "total_rejected": self.stats.total_rejected,
            "total_failed": self.stats.total_failed,
            "last_sweep": None
            if last is None
            else {
                "scanned": last.scanned,
                "rejected": last.rejected,
                "penalized": last.penalized,
                "failed": last.failed,
            },
        }
