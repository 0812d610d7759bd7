"""Vendor notifications fired from task events.

Delivery (push, email, SMS) belongs to the surrounding system, which plugs
in through the Notifier protocol. Notifications are fire-and-forget: a
failed send is logged and never reaches the transition that caused it.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.events.types import (
    DomainEvent,
    LedgerPostingFailed,
    TaskAccepted,
    TaskAssigned,
    TaskAutoRejected,
    TaskCancelled,
    TaskCompleted,
    TaskDeclined,
)

logger = logging.getLogger(__name__)

ADMIN_RECIPIENT = "admin"

# event class -> (template, recipient is the vendor)
TEMPLATES: dict[type[DomainEvent], tuple[str, bool]] = {
    TaskAssigned: ("task_assigned", True),
    TaskAccepted: ("task_accepted", False),
    TaskDeclined: ("task_declined", True),
    TaskCompleted: ("task_completed", False),
    TaskCancelled: ("task_cancelled", True),
    TaskAutoRejected: ("task_auto_rejected", True),
    LedgerPostingFailed: ("ledger_posting_failed", False),
}


class Notifier(Protocol):
    """Delivery channel supplied by the surrounding system."""

    def send(self, recipient: str, template: str, context: dict[str, Any]) -> None:
        """Deliver one notification. May raise; callers log and move on."""
        ...


class LoggingNotifier:
    """Notifier that only writes to the log."""

    def send(self, recipient: str, template: str, context: dict[str, Any]) -> None:
        logger.info("Notify %s [%s]: %s", recipient, template, context)


class NotificationDispatcher:
    """Maps task events to notifications.

    Usage:
        dispatcher = NotificationDispatcher(PushNotifier())
        dispatcher.subscribe(emitter)
    """

    def __init__(self, notifier: Notifier | None = None) -> None:
        self.notifier = notifier or LoggingNotifier()
        self.sent = 0
        self.failed = 0

    def subscribe(self, emitter: EventEmitter) -> None:
        emitter.on(list(TEMPLATES), self.handle)

    def handle(self, event: DomainEvent) -> None:
        entry = TEMPLATES.get(type(event))
        if entry is None:
            return
        template, to_vendor = entry
        recipient = getattr(event, "vendor_id", None) if to_vendor else ADMIN_RECIPIENT
        if not recipient:
            return

        context = event.to_dict()
        context.pop("metadata", None)
        try:
            self.notifier.send(recipient, template, context)
        except Exception:
            self.failed += 1
            logger.exception("Notification %s to %s failed", template, recipient)
            return
        self.sent += 1
