"""Domain events for assignment and ledger operations."""

from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.events.types import (
    DomainEvent,
    EventCategory,
    EventMetadata,
    LedgerEntryPosted,
    LedgerPostingFailed,
    PaymentConfirmed,
    TaskAccepted,
    TaskAssigned,
    TaskAutoRejected,
    TaskCancelled,
    TaskCompleted,
    TaskDeclined,
)

__all__ = [
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "EventEmitter",
    "TaskAssigned",
    "TaskAccepted",
    "TaskDeclined",
    "TaskCompleted",
    "TaskCancelled",
    "TaskAutoRejected",
    "PaymentConfirmed",
    "LedgerEntryPosted",
    "LedgerPostingFailed",
]
