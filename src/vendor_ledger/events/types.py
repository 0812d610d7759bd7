"""Domain event types for assignment and ledger operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for logging and delivery
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from vendor_ledger.clock import utc_now


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    ASSIGNMENT = "assignment"
    LEDGER = "ledger"
    RECONCILIATION = "reconciliation"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    actor_id: str | None  # Vendor, admin or None for the system
    actor_type: str  # 'vendor', 'admin', 'scheduler', 'system'
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        actor_id: str | None = None,
        actor_type: str = "system",
        correlation_id: UUID | None = None,
        source_service: str = "vendor_ledger",
        timestamp: datetime | None = None,
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=timestamp or utc_now(),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize(asdict(self))
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_serialize(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Assignment Events
# =============================================================================


@dataclass(frozen=True)
class TaskAssigned(DomainEvent):
    """A work unit was handed to a vendor and awaits their response."""

    case_id: str
    vendor_id: str
    assigned_by: str | None
    response_deadline: datetime | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.ASSIGNMENT


@dataclass(frozen=True)
class TaskAccepted(DomainEvent):
    case_id: str
    vendor_id: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.ASSIGNMENT


@dataclass(frozen=True)
class TaskDeclined(DomainEvent):
    """The assigned vendor declined; the work unit is closed."""

    case_id: str
    vendor_id: str
    reason: str
    penalty_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.ASSIGNMENT


@dataclass(frozen=True)
class TaskCompleted(DomainEvent):
    case_id: str
    vendor_id: str
    payment_method: str
    billing_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.ASSIGNMENT


@dataclass(frozen=True)
class TaskCancelled(DomainEvent):
    """The vendor walked away from an accepted work unit."""

    case_id: str
    vendor_id: str
    reason: str
    penalty_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.ASSIGNMENT


@dataclass(frozen=True)
class TaskAutoRejected(DomainEvent):
    """The vendor missed the response deadline; the unit went back to the pool."""

    case_id: str
    vendor_id: str
    response_deadline: datetime | None
    penalty_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.ASSIGNMENT


@dataclass(frozen=True)
class PaymentConfirmed(DomainEvent):
    case_id: str
    vendor_id: str
    payment_reference: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.ASSIGNMENT


# =============================================================================
# Ledger Events
# =============================================================================


@dataclass(frozen=True)
class LedgerEntryPosted(DomainEvent):
    vendor_id: str
    case_id: str | None
    transaction_id: UUID
    transaction_type: str
    amount: Decimal
    balance_after: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.LEDGER


@dataclass(frozen=True)
class LedgerPostingFailed(DomainEvent):
    """A transition committed but its ledger mutation did not.

    A reconciliation item with the same idempotency key is queued for retry.
    """

    vendor_id: str
    case_id: str | None
    operation: str
    idempotency_key: str
    error: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECONCILIATION
