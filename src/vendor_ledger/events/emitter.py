"""In-process publisher for domain events.

Handlers subscribe to specific event types or to everything. Dispatch is
synchronous and isolated: a failing handler is logged, its exception is
returned to the emitter's caller, and the remaining handlers still run.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Callable

from vendor_ledger.events.types import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass(frozen=True)
class Subscription:
    handler: EventHandler
    event_types: frozenset[str] | None  # None = every event

    def matches(self, event: DomainEvent) -> bool:
        return self.event_types is None or event.event_type in self.event_types


class EventEmitter:
    """Synchronous event emitter shared by the ledger and assignment services.

    Usage:
        emitter = EventEmitter()
        emitter.on([TaskDeclined, TaskAutoRejected], notify_vendor)
        emitter.on_all(audit_log)
        emitter.emit(event)
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def on(
        self,
        event_type: type[DomainEvent] | Iterable[type[DomainEvent]],
        handler: EventHandler,
    ) -> None:
        """Register a handler for one or more event classes."""
        classes = [event_type] if isinstance(event_type, type) else list(event_type)
        self._subscriptions.append(
            Subscription(handler, frozenset(cls.__name__ for cls in classes))
        )

    def on_all(self, handler: EventHandler) -> None:
        """Register a handler for every event."""
        self._subscriptions.append(Subscription(handler, None))

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Deliver an event to matching handlers; returns handler failures."""
        errors: list[Exception] = []
        for sub in self._subscriptions:
            if not sub.matches(event):
                continue
            try:
                sub.handler(event)
            except Exception as e:
                logger.exception("Handler %r failed for %s", sub.handler, event.event_type)
                errors.append(e)
        return errors
