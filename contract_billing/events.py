"""
Event System Module

Typed publish/subscribe registry for billing domain events. Handlers are registered
while the engine is wired at process start; once the dispatcher is sealed the
handler lists are fixed, and publishing never looks handlers up dynamically.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List, Optional
import logging
import uuid

from .exceptions import ConfigurationError


class BillingEvent(Enum):
    """Domain events raised by the billing engine"""

    # Contract events
    CONTRACT_CREATED = "contract.created"
    CONTRACT_STATUS_CHANGED = "contract.status_changed"
    CONTRACT_NEGOTIATION_RECORDED = "contract.negotiation_recorded"
    CONTRACT_FINANCIALS_CONFIGURED = "contract.financials_configured"

    # Installment events
    SCHEDULE_GENERATED = "installment.schedule_generated"
    INSTALLMENT_PAID = "installment.paid"
    INSTALLMENT_OVERDUE = "installment.overdue"

    # Payment events
    PAYMENT_CONFIRMATION_REQUIRED = "payment.confirmation_required"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_REFUND_REQUIRED = "payment.refund_required"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: BillingEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


EventHandler = Callable[[EventPayload], None]


class EventDispatcher:
    """Maps each event tag to an ordered list of handlers"""

    def __init__(self):
        self._handlers: Dict[BillingEvent, List[EventHandler]] = {}
        self._sealed = False
        self._lock = RLock()
        self.logger = logging.getLogger("billing.events")

    def subscribe(self, event_type: BillingEvent, handler: EventHandler) -> None:
        """Register a handler; handlers run in registration order"""
        with self._lock:
            if self._sealed:
                raise ConfigurationError(
                    f"Cannot subscribe {getattr(handler, '__name__', repr(handler))} "
                    f"to {event_type.value} after the dispatcher is sealed"
                )
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def seal(self) -> None:
        """Freeze the registry once wiring is complete"""
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def publish(self, event: EventPayload) -> None:
        """Deliver to every handler; a failing handler never blocks the others"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}: {e}"
                )

    def get_handler_count(self, event_type: Optional[BillingEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(handlers) for handlers in self._handlers.values())


def publish_event(
    dispatcher: Optional[EventDispatcher],
    event_type: BillingEvent,
    entity_type: str,
    entity_id: str,
    data: Dict[str, Any]
) -> None:
    """Publish through an optional dispatcher"""
    if dispatcher is None:
        return
    dispatcher.publish(EventPayload(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        data=data
    ))
