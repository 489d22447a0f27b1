"""
Event System Module

Publish/subscribe dispatcher for the events the engine emits at its
boundary: contract, installment, payment and mandate lifecycle changes.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Events emitted by the engine"""

    # Contract events
    CONTRACT_CREATED = "contract.created"
    CONTRACT_RESCHEDULED = "contract.rescheduled"
    CONTRACT_COMPLETED = "contract.completed"
    CONTRACT_DEFAULTED = "contract.defaulted"
    CONTRACT_CANCELLED = "contract.cancelled"

    # Installment events
    INSTALLMENT_AMENDED = "installment.amended"
    INSTALLMENT_PAYMENT_APPLIED = "installment.payment_applied"

    # Payment attempt events
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_RETRY_SCHEDULED = "payment.retry_scheduled"
    PAYMENT_RETRY_INITIATED = "payment.retry_initiated"
    PAYMENT_RETRY_EXHAUSTED = "payment.retry_exhausted"

    # Mandate events
    MANDATE_INITIATED = "mandate.initiated"
    MANDATE_APPROVED = "mandate.approved"
    MANDATE_FAILED = "mandate.failed"
    MANDATE_EXPIRED = "mandate.expired"
    MANDATE_CANCELLED = "mandate.cancelled"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
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


class EventDispatcher:
    """Central event dispatcher, publish/subscribe"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("hire_purchase.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
            else:
                self.logger.warning("Handler %r was not subscribed to %s", handler, event_type.value)

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; handler errors never reach the publisher"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug("Publishing %s for %s:%s", event.event_type.value, event.entity_type, event.entity_id)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    "Error in event handler %s for %s",
                    getattr(handler, "__name__", repr(handler)), event.event_type.value,
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


class EventPublisherMixin:
    """Adds event publishing to engine components"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: Optional[EventDispatcher]) -> None:
        self._event_dispatcher = event_dispatcher

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        if self._event_dispatcher is None:
            return
        self._event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        ))
