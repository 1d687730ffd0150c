"""
Event System Module

Change notifications fired after every successful lifecycle or installment
mutation. The engines only call Notifier.emit; fan-out to dashboards, queues or
websockets is up to whoever subscribes to the dispatcher.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events emitted by the lifecycle and payment engines"""

    LOAN_SUBMITTED = "loan.submitted"
    LOAN_STATUS_CHANGED = "loan.status_changed"
    LOAN_DISBURSED = "loan.disbursed"
    PRODUCT_DELIVERED = "loan.product_delivered"
    DOCUMENT_ATTACHED = "loan.document_attached"
    INSTALLMENT_CHANGED = "installment.changed"
    PAYMENT_STATUS_CHANGED = "loan.payment_status_changed"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    loan_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'loan_id': self.loan_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            loan_id=data['loan_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


class Notifier(ABC):
    """Change-notification collaborator"""

    @abstractmethod
    def emit(self, event_type: DomainEvent, loan_id: str, payload: Dict[str, Any]) -> None:
        """Announce a committed change"""
        pass


class EventDispatcher(Notifier):
    """Central event dispatcher (publish/subscribe)"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_servicing.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def emit(self, event_type: DomainEvent, loan_id: str, payload: Dict[str, Any]) -> None:
        """Build an EventPayload and publish it"""
        self.publish(EventPayload(event_type=event_type, loan_id=loan_id, data=payload))

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for loan {event.loan_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Subscribers own their delivery; the change is already committed
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))
