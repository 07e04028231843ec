"""
Event System Module

In-process publish/subscribe dispatcher connecting the ledger components.
The Loan Engine publishes lifecycle events; the Interest Distribution Engine
subscribes to loan completion as a critical handler so its writes share the
publisher's transaction.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the cooperative ledger"""

    # Period events
    PERIOD_CREATED = "period.created"
    PERIOD_ACTIVATED = "period.activated"
    PERIOD_COMPLETED = "period.completed"
    SHAREOUT_ACTIVATED = "period.shareout_activated"

    # Savings events
    TARGET_SET = "savings.target_set"
    DEPOSIT_RECORDED = "savings.deposit_recorded"

    # Loan events
    LOAN_APPLIED = "loan.applied"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_DISBURSED = "loan.disbursed"
    LOAN_REPAYMENT = "loan.repayment"
    LOAN_COMPLETED = "loan.completed"
    LOAN_DEFAULTED = "loan.defaulted"
    LOAN_DELETED = "loan.deleted"

    # Distribution events
    INTEREST_DISTRIBUTED = "interest.distributed"
    YEAR_SHAREOUT_COMPLETED = "interest.year_shareout_completed"

    # Shareout workflow events
    SHAREOUT_DECIDED = "shareout.decided"
    SHAREOUT_COMPLETED = "shareout.completed"


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
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__qualname__", None) or getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher with publish/subscribe semantics"""

    def __init__(self):
        # (handler, critical) pairs per event type
        self._handlers: Dict[DomainEvent, List[Tuple[Callable, bool]]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers, never critical
        self._lock = RLock()
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: DomainEvent, handler: Callable, critical: bool = False) -> None:
        """
        Subscribe to a specific event type.

        A critical handler's exceptions propagate out of publish(), which
        rolls back the publisher's transaction. Non-critical handler errors
        are logged and ignored.
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append((handler, critical))
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value} (critical={critical})")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            remaining = [(h, c) for h, c in handlers if h != handler]
            if len(remaining) == len(handlers):
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")
                return
            self._handlers[event_type] = remaining
            self.logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")

            for handler, critical in list(self._handlers.get(event.event_type, [])):
                if critical:
                    handler(event)
                    continue
                try:
                    handler(event)
                except Exception as e:
                    self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

            for handler in list(self._global_handlers):
                try:
                    handler(event)
                except Exception as e:
                    self.logger.error(f"Error in global event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All event handlers cleared")

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class EventPublisherMixin:
    """Mixin adding event publishing to the ledger managers"""

    event_dispatcher: Optional[EventDispatcher] = None

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any]) -> None:
        """Publish a domain event if a dispatcher is attached"""
        if self.event_dispatcher is None:
            return
        self.event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        ))


def create_loan_event(event_type: DomainEvent, loan) -> EventPayload:
    """Create a loan-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data={
            "loan_number": loan.loan_number,
            "member_id": loan.member_id,
            "period_id": loan.period_id,
            "principal": str(loan.principal.amount),
            "total_amount": str(loan.total_amount.amount),
            "outstanding_balance": str(loan.outstanding_balance.amount),
            "currency": loan.principal.currency.code,
            "status": loan.status.value
        }
    )
