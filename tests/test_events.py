"""
Tests for the Event System (Observer Pattern)

Tests the event dispatcher, critical handlers and the events the managers
publish.
"""

import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

from sacco_core.events import (
    DomainEvent, EventPayload, EventDispatcher, EventPublisherMixin, create_loan_event
)
from sacco_core.storage import InMemoryStorage
from sacco_core.config import SaccoConfig
from sacco_core.members import SavingsCategory
from sacco_core.periods import period_bounds
from sacco_core.service import SaccoService


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = EventPayload(
            event_type=DomainEvent.DEPOSIT_RECORDED,
            entity_type="deposit",
            entity_id="dep-123",
            data={"amount": "100.00"}
        )

        assert event.event_type == DomainEvent.DEPOSIT_RECORDED
        assert event.entity_id == "dep-123"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_to_dict(self):
        """Test serialization of a payload"""
        event = EventPayload(DomainEvent.LOAN_APPLIED, "loan", "loan-1", {"principal": "100.00"})
        event_dict = event.to_dict()

        assert event_dict["event_type"] == "loan.applied"
        assert event_dict["entity_id"] == "loan-1"
        assert event_dict["data"] == {"principal": "100.00"}
        assert event_dict["timestamp"] == event.timestamp.isoformat()


class TestEventDispatcher:
    """Test the event dispatcher"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def _event(self, event_type=DomainEvent.LOAN_APPROVED):
        return EventPayload(event_type, "loan", "loan-1", {})

    def test_subscribe_and_publish(self):
        """Test that handlers receive only their event type"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_APPROVED, handler)

        event = self._event()
        self.dispatcher.publish(event)
        self.dispatcher.publish(self._event(DomainEvent.LOAN_REJECTED))

        handler.assert_called_once_with(event)

    def test_global_handler(self):
        """Test that subscribe_all receives every event"""
        handler = Mock()
        self.dispatcher.subscribe_all(handler)

        self.dispatcher.publish(self._event(DomainEvent.LOAN_APPROVED))
        self.dispatcher.publish(self._event(DomainEvent.PERIOD_CREATED))

        assert handler.call_count == 2

    def test_non_critical_handler_errors_are_contained(self):
        """Test that a failing handler does not stop the others"""
        failing = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_APPROVED, failing)
        self.dispatcher.subscribe(DomainEvent.LOAN_APPROVED, healthy)

        self.dispatcher.publish(self._event())

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_critical_handler_errors_propagate(self):
        """Test that a critical handler's exception reaches the publisher"""
        self.dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, Mock(side_effect=ValueError("bad")), critical=True)

        with pytest.raises(ValueError):
            self.dispatcher.publish(self._event(DomainEvent.LOAN_COMPLETED))

    def test_unsubscribe_and_counts(self):
        """Test handler bookkeeping"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_APPROVED, handler)
        self.dispatcher.subscribe(DomainEvent.LOAN_REJECTED, Mock())
        self.dispatcher.subscribe_all(Mock())

        assert self.dispatcher.get_handler_count(DomainEvent.LOAN_APPROVED) == 1
        assert self.dispatcher.get_handler_count() == 3

        self.dispatcher.unsubscribe(DomainEvent.LOAN_APPROVED, handler)
        self.dispatcher.publish(self._event())
        handler.assert_not_called()
        assert self.dispatcher.get_handler_count(DomainEvent.LOAN_APPROVED) == 0

        # Unsubscribing twice is harmless
        self.dispatcher.unsubscribe(DomainEvent.LOAN_APPROVED, handler)

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0


class TestPublishing:
    """Test events published by the ledger"""

    def test_mixin_without_dispatcher_is_silent(self):
        """Test that managers without a dispatcher publish nothing"""
        publisher = EventPublisherMixin()
        publisher.publish_event(DomainEvent.PERIOD_CREATED, "period", "p1", {})

    def test_create_loan_event(self):
        """Test the loan event payload"""
        service = SaccoService(storage=InMemoryStorage(), config=SaccoConfig())
        member = service.members.register_member("Joy", category=SavingsCategory.A)
        start, end = period_bounds(2025, 1)
        period = service.periods.create_period(2025, 1, start, end)
        service.periods.activate(period.id)
        loan = service.loans.apply(member.id, period.id, Decimal('200'), "Tools")

        event = create_loan_event(DomainEvent.LOAN_APPLIED, loan)

        assert event.entity_type == "loan"
        assert event.entity_id == loan.id
        assert event.data["principal"] == "200.00"
        assert event.data["total_amount"] == "210.00"
        assert event.data["currency"] == "EUR"
        assert event.data["status"] == "pending"

    def test_loan_lifecycle_events(self):
        """Test the sequence of events a repaid loan produces"""
        service = SaccoService(storage=InMemoryStorage(), config=SaccoConfig())
        seen = []
        service.events.subscribe_all(lambda event: seen.append(event.event_type))

        member = service.members.register_member("Joy", category=SavingsCategory.A)
        start, end = period_bounds(2025, 1)
        period = service.periods.create_period(2025, 1, start, end)
        service.periods.activate(period.id)
        loan = service.loans.apply(member.id, period.id, "200", "Tools")
        service.loans.approve(loan.id, "chair")
        service.loans.disburse(loan.id, "treasurer")
        service.loans.record_repayment(loan.id, "210")

        assert seen == [
            DomainEvent.PERIOD_CREATED,
            DomainEvent.PERIOD_ACTIVATED,
            DomainEvent.LOAN_APPLIED,
            DomainEvent.LOAN_APPROVED,
            DomainEvent.LOAN_DISBURSED,
            DomainEvent.LOAN_REPAYMENT,
            DomainEvent.INTEREST_DISTRIBUTED,
            DomainEvent.LOAN_COMPLETED,
        ]
