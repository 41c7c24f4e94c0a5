"""
Tests for the billing event dispatcher
"""

import pytest
from unittest.mock import Mock

from contract_billing.events import BillingEvent, EventDispatcher, EventPayload, publish_event
from contract_billing.exceptions import ConfigurationError


class TestEventPayload:
    """Test EventPayload functionality"""

    def test_event_payload_serialization(self):
        event = EventPayload(
            event_type=BillingEvent.INSTALLMENT_PAID,
            entity_type="installment",
            entity_id="contract-1_1",
            data={"amount": "1000.00"}
        )

        data = event.to_dict()

        assert data["event_type"] == "installment.paid"
        assert data["entity_id"] == "contract-1_1"
        assert data["data"] == {"amount": "1000.00"}
        assert data["event_id"] == event.event_id
        assert data["timestamp"] == event.timestamp.isoformat()


class TestEventDispatcher:
    """Test EventDispatcher functionality"""

    def test_handlers_run_in_registration_order(self):
        dispatcher = EventDispatcher()
        calls = []
        dispatcher.subscribe(BillingEvent.PAYMENT_COMPLETED, lambda e: calls.append("first"))
        dispatcher.subscribe(BillingEvent.PAYMENT_COMPLETED, lambda e: calls.append("second"))
        dispatcher.subscribe(BillingEvent.PAYMENT_FAILED, lambda e: calls.append("other"))

        publish_event(dispatcher, BillingEvent.PAYMENT_COMPLETED, "payment_transaction", "txn-1", {})

        assert calls == ["first", "second"]

    def test_handler_exceptions_dont_break_publisher(self):
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("handler down"))
        healthy = Mock()
        dispatcher.subscribe(BillingEvent.CONTRACT_STATUS_CHANGED, failing)
        dispatcher.subscribe(BillingEvent.CONTRACT_STATUS_CHANGED, healthy)

        publish_event(dispatcher, BillingEvent.CONTRACT_STATUS_CHANGED, "contract", "c1", {"to_status": "signed"})

        failing.assert_called_once()
        healthy.assert_called_once()
        assert healthy.call_args[0][0].data == {"to_status": "signed"}

    def test_sealed_dispatcher_rejects_subscriptions(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(BillingEvent.INSTALLMENT_OVERDUE, Mock())
        dispatcher.seal()

        assert dispatcher.sealed is True
        with pytest.raises(ConfigurationError):
            dispatcher.subscribe(BillingEvent.INSTALLMENT_OVERDUE, Mock())
        assert dispatcher.get_handler_count(BillingEvent.INSTALLMENT_OVERDUE) == 1

    def test_handler_counts(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(BillingEvent.PAYMENT_COMPLETED, Mock())
        dispatcher.subscribe(BillingEvent.PAYMENT_FAILED, Mock())
        dispatcher.subscribe(BillingEvent.PAYMENT_FAILED, Mock())

        assert dispatcher.get_handler_count(BillingEvent.PAYMENT_FAILED) == 2
        assert dispatcher.get_handler_count(BillingEvent.SCHEDULE_GENERATED) == 0
        assert dispatcher.get_handler_count() == 3

    def test_publish_without_dispatcher_is_noop(self):
        publish_event(None, BillingEvent.PAYMENT_COMPLETED, "payment_transaction", "txn-1", {})
