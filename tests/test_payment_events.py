"""
Tests for projecting payment provider events onto orders.
"""
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from fulfillment.exceptions import ProviderTransientError
from fulfillment.models import Order, OrderLog, RetryOperation, db
from fulfillment.retry.operations import CreateRemoteOrderPayload

from factories import checkout_session, make_cart_item, make_order, make_product, remote_order


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _handle(services, event):
    return services["payment_events"].handle(event)


class TestCheckoutEvents:

    def test_paid_checkout_creates_order(self, app, services, prodigi):
        prodigi.create_order.side_effect = ProviderTransientError("timeout")
        cart_item = make_cart_item("user_1", make_product())
        session = checkout_session("cs_paid", "user_1", [cart_item])

        outcome = _handle(services, _event("checkout.session.completed", session))

        assert outcome == "created"
        assert Order.query.filter_by(external_payment_session_id="cs_paid").count() == 1

    def test_unsaved_fulfillment_work_is_not_acknowledged(self, app, services, retry_service, prodigi):
        """The event must fail while the create operation is unsaved, and a redelivery finishes the order."""
        prodigi.create_order.return_value = remote_order("ord_redelivered")
        cart_item = make_cart_item("user_1", make_product())
        event = _event("checkout.session.completed", checkout_session("cs_flaky", "user_1", [cart_item]))
        storage_error = OperationalError("INSERT INTO retry_operations", {}, Exception("database is locked"))

        with patch.object(retry_service.store, "insert", side_effect=storage_error):
            with pytest.raises(OperationalError):
                _handle(services, event)
        db.session.rollback()

        order_id = Order.query.filter_by(external_payment_session_id="cs_flaky").one().id
        assert RetryOperation.query.filter_by(order_id=order_id).count() == 0

        outcome = _handle(services, event)

        assert outcome == "resumed"
        create_ops = RetryOperation.query.filter_by(order_id=order_id, type="create_remote_order").all()
        assert [op.status for op in create_ops] == ["completed"]
        assert RetryOperation.query.filter_by(order_id=order_id, type="send_notification").count() == 1
        assert db.session.get(Order, order_id).status == "processing"

    def test_unpaid_checkout_waits_for_async_result(self, app, services, prodigi):
        cart_item = make_cart_item("user_1", make_product())
        session = checkout_session("cs_async", "user_1", [cart_item], payment_status="unpaid")

        outcome = _handle(services, _event("checkout.session.completed", session))

        assert outcome == "deferred"
        assert Order.query.count() == 0
        prodigi.create_order.assert_not_called()

    def test_async_success_creates_paid_order(self, app, services, prodigi):
        prodigi.create_order.side_effect = ProviderTransientError("timeout")
        cart_item = make_cart_item("user_1", make_product())
        session = checkout_session("cs_async", "user_1", [cart_item], payment_status="paid")

        outcome = _handle(services, _event("checkout.session.async_payment_succeeded", session))

        assert outcome == "created"
        order = Order.query.filter_by(external_payment_session_id="cs_async").one()
        assert order.status == "paid"
        assert order.payment_status == "paid"
        assert RetryOperation.query.filter_by(order_id=order.id, type="create_remote_order").count() == 1

    def test_async_failure_cancels_order_and_pending_work(self, app, services, retry_service):
        order = make_order(external_payment_session_id="cs_fail")
        operation_id = retry_service.schedule("create_remote_order", order.id, CreateRemoteOrderPayload())

        outcome = _handle(services, _event("checkout.session.async_payment_failed", {"id": "cs_fail"}))

        assert outcome == "updated"
        assert order.status == "cancelled"
        assert order.payment_status == "failed"
        assert retry_service.store.get(operation_id, refresh=True).status == "cancelled"

    def test_async_failure_for_unknown_session_creates_nothing(self, app, services, prodigi):
        cart_item = make_cart_item("user_1", make_product())
        session = checkout_session("cs_never", "user_1", [cart_item], payment_status="unpaid")

        outcome = _handle(services, _event("checkout.session.async_payment_failed", session))

        assert outcome == "order_not_found"
        assert Order.query.count() == 0
        assert RetryOperation.query.count() == 0
        prodigi.create_order.assert_not_called()


# ==============================================================================
# Payment intents
# ==============================================================================

class TestPaymentIntentEvents:

    def test_succeeded_marks_order_paid(self, app, services):
        order = make_order(status="pending", payment_status="unpaid", payment_intent_id="pi_ok")

        outcome = _handle(services, _event("payment_intent.succeeded", {"id": "pi_ok"}))

        assert outcome == "updated"
        assert order.status == "paid"
        assert order.payment_status == "paid"
        entry = OrderLog.query.filter_by(order_id=order.id, action="payment_status_updated").one()
        assert entry.details["previous_status"] == "pending"
        assert entry.details["event_id"] == "evt_1"

    def test_succeeded_does_not_move_shipped_order_back(self, app, services):
        order = make_order(status="shipped", payment_intent_id="pi_late")

        _handle(services, _event("payment_intent.succeeded", {"id": "pi_late"}))

        assert order.status == "shipped"

    def test_failed_cancels_order_and_pending_work(self, app, services, retry_service):
        order = make_order(payment_intent_id="pi_bad")
        operation_id = retry_service.schedule("create_remote_order", order.id, CreateRemoteOrderPayload())

        outcome = _handle(services, _event("payment_intent.payment_failed", {"id": "pi_bad"}))

        assert outcome == "updated"
        assert order.status == "cancelled"
        assert retry_service.store.get(operation_id, refresh=True).status == "cancelled"

    def test_requires_action_on_paid_order(self, app, services):
        order = make_order(payment_intent_id="pi_3ds")

        _handle(services, _event("payment_intent.requires_action", {"id": "pi_3ds"}))

        assert order.status == "pending"
        assert order.payment_status == "requires_action"

    def test_requires_action_keeps_order_in_fulfillment(self, app, services):
        order = make_order(status="processing", payment_intent_id="pi_3ds")

        _handle(services, _event("payment_intent.requires_action", {"id": "pi_3ds"}))

        assert order.status == "processing"
        assert order.payment_status == "requires_action"

    def test_unknown_intent(self, app, services):
        assert _handle(services, _event("payment_intent.succeeded", {"id": "pi_nope"})) == "order_not_found"


# ==============================================================================
# Disputes and unhandled events
# ==============================================================================

class TestOtherEvents:

    def test_dispute_marks_order_and_schedules_processing(self, app, services):
        order = make_order(payment_intent_id="pi_disputed", order_metadata={"stripe_session_id": "cs_x"})
        dispute = {
            "id": "dp_1",
            "payment_intent": "pi_disputed",
            "reason": "fraudulent",
            "amount": 5999,
            "currency": "usd",
        }

        outcome = _handle(services, _event("charge.dispute.created", dispute, event_id="evt_dispute"))

        assert outcome == "updated"
        assert order.status == "disputed"
        assert order.order_metadata["dispute_id"] == "dp_1"
        assert order.order_metadata["stripe_session_id"] == "cs_x"
        operation = RetryOperation.query.filter_by(order_id=order.id, type="process_payment_event").one()
        assert operation.payload["event_id"] == "evt_dispute"
        assert operation.payload["data"]["dispute_reason"] == "fraudulent"

    def test_unhandled_event_type_is_ignored(self, app, services):
        assert _handle(services, _event("customer.created", {"id": "cus_1"})) == "ignored"
