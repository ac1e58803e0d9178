"""
Tests for turning checkout sessions into orders.
"""
import re
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from fulfillment.exceptions import ProviderTransientError
from fulfillment.models import (
    CartItem,
    CheckoutAddress,
    DropshipOrder,
    Order,
    OrderLog,
    RetryOperation,
    db,
)
from fulfillment.retry.operations import CreateRemoteOrderPayload
from fulfillment.services.order_materializer import (
    CREATED,
    DROPPED,
    DUPLICATE,
    RESUMED,
    next_order_number,
    parse_amount,
    placeholder_address,
)

from factories import checkout_session, make_cart_item, make_order, make_product, remote_order


def _operations(order_id, operation_type=None):
    query = RetryOperation.query.filter_by(order_id=order_id)
    if operation_type:
        query = query.filter_by(type=operation_type)
    return query.all()


def _notification_types(order_id):
    return sorted(op.payload["type"] for op in _operations(order_id, "send_notification"))


class TestHelpers:

    def test_parse_amount(self, app):
        assert parse_amount("12.50") == Decimal("12.50")
        assert parse_amount(7) == Decimal("7")
        assert parse_amount(None) == Decimal("0")
        assert parse_amount("abc") == Decimal("0")

    def test_next_order_number_continues_daily_counter(self, app):
        make_order(order_number="20250301-0007")
        assert next_order_number(datetime(2025, 3, 1, 12, 0)) == "20250301-0008"
        assert next_order_number(datetime(2025, 3, 2, 0, 5)) == "20250302-0001"

    def test_next_order_number_past_four_digits(self, app):
        make_order(order_number="20250301-9999")
        make_order(order_number="20250301-10000")
        assert next_order_number(datetime(2025, 3, 1, 18, 0)) == "20250301-10001"

    def test_placeholder_country_follows_currency(self):
        assert placeholder_address("cad")["country"] == "CA"
        assert placeholder_address("usd")["country"] == "US"
        assert placeholder_address(None)["country"] == "US"


# ==============================================================================
# New orders
# ==============================================================================

class TestMaterializeNewOrder:

    def test_creates_order_and_starts_fulfillment(self, app, services, prodigi):
        prodigi.create_order.return_value = remote_order("ord_1")
        product = make_product()
        cart_item = make_cart_item("user_42", product, quantity=2)
        session = checkout_session("cs_new", "user_42", [cart_item])

        result = services["materializer"].materialize(session)

        assert result.status == CREATED
        order = db.session.get(Order, result.order_id)
        assert re.fullmatch(r"\d{8}-\d{4}", order.order_number)
        assert order.user_id == "user_42"
        assert order.status == "processing"
        assert order.total == Decimal("59.99")
        assert order.tax == Decimal("4.00")
        assert order.payment_intent_id == "pi_cs_new"
        assert order.order_metadata["stripe_session_id"] == "cs_new"
        assert [(li.product_id, li.quantity) for li in order.line_items] == [(product.id, 2)]
        assert order.line_items[0].total_price == Decimal("99.98")

        dropship = DropshipOrder.query.filter_by(order_id=order.id).one()
        assert dropship.provider_order_id == "ord_1"

        assert len(result.operation_ids) == 2
        create_op = _operations(order.id, "create_remote_order")[0]
        assert create_op.status == "completed"
        assert _notification_types(order.id) == ["order_created", "order_processing"]

        assert CartItem.query.filter_by(user_id="user_42").count() == 0
        assert OrderLog.query.filter_by(order_id=order.id, action="order_created").count() == 1

    def test_order_is_kept_when_provider_is_down(self, app, services, prodigi):
        prodigi.create_order.side_effect = ProviderTransientError("503 Service Unavailable", status_code=503)
        cart_item = make_cart_item("user_42", make_product())

        result = services["materializer"].materialize(checkout_session("cs_down", "user_42", [cart_item]))

        assert result.status == CREATED
        order = db.session.get(Order, result.order_id)
        assert order.status == "paid"
        create_op = _operations(order.id, "create_remote_order")[0]
        assert create_op.status == "pending"
        assert create_op.attempts == 1
        assert create_op.error == "503 Service Unavailable"

    def test_second_delivery_is_duplicate(self, app, services, prodigi):
        prodigi.create_order.return_value = remote_order("ord_1")
        cart_item = make_cart_item("user_42", make_product())
        session = checkout_session("cs_twice", "user_42", [cart_item])

        first = services["materializer"].materialize(session)
        second = services["materializer"].materialize(session)

        assert first.status == CREATED
        assert second.status == DUPLICATE
        assert second.order_id == first.order_id
        assert Order.query.filter_by(external_payment_session_id="cs_twice").count() == 1
        assert prodigi.create_order.call_count == 1

    def test_missing_metadata_is_dropped(self, app, services):
        session = checkout_session("cs_nometa", "user_42", [], metadata={})

        result = services["materializer"].materialize(session)

        assert result.status == DROPPED
        assert Order.query.count() == 0

    def test_no_cart_items_is_dropped(self, app, services):
        session = checkout_session("cs_empty", "user_42", [])
        session["metadata"]["cartItemIds"] = "cart_gone"

        result = services["materializer"].materialize(session)

        assert result.status == DROPPED
        assert result.reason == "no cart items found"
        assert Order.query.count() == 0

    def test_other_users_cart_items_are_ignored(self, app, services):
        cart_item = make_cart_item("someone_else", make_product())

        result = services["materializer"].materialize(checkout_session("cs_other", "user_42", [cart_item]))

        assert result.status == DROPPED
        assert CartItem.query.count() == 1


# ==============================================================================
# Shipping address resolution
# ==============================================================================

class TestShippingAddress:

    def test_checkout_address_preferred(self, app, services, prodigi):
        prodigi.create_order.return_value = remote_order("ord_1")
        db.session.add(CheckoutAddress(session_id="cs_addr", shipping_address={
            "firstName": "Grace",
            "lastName": "Hopper",
            "address1": "9 Elm St",
            "city": "Boulder",
            "state": "CO",
            "zip": "80301",
            "country": "US",
        }))
        db.session.commit()
        cart_item = make_cart_item("user_42", make_product())

        result = services["materializer"].materialize(checkout_session("cs_addr", "user_42", [cart_item]))

        order = db.session.get(Order, result.order_id)
        assert order.address_source == "checkout"
        assert order.shipping_address["line1"] == "9 Elm St"
        assert order.shipping_address["first_name"] == "Grace"
        assert order.shipping_address["postal_code"] == "80301"

    def test_incomplete_checkout_address_falls_back_to_payment_address(self, app, services, prodigi):
        prodigi.create_order.return_value = remote_order("ord_1")
        db.session.add(CheckoutAddress(session_id="cs_partial", shipping_address={"address1": "9 Elm St"}))
        db.session.commit()
        cart_item = make_cart_item("user_42", make_product())

        result = services["materializer"].materialize(checkout_session("cs_partial", "user_42", [cart_item]))

        order = db.session.get(Order, result.order_id)
        assert order.address_source == "payment_event"
        assert order.shipping_address["line1"] == "500 Market St"

    def test_placeholder_address_is_logged(self, app, services, prodigi):
        prodigi.create_order.return_value = remote_order("ord_1")
        cart_item = make_cart_item("user_42", make_product())
        session = checkout_session("cs_noaddr", "user_42", [cart_item], currency="cad", address=False)

        result = services["materializer"].materialize(session)

        order = db.session.get(Order, result.order_id)
        assert order.address_source == "placeholder"
        assert order.shipping_address["country"] == "CA"
        assert order.shipping_address["postal_code"] == "00000"
        assert OrderLog.query.filter_by(order_id=order.id, action="placeholder_address_used").count() == 1


# ==============================================================================
# Partially built orders
# ==============================================================================

class TestResume:

    def test_missing_dropship_record_is_completed(self, app, services, prodigi):
        prodigi.create_order.return_value = remote_order("ord_9")
        order = make_order(with_dropship=False, external_payment_session_id="cs_resume", user_id="user_9")
        cart_item = make_cart_item("user_9", make_product())

        result = services["materializer"].materialize(checkout_session("cs_resume", "user_9", [cart_item]))

        assert result.status == RESUMED
        assert result.order_id == order.id
        assert len(result.operation_ids) == 2
        assert DropshipOrder.query.filter_by(order_id=order.id).one().provider_order_id == "ord_9"
        assert OrderLog.query.filter_by(order_id=order.id, action="order_resumed").count() == 1
        assert _notification_types(order.id) == ["order_created"]

    def test_resume_does_not_repeat_confirmation(self, app, services, retry_service, prodigi):
        prodigi.create_order.return_value = remote_order("ord_9")
        order = make_order(with_dropship=False, external_payment_session_id="cs_confirmed", user_id="user_9")
        retry_service.schedule("send_notification", order.id, {
            "type": "order_created",
            "title": "Order confirmed",
            "message": "Thanks!",
        })
        cart_item = make_cart_item("user_9", make_product())

        result = services["materializer"].materialize(checkout_session("cs_confirmed", "user_9", [cart_item]))

        assert result.status == RESUMED
        assert len(result.operation_ids) == 1
        assert _notification_types(order.id) == ["order_created"]

    def test_missing_line_items_are_rebuilt_from_cart(self, app, services, prodigi):
        prodigi.create_order.return_value = remote_order("ord_9")
        order = make_order(with_items=False, with_dropship=False,
                           external_payment_session_id="cs_noitems", user_id="user_9")
        product = make_product()
        cart_item = make_cart_item("user_9", product, quantity=3)

        result = services["materializer"].materialize(checkout_session("cs_noitems", "user_9", [cart_item]))

        assert result.status == RESUMED
        db.session.refresh(order)
        assert [(li.product_id, li.quantity) for li in order.line_items] == [(product.id, 3)]
        assert CartItem.query.filter_by(user_id="user_9").count() == 0

    def test_pending_create_operation_counts_as_complete(self, app, services, retry_service, prodigi):
        order = make_order(external_payment_session_id="cs_pending", user_id="user_9")
        retry_service.schedule("create_remote_order", order.id, CreateRemoteOrderPayload())
        cart_item = make_cart_item("user_9", make_product())

        result = services["materializer"].materialize(checkout_session("cs_pending", "user_9", [cart_item]))

        assert result.status == DUPLICATE
        assert len(_operations(order.id, "create_remote_order")) == 1
        prodigi.create_order.assert_not_called()

    def test_concurrent_insert_resumes_existing_order(self, app, services, prodigi):
        """A unique-key conflict on insert means another run created the order first."""
        prodigi.create_order.return_value = remote_order("ord_race")
        existing = make_order(with_dropship=False, external_payment_session_id="cs_race", user_id="user_9")
        cart_item = make_cart_item("user_9", make_product())
        materializer = services["materializer"]

        with patch.object(materializer, "_find_order", side_effect=[None, existing]):
            result = materializer.materialize(checkout_session("cs_race", "user_9", [cart_item]))

        assert result.status == RESUMED
        assert result.order_id == existing.id
        assert Order.query.filter_by(external_payment_session_id="cs_race").count() == 1
