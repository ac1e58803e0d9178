"""
Turns a completed checkout session into exactly one local Order.

Materialization is idempotent per checkout session: the session id is a
unique key on orders, and a run that finds a partially built order completes
it instead of creating a second one.
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError

from fulfillment.datetime_utils import utcnow
from fulfillment.logging_config import get_logger, OperationContext
from fulfillment.models import (
    CartItem,
    CheckoutAddress,
    DropshipOrder,
    DropshipStatus,
    Order,
    OrderLineItem,
    OrderStatus,
    RetryOperation,
    db,
)
from fulfillment.retry.operations import OperationType, CreateRemoteOrderPayload, NotificationPayload
from fulfillment.services.order_log_service import OrderLogService

logger = get_logger(__name__)

CREATED = "created"
RESUMED = "resumed"
DUPLICATE = "duplicate"
DROPPED = "dropped"

MAX_ORDER_NUMBER_ATTEMPTS = 3
REQUIRED_CHECKOUT_FIELDS = ("address1", "city", "state")


@dataclass
class MaterializationResult:
    status: str
    order_id: Optional[str] = None
    reason: Optional[str] = None
    operation_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "order_id": self.order_id,
            "reason": self.reason,
            "operation_ids": self.operation_ids,
        }


def parse_amount(value):
    """Parse a decimal amount from checkout metadata, 0 when missing or malformed."""
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Invalid amount in checkout metadata", value=value)
        return Decimal("0")


def next_order_number(now=None):
    """Next YYYYMMDD-NNNN order number for the current day."""
    prefix = (now or utcnow()).strftime("%Y%m%d")
    # Longer suffixes first, so -10000 ranks above -9999
    latest = db.session.execute(
        select(Order.order_number)
        .where(Order.order_number.like(f"{prefix}-%"))
        .order_by(func.length(Order.order_number).desc(), Order.order_number.desc())
        .limit(1)
    ).scalar()
    counter = 1
    if latest:
        counter = int(latest.split("-", 1)[1]) + 1
    return f"{prefix}-{counter:04d}"


def placeholder_address(currency, name=None):
    return {
        "name": name,
        "line1": "Address not provided",
        "line2": None,
        "city": "Unknown",
        "state": "Unknown",
        "postal_code": "00000",
        "country": "CA" if (currency or "").upper() == "CAD" else "US",
    }


def resolve_shipping_address(session):
    """
    Pick the shipping address for a checkout session.

    Order of preference: the address captured at checkout, the address the
    payment provider collected, then a placeholder.

    Returns:
        tuple: (address dict, source) with source one of checkout,
        payment_event, placeholder
    """
    details = session.get("customer_details") or {}
    name = details.get("name")

    stored = db.session.execute(
        select(CheckoutAddress).where(CheckoutAddress.session_id == session.get("id"))
    ).scalars().first()

    if stored is not None:
        address = stored.shipping_address or {}
        if all(address.get(key) for key in REQUIRED_CHECKOUT_FIELDS):
            return {
                "first_name": address.get("firstName") or address.get("first_name"),
                "last_name": address.get("lastName") or address.get("last_name"),
                "name": name,
                "line1": address["address1"],
                "line2": address.get("address2"),
                "city": address["city"],
                "state": address["state"],
                "postal_code": address.get("zip") or "00000",
                "country": address.get("country") or "US",
            }, "checkout"
        logger.warning("Stored checkout address is incomplete", session_id=session.get("id"))

    remote = details.get("address")
    if remote:
        return {
            "name": name,
            "line1": remote.get("line1") or "Address not provided",
            "line2": remote.get("line2"),
            "city": remote.get("city") or "Unknown",
            "state": remote.get("state") or "Unknown",
            "postal_code": remote.get("postal_code") or "00000",
            "country": remote.get("country") or "US",
        }, "payment_event"

    return placeholder_address(session.get("currency"), name), "placeholder"


class OrderMaterializer:

    def __init__(self, retry_service, default_provider="prodigi"):
        self.retry_service = retry_service
        self.default_provider = default_provider

    def materialize(self, session, _attempt=1):
        """
        Create (or finish creating) the order for a completed checkout session.

        Args:
            session: checkout session object from the payment event

        Returns:
            MaterializationResult
        """
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        cart_item_ids = [i.strip() for i in (metadata.get("cartItemIds") or "").split(",") if i.strip()]
        context = {"session_id": session_id, "user_id": user_id, "cart_item_ids": cart_item_ids}

        if not session_id or not user_id or not cart_item_ids:
            logger.error("Checkout session is missing order metadata", **context)
            return MaterializationResult(DROPPED, reason="missing session id, user id or cart item ids")

        with OperationContext("materialize_order", session_id=session_id):
            order = self._find_order(session_id)
            cart_items = self._load_cart_items(user_id, cart_item_ids)

            if order is not None:
                if self._is_complete(order):
                    logger.info("Order already materialized", order_id=order.id, **context)
                    return MaterializationResult(DUPLICATE, order_id=order.id)
                return self._resume(order, cart_items, context)

            if not cart_items:
                logger.error("No cart items found for paid checkout session", **context)
                return MaterializationResult(DROPPED, reason="no cart items found")

            try:
                order = self._insert_order(session, user_id, cart_items, cart_item_ids)
            except IntegrityError:
                db.session.rollback()
                existing = self._find_order(session_id)
                if existing is not None:
                    logger.info("Order was created concurrently", order_id=existing.id, **context)
                    if self._is_complete(existing):
                        return MaterializationResult(DUPLICATE, order_id=existing.id)
                    return self._resume(existing, self._load_cart_items(user_id, cart_item_ids), context)
                if _attempt >= MAX_ORDER_NUMBER_ATTEMPTS:
                    logger.error("Could not allocate an order number", **context)
                    raise
                logger.warning("Order number collision; retrying", attempt=_attempt, **context)
                return self.materialize(session, _attempt=_attempt + 1)

            operation_ids = self._schedule_fulfillment(order, context, notify=True)
            return MaterializationResult(CREATED, order_id=order.id, operation_ids=operation_ids)

    def _find_order(self, session_id):
        return db.session.execute(
            select(Order).where(Order.external_payment_session_id == session_id)
        ).scalars().first()

    def _load_cart_items(self, user_id, cart_item_ids):
        return list(db.session.execute(
            select(CartItem).where(CartItem.user_id == user_id, CartItem.id.in_(cart_item_ids))
        ).scalars())

    def _providers(self, order):
        providers = []
        for line_item in order.line_items:
            provider = (line_item.product.provider if line_item.product else None) or self.default_provider
            if provider not in providers:
                providers.append(provider)
        return providers

    def _operations(self, order_id, operation_type):
        return list(db.session.execute(
            select(RetryOperation).where(
                RetryOperation.order_id == order_id,
                RetryOperation.type == operation_type.value,
            )
        ).scalars())

    def _has_operation(self, order_id, operation_type):
        return bool(self._operations(order_id, operation_type))

    def _has_create_operation(self, order_id, provider):
        operations = self._operations(order_id, OperationType.CREATE_REMOTE_ORDER)
        return any((op.payload or {}).get("provider") == provider for op in operations)

    def _is_complete(self, order):
        """Line items exist and every provider has a dropship record with remote creation underway."""
        if not order.line_items:
            return False
        for provider in self._providers(order):
            dropship = next((d for d in order.dropship_orders if d.provider == provider), None)
            if dropship is None:
                return False
            if not dropship.provider_order_id and not self._has_create_operation(order.id, provider):
                return False
        return True

    def _insert_order(self, session, user_id, cart_items, cart_item_ids):
        metadata = session.get("metadata") or {}
        details = session.get("customer_details") or {}
        shipping_address, address_source = resolve_shipping_address(session)

        order = Order(
            order_number=next_order_number(),
            user_id=user_id,
            external_payment_session_id=session["id"],
            payment_intent_id=session.get("payment_intent"),
            status=OrderStatus.PAID.value,
            payment_status="paid",
            subtotal=parse_amount(metadata.get("subtotal")),
            tax=parse_amount(metadata.get("taxAmount")),
            shipping=parse_amount(metadata.get("shippingAmount")),
            total=parse_amount(metadata.get("total")),
            currency=session.get("currency") or "usd",
            shipping_address=shipping_address,
            billing_address=details.get("address") or shipping_address,
            address_source=address_source,
            customer_email=session.get("customer_email") or details.get("email"),
            customer_name=details.get("name"),
            customer_phone=details.get("phone"),
            order_metadata={
                "stripe_session_id": session["id"],
                "payment_intent_id": session.get("payment_intent"),
            },
        )
        db.session.add(order)
        db.session.flush()

        self._add_line_items(order, cart_items)
        for provider in self._providers(order):
            db.session.add(DropshipOrder(order_id=order.id, provider=provider, status=DropshipStatus.PENDING.value))

        self._clear_cart(user_id, cart_item_ids)

        OrderLogService.log(order.id, "order_created", {
            "session_id": session["id"],
            "order_number": order.order_number,
            "item_count": len(cart_items),
            "address_source": address_source,
        })
        if address_source == "placeholder":
            OrderLogService.log(order.id, "placeholder_address_used", {
                "session_id": session["id"],
                "shipping_address": shipping_address,
            })
            logger.warning("Order created with placeholder shipping address", order_id=order.id, session_id=session["id"])

        db.session.commit()
        logger.info("Order materialized", order_id=order.id, order_number=order.order_number,
                    session_id=session["id"], user_id=user_id)
        return order

    def _add_line_items(self, order, cart_items):
        for item in cart_items:
            price = item.product.price
            db.session.add(OrderLineItem(
                order_id=order.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=price,
                total_price=price * item.quantity,
            ))
        db.session.flush()
        db.session.refresh(order)

    def _clear_cart(self, user_id, cart_item_ids):
        db.session.execute(
            delete(CartItem)
            .where(CartItem.user_id == user_id, CartItem.id.in_(cart_item_ids))
            .execution_options(synchronize_session=False)
        )

    def _resume(self, order, cart_items, context):
        """Finish an order left incomplete by an earlier run."""
        logger.warning("Resuming incomplete order", order_id=order.id, **context)

        if not order.line_items:
            if not cart_items:
                logger.error("Incomplete order has no line items and no cart items left", order_id=order.id, **context)
                return MaterializationResult(RESUMED, order_id=order.id, reason="no line items to fulfill")
            self._add_line_items(order, cart_items)
            self._clear_cart(context["user_id"], context["cart_item_ids"])

        existing_providers = {d.provider for d in order.dropship_orders}
        for provider in self._providers(order):
            if provider not in existing_providers:
                db.session.add(DropshipOrder(order_id=order.id, provider=provider, status=DropshipStatus.PENDING.value))

        OrderLogService.log(order.id, "order_resumed", {"session_id": context["session_id"]})
        db.session.commit()
        db.session.refresh(order)

        notify = not self._has_operation(order.id, OperationType.SEND_NOTIFICATION)
        operation_ids = self._schedule_fulfillment(order, context, notify=notify)
        return MaterializationResult(RESUMED, order_id=order.id, operation_ids=operation_ids)

    def _schedule_fulfillment(self, order, context, notify):
        """
        Schedule remote creation per provider, then the order confirmation.

        A failure to persist a create operation is raised; a failed
        confirmation is only logged.
        """
        order_id = order.id
        order_number = order.order_number
        operation_ids = []

        providers = [
            d.provider for d in order.dropship_orders
            if not d.provider_order_id and d.status != DropshipStatus.FAILED.value
        ]
        for provider in providers:
            if self._has_create_operation(order_id, provider):
                continue
            # Storage errors propagate so the payment event is redelivered and resumed
            operation_ids.append(self.retry_service.schedule(
                OperationType.CREATE_REMOTE_ORDER,
                order_id,
                CreateRemoteOrderPayload(provider=provider),
                immediate=True,
            ))

        if notify:
            try:
                operation_ids.append(self.retry_service.schedule(
                    OperationType.SEND_NOTIFICATION,
                    order_id,
                    NotificationPayload(
                        type="order_created",
                        title="Order confirmed",
                        message=f"Thanks for your order! Order {order_number} has been received.",
                        metadata={"order_number": order_number},
                    ),
                ))
            except Exception as e:
                db.session.rollback()
                logger.error("Failed to schedule order confirmation", order_id=order_id,
                             error=str(e), exc_info=True, **context)

        return operation_ids
