import uuid
from enum import Enum

from flask_sqlalchemy import SQLAlchemy

from fulfillment.datetime_utils import utcnow, isoformat

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


def _money(value):
    return float(value) if value is not None else None


class OperationStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_OPERATION_STATUSES = (OperationStatus.COMPLETED.value, OperationStatus.CANCELLED.value)


class OrderStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


# Forward progression of the fulfillment pipeline. Statuses outside this
# list (cancelled, refunded, disputed) are set explicitly, never by escalation.
ORDER_PROGRESSION = [
    OrderStatus.PENDING.value,
    OrderStatus.PAID.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
]


class DropshipStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_DROPSHIP_STATUSES = (
    DropshipStatus.SHIPPED.value,
    DropshipStatus.DELIVERED.value,
    DropshipStatus.CANCELLED.value,
)


class RetryOperation(db.Model):
    """One retryable, idempotent unit of remote-affecting work."""
    __tablename__ = "retry_operations"

    id = db.Column(db.String(255), primary_key=True)
    type = db.Column(db.String(64), nullable=False, index=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=5)
    status = db.Column(db.String(20), nullable=False, default=OperationStatus.PENDING.value, index=True)

    last_attempt_at = db.Column(db.DateTime, nullable=True)
    next_retry_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    error = db.Column(db.Text, nullable=True)
    error_kind = db.Column(db.String(16), nullable=True)  # 'transient' or 'permanent'
    result = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        # At most one worker executes a given (order, type) step at a time
        db.Index(
            "uq_retry_operations_processing_subject",
            "order_id",
            "type",
            unique=True,
            sqlite_where=db.text("status = 'processing'"),
            postgresql_where=db.text("status = 'processing'"),
        ),
        db.Index("idx_retry_operations_due", "status", "next_retry_at"),
    )

    def __repr__(self):
        return f"<RetryOperation {self.id} - {self.type} - {self.status}>"

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "order_id": self.order_id,
            "payload": self.payload,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "status": self.status,
            "last_attempt_at": isoformat(self.last_attempt_at),
            "next_retry_at": isoformat(self.next_retry_at),
            "error": self.error,
            "error_kind": self.error_kind,
            "result": self.result,
            "created_at": isoformat(self.created_at),
            "completed_at": isoformat(self.completed_at),
            "failed_at": isoformat(self.failed_at),
            "cancelled_at": isoformat(self.cancelled_at),
        }


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_number = db.Column(db.String(32), unique=True, nullable=False)
    user_id = db.Column(db.String(64), nullable=True, index=True)

    # Idempotency key: one order per upstream checkout session
    external_payment_session_id = db.Column(db.String(255), unique=True, nullable=False)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)

    status = db.Column(db.String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_status = db.Column(db.String(32), nullable=True)

    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    shipping = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="usd")

    shipping_address = db.Column(db.JSON, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)
    address_source = db.Column(db.String(20), nullable=True)  # 'checkout', 'payment_event', 'placeholder'

    customer_email = db.Column(db.String(255), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)

    tracking_number = db.Column(db.String(100), nullable=True)
    tracking_url = db.Column(db.Text, nullable=True)
    estimated_delivery = db.Column(db.DateTime, nullable=True)

    order_metadata = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    line_items = db.relationship("OrderLineItem", backref="order", lazy=True, order_by="OrderLineItem.id")
    dropship_orders = db.relationship("DropshipOrder", backref="order", lazy=True, order_by="DropshipOrder.id")

    def __repr__(self):
        return f"<Order {self.order_number} - {self.status}>"

    def to_dict(self):
        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "external_payment_session_id": self.external_payment_session_id,
            "payment_intent_id": self.payment_intent_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "subtotal": _money(self.subtotal),
            "tax": _money(self.tax),
            "shipping": _money(self.shipping),
            "total": _money(self.total),
            "currency": self.currency,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "address_source": self.address_source,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "estimated_delivery": isoformat(self.estimated_delivery),
            "metadata": self.order_metadata,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class OrderLineItem(db.Model):
    __tablename__ = "order_line_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.String(64), db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    total_price = db.Column(db.Numeric(10, 2), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    product = db.relationship("Product", lazy="joined")

    def __repr__(self):
        return f"<OrderLineItem {self.order_id} - {self.product_id} x{self.quantity}>"


class DropshipOrder(db.Model):
    """Local mirror of a remote fulfillment-provider order."""
    __tablename__ = "dropship_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False)
    provider_order_id = db.Column(db.String(128), nullable=True, index=True)
    status = db.Column(db.String(20), nullable=False, default=DropshipStatus.PENDING.value)

    tracking_number = db.Column(db.String(100), nullable=True)
    tracking_url = db.Column(db.Text, nullable=True)
    estimated_delivery = db.Column(db.DateTime, nullable=True)
    provider_response = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.Index(
            "uq_dropship_orders_active_provider",
            "order_id",
            "provider",
            unique=True,
            sqlite_where=db.text("status != 'failed'"),
            postgresql_where=db.text("status != 'failed'"),
        ),
    )

    def __repr__(self):
        return f"<DropshipOrder {self.order_id} - {self.provider} - {self.provider_order_id}>"

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "provider": self.provider,
            "provider_order_id": self.provider_order_id,
            "status": self.status,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "estimated_delivery": isoformat(self.estimated_delivery),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class OrderLog(db.Model):
    """Append-only audit trail for an order."""
    __tablename__ = "order_logs"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    action = db.Column(db.String(100), nullable=False, index=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<OrderLog {self.order_id} - {self.action}>"

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "action": self.action,
            "details": self.details,
            "created_at": isoformat(self.created_at),
        }


class OrderStatusHistory(db.Model):
    __tablename__ = "order_status_history"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False)
    previous_status = db.Column(db.String(20), nullable=True)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class CustomerNotification(db.Model):
    __tablename__ = "customer_notifications"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    notification_metadata = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)


# ---------------------------------------------------------------------------
# Storefront tables read by the order materializer
# ---------------------------------------------------------------------------

class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.String(64), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(128), nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    provider = db.Column(db.String(32), nullable=False, default="prodigi")
    frame_size = db.Column(db.String(32), nullable=True)
    frame_style = db.Column(db.String(32), nullable=True)
    frame_material = db.Column(db.String(32), nullable=True)
    image_url = db.Column(db.Text, nullable=True)

    def __repr__(self):
        return f"<Product {self.id} - {self.name}>"


class CartItem(db.Model):
    __tablename__ = "cart_items"

    id = db.Column(db.String(64), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.String(64), db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    product = db.relationship("Product", lazy="joined")


class CheckoutAddress(db.Model):
    """Shipping address captured at checkout, keyed by payment session."""
    __tablename__ = "checkout_addresses"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(255), unique=True, nullable=False)
    shipping_address = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
