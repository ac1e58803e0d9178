"""
Executors for each operation type.

An executor receives the loaded Order and the typed payload and returns an
ExecutorResult. Expected failures are returned, not raised; the retry
processor decides what happens next based on the result kind.
"""
from sqlalchemy import select

from fulfillment.datetime_utils import parse_datetime
from fulfillment.exceptions import NotificationError, ProviderError, ProviderValidationError
from fulfillment.logging_config import get_logger
from fulfillment.models import DropshipOrder, DropshipStatus, OrderLog, OrderStatus, db
from fulfillment.prodigi.client import build_order_request, get_product_sku, map_remote_status
from fulfillment.retry.operations import OperationType, NotificationPayload
from fulfillment.retry.results import Ok, AlreadyDone, TransientError, PermanentError
from fulfillment.services.notification_service import NotificationService
from fulfillment.services.order_log_service import OrderLogService

logger = get_logger(__name__)


def public_image_url(image_url, base_url):
    """Turn a stored image path into an absolute URL the provider can fetch."""
    if not image_url:
        return None
    if image_url.startswith("http://") or image_url.startswith("https://"):
        return image_url
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/{image_url.lstrip('/')}"


def _provider_error_result(error):
    if isinstance(error, ProviderValidationError):
        return PermanentError(str(error), status_code=error.status_code)
    return TransientError(str(error), status_code=error.status_code)


def _active_dropship(order_id, provider):
    return db.session.execute(
        select(DropshipOrder).where(
            DropshipOrder.order_id == order_id,
            DropshipOrder.provider == provider,
            DropshipOrder.status != DropshipStatus.FAILED.value,
        )
    ).scalars().first()


def _remote_dropship(order_id, provider):
    """The provider-side order to refresh, whatever state it was last seen in."""
    return db.session.execute(
        select(DropshipOrder)
        .where(
            DropshipOrder.order_id == order_id,
            DropshipOrder.provider == provider,
            DropshipOrder.provider_order_id.is_not(None),
        )
        .order_by(DropshipOrder.id.desc())
    ).scalars().first()


class ExecutorRegistry:
    """Maps each OperationType to the callable that performs it."""

    def __init__(self, client_factories=None, notification_service=NotificationService, image_base_url=""):
        """
        Args:
            client_factories: dict of provider name -> zero-argument callable
                returning a provider client (created on first use)
            notification_service: notification sink
            image_base_url: base URL for stored image paths
        """
        self._client_factories = dict(client_factories or {})
        self._clients = {}
        self.notification_service = notification_service
        self.image_base_url = image_base_url
        self.scheduler = None
        self._executors = {
            OperationType.CREATE_REMOTE_ORDER: self.create_remote_order,
            OperationType.REFRESH_REMOTE_STATUS: self.refresh_remote_status,
            OperationType.PROCESS_PAYMENT_EVENT: self.process_payment_event,
            OperationType.SEND_NOTIFICATION: self.send_notification,
        }

    def attach_scheduler(self, scheduler):
        """Executors schedule follow-up operations (notifications) through this."""
        self.scheduler = scheduler

    def register_client(self, provider, client):
        """Use an already-built client for a provider."""
        self._clients[provider] = client

    def register(self, operation_type, executor):
        self._executors[OperationType.parse(operation_type)] = executor

    def execute(self, operation_type, order, payload):
        operation_type = OperationType.parse(operation_type)
        if order is None:
            return PermanentError("Order not found")
        return self._executors[operation_type](order, payload)

    def get_client(self, provider):
        if provider not in self._clients:
            factory = self._client_factories.get(provider)
            if factory is None:
                raise ValueError(f"Unsupported fulfillment provider: {provider}")
            self._clients[provider] = factory()
        return self._clients[provider]

    def _schedule_notification(self, order, notification_type, title, message, metadata=None):
        if self.scheduler is None:
            return None
        if not order.user_id:
            logger.warning("Skipping notification for order without user", order_id=order.id, type=notification_type)
            return None
        payload = NotificationPayload(
            type=notification_type,
            title=title,
            message=message,
            metadata=metadata or {"order_number": order.order_number},
        )
        try:
            return self.scheduler.schedule(OperationType.SEND_NOTIFICATION, order.id, payload)
        except Exception as e:
            logger.error("Failed to schedule notification", order_id=order.id, type=notification_type, error=str(e), exc_info=True)
            return None

    # -------------------------
    # create_remote_order
    # -------------------------
    def create_remote_order(self, order, payload):
        provider = payload.provider
        dropship = _active_dropship(order.id, provider)

        if dropship is not None and dropship.provider_order_id:
            logger.info("Remote order already exists", order_id=order.id, provider=provider,
                        provider_order_id=dropship.provider_order_id)
            return AlreadyDone({"provider_order_id": dropship.provider_order_id})

        if dropship is None:
            return PermanentError(f"Order {order.id} has no {provider} fulfillment record")
        if not order.shipping_address:
            return PermanentError(f"Order {order.id} has no shipping address")

        items = []
        for line_item in order.line_items:
            product = line_item.product
            if product is None or product.provider != provider:
                continue
            image_url = public_image_url(product.image_url, self.image_base_url)
            if not image_url:
                return PermanentError(f"Product {product.id} has no usable image URL")
            if product.frame_size:
                sku = get_product_sku(product.frame_size, product.frame_style, product.frame_material)
            else:
                sku = product.sku or get_product_sku(None, None, None)
            items.append({"sku": sku, "quantity": line_item.quantity, "image_url": image_url})

        if not items:
            return PermanentError(f"Order {order.id} has no line items for {provider}")

        try:
            client = self.get_client(provider)
        except ValueError as e:
            return PermanentError(str(e))

        request_body = build_order_request(
            order.order_number,
            items,
            order.shipping_address,
            order.customer_email,
            order.customer_phone,
        )

        try:
            remote = client.create_order(request_body)
        except ProviderError as e:
            logger.warning("Remote order creation failed", order_id=order.id, provider=provider,
                           status_code=e.status_code, error=str(e))
            return _provider_error_result(e)

        if not remote.get("id"):
            return TransientError("Provider response did not include an order id")

        dropship.provider_order_id = remote["id"]
        dropship.status = map_remote_status(remote.get("status")) or DropshipStatus.PROCESSING.value
        dropship.tracking_number = remote.get("tracking_number")
        dropship.tracking_url = remote.get("tracking_url")
        dropship.estimated_delivery = parse_datetime(remote.get("estimated_delivery"))
        dropship.provider_response = remote.get("raw")

        OrderLogService.escalate_status(order, OrderStatus.PROCESSING.value, reason=f"{provider} order created")
        OrderLogService.log(order.id, "remote_order_created", {
            "provider": provider,
            "provider_order_id": remote["id"],
            "status": dropship.status,
        })
        # Persist the remote id right away so a retry can never create a second remote order
        db.session.commit()

        logger.info("Remote order created", order_id=order.id, provider=provider, provider_order_id=remote["id"])

        self._schedule_notification(
            order,
            "order_processing",
            "Your order is being prepared",
            f"Order {order.order_number} has been sent for printing and framing.",
        )
        return Ok({"provider_order_id": remote["id"], "status": dropship.status})

    # -------------------------
    # refresh_remote_status
    # -------------------------
    def refresh_remote_status(self, order, payload):
        provider = payload.provider
        dropship = _remote_dropship(order.id, provider)

        if dropship is None:
            return PermanentError(
                f"Order {order.id} has no provider order id yet for {provider}; "
                f"create_remote_order must complete first"
            )

        try:
            client = self.get_client(provider)
            remote = client.get_order(dropship.provider_order_id)
        except ValueError as e:
            return PermanentError(str(e))
        except ProviderError as e:
            return _provider_error_result(e)

        new_status = map_remote_status(remote.get("status"))
        previous_status = dropship.status
        had_tracking = bool(dropship.tracking_number)

        if new_status:
            dropship.status = new_status
        if remote.get("tracking_number"):
            dropship.tracking_number = remote["tracking_number"]
            dropship.tracking_url = remote.get("tracking_url") or dropship.tracking_url
        if remote.get("estimated_delivery"):
            dropship.estimated_delivery = parse_datetime(remote["estimated_delivery"])
        dropship.provider_response = remote.get("raw")

        tracking_appeared = bool(remote.get("tracking_number")) and not had_tracking
        if tracking_appeared:
            order.tracking_number = dropship.tracking_number
            order.tracking_url = dropship.tracking_url
            order.estimated_delivery = dropship.estimated_delivery
            OrderLogService.escalate_status(order, OrderStatus.SHIPPED.value, reason="tracking received")
        if new_status == OrderStatus.DELIVERED.value:
            OrderLogService.escalate_status(order, OrderStatus.DELIVERED.value, reason=f"{provider} reported delivery")

        OrderLogService.log(order.id, "remote_status_refreshed", {
            "provider": provider,
            "provider_order_id": dropship.provider_order_id,
            "previous_status": previous_status,
            "status": dropship.status,
            "tracking_number": dropship.tracking_number,
        })
        db.session.commit()

        if tracking_appeared:
            self._schedule_notification(
                order,
                "order_shipped",
                "Your order has shipped",
                f"Order {order.order_number} is on its way. Tracking number: {order.tracking_number}",
                {"order_number": order.order_number, "tracking_url": order.tracking_url},
            )

        return Ok({"status": dropship.status, "tracking_number": dropship.tracking_number})

    # -------------------------
    # process_payment_event
    # -------------------------
    def process_payment_event(self, order, payload):
        logs = db.session.execute(
            select(OrderLog).where(
                OrderLog.order_id == order.id,
                OrderLog.action == "payment_event_processed",
            )
        ).scalars()
        for entry in logs:
            if (entry.details or {}).get("event_id") == payload.event_id:
                return AlreadyDone({"event_id": payload.event_id})

        OrderLogService.log(order.id, "payment_event_processed", {
            "event_id": payload.event_id,
            "event_type": payload.event_type,
        })
        db.session.commit()
        return Ok({"event_id": payload.event_id})

    # -------------------------
    # send_notification
    # -------------------------
    def send_notification(self, order, payload):
        try:
            notification = self.notification_service.create_order_notification(
                order.id,
                payload.type,
                payload.title,
                payload.message,
                payload.metadata,
            )
        except NotificationError as e:
            return TransientError(str(e))

        return Ok({"notification_id": notification.id})
