import hashlib
import hmac

from flask import current_app, jsonify, request
from sqlalchemy import select

from fulfillment.datetime_utils import parse_datetime
from fulfillment.logging_config import get_logger
from fulfillment.models import DropshipOrder, Order, OrderStatus, db
from fulfillment.prodigi.client import map_remote_status
from fulfillment.retry.operations import OperationType, NotificationPayload
from fulfillment.services.order_log_service import OrderLogService
from fulfillment.webhooks import webhooks_bp

logger = get_logger(__name__)

PROVIDER = "prodigi"

# Lower-cased provider status -> (order status, escalate only)
ORDER_PROJECTION = {
    "inprogress": (OrderStatus.PROCESSING.value, True),
    "shipped": (OrderStatus.SHIPPED.value, True),
    "delivered": (OrderStatus.DELIVERED.value, True),
    "cancelled": (OrderStatus.CANCELLED.value, False),
    "failed": (OrderStatus.CANCELLED.value, False),
}

NOTIFICATIONS = {
    "inprogress": ("order_processing", "Order Processing Started",
                   "Your order is now being processed and will be ready for shipping soon."),
    "shipped": ("order_shipped", "Order Shipped!",
                "Your order has been shipped! Track your package using tracking number: {tracking}"),
    "delivered": ("order_delivered", "Order Delivered!",
                  "Your order has been delivered successfully. Thank you for your purchase!"),
    "cancelled": ("order_cancelled", "Order Cancelled",
                  "Your order has been cancelled. If you have any questions, please contact support."),
    "failed": ("order_failed", "Order Failed",
               "There was an issue processing your order. Our team will contact you shortly."),
}


def verify_signature(body, signature, secret):
    """HMAC-SHA256 of the raw body, hex encoded."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def validate_payload(payload):
    """Return an error message, or None if the payload has the required fields."""
    if not isinstance(payload, dict):
        return "Payload must be an object"
    for key in ("id", "type"):
        if not isinstance(payload.get(key), str) or not payload.get(key):
            return f"Missing '{key}'"
    data = payload.get("data")
    if not isinstance(data, dict):
        return "Missing 'data'"
    for key in ("id", "status"):
        if not isinstance(data.get(key), str) or not data.get(key):
            return f"Missing 'data.{key}'"
    return None


def apply_status_update(payload, retry_service=None):
    """
    Project a provider status update onto the dropship record and its order.

    Returns:
        Order, or None if no dropship record matches the provider order id
    """
    data = payload["data"]
    dropship = db.session.execute(
        select(DropshipOrder).where(
            DropshipOrder.provider == PROVIDER,
            DropshipOrder.provider_order_id == data["id"],
        )
    ).scalars().first()
    if dropship is None:
        return None

    order = db.session.get(Order, dropship.order_id)
    remote_status = data["status"].lower()
    old_status = dropship.status

    dropship.status = map_remote_status(data["status"])
    if data.get("trackingNumber"):
        dropship.tracking_number = data["trackingNumber"]
    if data.get("trackingUrl"):
        dropship.tracking_url = data["trackingUrl"]
    estimated = parse_datetime(data.get("estimatedDeliveryDate") or data.get("estimatedDelivery"))
    if estimated:
        dropship.estimated_delivery = estimated
        order.estimated_delivery = estimated
    dropship.provider_response = payload

    projection = ORDER_PROJECTION.get(remote_status)
    if projection:
        status, escalate_only = projection
        reason = f"{PROVIDER} webhook {payload['type']}"
        if escalate_only:
            OrderLogService.escalate_status(order, status, reason=reason)
        else:
            OrderLogService.set_status(order, status, reason=reason)
    if remote_status == "shipped":
        order.tracking_number = dropship.tracking_number or order.tracking_number
        order.tracking_url = dropship.tracking_url or order.tracking_url

    OrderLogService.log(order.id, "prodigi_webhook_update", {
        "webhook_type": payload["type"],
        "prodigi_order_id": data["id"],
        "old_status": old_status,
        "new_status": dropship.status,
        "tracking_number": data.get("trackingNumber"),
        "tracking_url": data.get("trackingUrl"),
        "estimated_delivery": data.get("estimatedDeliveryDate"),
    })
    db.session.commit()

    notification = NOTIFICATIONS.get(remote_status)
    if notification and retry_service is not None and order.user_id:
        notification_type, title, message = notification
        try:
            retry_service.schedule(
                OperationType.SEND_NOTIFICATION,
                order.id,
                NotificationPayload(
                    type=notification_type,
                    title=title,
                    message=message.format(tracking=data.get("trackingNumber") or "Check your order details"),
                    metadata={
                        "prodigi_order_id": data["id"],
                        "tracking_number": data.get("trackingNumber"),
                        "tracking_url": data.get("trackingUrl"),
                        "webhook_type": payload["type"],
                    },
                ),
            )
        except Exception as e:
            db.session.rollback()
            logger.error("Failed to schedule webhook notification", order_id=order.id, error=str(e), exc_info=True)

    return order


@webhooks_bp.route("/prodigi", methods=["POST"])
def prodigi_webhook():
    body = request.get_data()
    signature = request.headers.get("X-Prodigi-Signature")
    secret = current_app.config.get("PRODIGI_WEBHOOK_SECRET")

    if not verify_signature(body, signature, secret):
        logger.warning("Rejected Prodigi webhook with missing or invalid signature")
        return jsonify({"error": "Invalid signature"}), 401

    payload = request.get_json(silent=True)
    error = validate_payload(payload)
    if error:
        logger.warning("Invalid Prodigi webhook payload", error=error)
        return jsonify({"error": error}), 400

    retry_service = current_app.extensions["fulfillment"]["retry_service"]
    order = apply_status_update(payload, retry_service)
    if order is None:
        logger.error("Dropship order not found for Prodigi order", prodigi_order_id=payload["data"]["id"])
        return jsonify({"error": "Order not found"}), 404

    logger.info("Prodigi webhook processed", order_id=order.id, prodigi_order_id=payload["data"]["id"],
                status=payload["data"]["status"])
    return jsonify({"received": True, "order_id": order.id}), 200
