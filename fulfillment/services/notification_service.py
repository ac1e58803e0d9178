from fulfillment.exceptions import NotificationError
from fulfillment.logging_config import get_logger

logger = get_logger(__name__)


class NotificationService:
    """Customer notification sink backed by the customer_notifications table"""

    @staticmethod
    def create_order_notification(order_id, type, title, message, metadata=None):
        """
        Record a notification for the customer who placed an order.

        Raises:
            NotificationError: If the order does not exist or has no user
        """
        from fulfillment.models import CustomerNotification, Order, db

        order = db.session.get(Order, order_id)
        if order is None:
            raise NotificationError(f"Order not found: {order_id}")
        if not order.user_id:
            raise NotificationError(f"Order {order_id} has no user to notify")

        notification = CustomerNotification(
            order_id=order_id,
            user_id=order.user_id,
            type=type,
            title=title,
            message=message,
            notification_metadata=metadata or {},
        )
        db.session.add(notification)
        db.session.flush()

        logger.info("Customer notification created", order_id=order_id, user_id=order.user_id, type=type)
        return notification
