from fulfillment.logging_config import get_logger
from fulfillment.models import ORDER_PROGRESSION

logger = get_logger(__name__)


class OrderLogService:
    """Service for the order audit trail and status history"""

    @staticmethod
    def log(order_id, action, details=None):
        """
        Append an audit entry for an order.

        Entries are added to the current session; the caller owns the commit.
        """
        from fulfillment.models import OrderLog, db

        entry = OrderLog(order_id=order_id, action=action, details=details or {})
        db.session.add(entry)
        db.session.flush()

        logger.info("Order log recorded", order_id=order_id, action=action)
        return entry

    @staticmethod
    def set_status(order, status, reason=None):
        """
        Set an order's status and record the transition in the status history.

        Returns:
            bool: True if the status changed
        """
        from fulfillment.models import OrderStatusHistory, db

        previous = order.status
        if previous == status:
            return False

        order.status = status
        db.session.add(OrderStatusHistory(
            order_id=order.id,
            status=status,
            previous_status=previous,
            reason=reason,
        ))
        db.session.flush()

        logger.info("Order status changed", order_id=order.id, previous_status=previous, status=status, reason=reason)
        return True

    @staticmethod
    def escalate_status(order, status, reason=None):
        """
        Move an order forward along pending -> paid -> processing -> shipped -> delivered.

        Never moves an order backwards and never changes an order that has left
        the progression (cancelled, refunded, disputed).
        """
        if order.status not in ORDER_PROGRESSION or status not in ORDER_PROGRESSION:
            return False
        if ORDER_PROGRESSION.index(status) <= ORDER_PROGRESSION.index(order.status):
            return False
        return OrderLogService.set_status(order, status, reason)
