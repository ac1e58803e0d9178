"""Projects verified payment provider events onto local orders."""
from sqlalchemy import select

from fulfillment.logging_config import get_logger
from fulfillment.models import Order, OrderStatus, db
from fulfillment.retry.operations import OperationType, PaymentEventPayload
from fulfillment.services.order_log_service import OrderLogService

logger = get_logger(__name__)

IGNORED = "ignored"
UPDATED = "updated"
DEFERRED = "deferred"
ORDER_NOT_FOUND = "order_not_found"

MATERIALIZABLE_PAYMENT_STATUSES = (None, "paid", "no_payment_required")


class PaymentEventHandler:

    def __init__(self, materializer, retry_service):
        self.materializer = materializer
        self.retry_service = retry_service
        self._handlers = {
            "checkout.session.completed": self.checkout_session_completed,
            "checkout.session.async_payment_succeeded": self.async_payment_succeeded,
            "checkout.session.async_payment_failed": self.async_payment_failed,
            "payment_intent.succeeded": self.payment_intent_succeeded,
            "payment_intent.payment_failed": self.payment_intent_failed,
            "payment_intent.requires_action": self.payment_intent_requires_action,
            "charge.dispute.created": self.charge_dispute_created,
        }

    def handle(self, event):
        """
        Dispatch a verified event by type.

        Returns:
            str: outcome (materialization status, 'updated', 'deferred',
            'order_not_found' or 'ignored')
        """
        event_type = event.get("type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring payment event", event_type=event_type, event_id=event.get("id"))
            return IGNORED

        obj = (event.get("data") or {}).get("object") or {}
        outcome = handler(obj, event)
        logger.info("Payment event handled", event_type=event_type, event_id=event.get("id"), outcome=outcome)
        return outcome

    def _order_by_session(self, session_id):
        return db.session.execute(
            select(Order).where(Order.external_payment_session_id == session_id)
        ).scalars().first()

    def _order_by_intent(self, payment_intent_id):
        if not payment_intent_id:
            return None
        return db.session.execute(
            select(Order).where(Order.payment_intent_id == payment_intent_id)
        ).scalars().first()

    def _project(self, order, status, payment_status, event, escalate=False):
        previous = {"status": order.status, "payment_status": order.payment_status}
        reason = f"payment event {event.get('type')}"
        if escalate:
            OrderLogService.escalate_status(order, status, reason=reason)
        else:
            OrderLogService.set_status(order, status, reason=reason)
        order.payment_status = payment_status
        OrderLogService.log(order.id, "payment_status_updated", {
            "event_id": event.get("id"),
            "event_type": event.get("type"),
            "previous_status": previous["status"],
            "previous_payment_status": previous["payment_status"],
            "status": order.status,
            "payment_status": payment_status,
        })
        db.session.commit()

    # -------------------------
    # Checkout sessions
    # -------------------------
    def checkout_session_completed(self, session, event):
        payment_status = session.get("payment_status")
        if payment_status not in MATERIALIZABLE_PAYMENT_STATUSES:
            logger.info("Checkout completed without payment; waiting for async result",
                        session_id=session.get("id"), payment_status=payment_status)
            return DEFERRED
        return self.materializer.materialize(session).status

    def async_payment_succeeded(self, session, event):
        result = self.materializer.materialize(session)
        order = self._order_by_session(session.get("id"))
        if order is not None:
            self._project(order, OrderStatus.PAID.value, "paid", event, escalate=True)
        return result.status

    def async_payment_failed(self, session, event):
        order = self._order_by_session(session.get("id"))
        if order is None:
            logger.warning("Async payment failed for unknown session", session_id=session.get("id"))
            return ORDER_NOT_FOUND
        self._project(order, OrderStatus.CANCELLED.value, "failed", event)
        self._cancel_pending(order)
        return UPDATED

    # -------------------------
    # Payment intents
    # -------------------------
    def payment_intent_succeeded(self, intent, event):
        order = self._order_by_intent(intent.get("id"))
        if order is None:
            return ORDER_NOT_FOUND
        self._project(order, OrderStatus.PAID.value, "paid", event, escalate=True)
        return UPDATED

    def payment_intent_failed(self, intent, event):
        order = self._order_by_intent(intent.get("id"))
        if order is None:
            return ORDER_NOT_FOUND
        self._project(order, OrderStatus.CANCELLED.value, "failed", event)
        self._cancel_pending(order)
        return UPDATED

    def payment_intent_requires_action(self, intent, event):
        order = self._order_by_intent(intent.get("id"))
        if order is None:
            return ORDER_NOT_FOUND
        if order.status in (OrderStatus.PENDING.value, OrderStatus.PAID.value):
            self._project(order, OrderStatus.PENDING.value, "requires_action", event)
        else:
            # Already in fulfillment; record the payment state without moving the order back
            self._project(order, order.status, "requires_action", event)
        return UPDATED

    def _cancel_pending(self, order):
        cancelled = self.retry_service.store.cancel_pending_for_order(order.id)
        if cancelled:
            logger.info("Cancelled pending operations after payment failure", order_id=order.id, count=cancelled)

    # -------------------------
    # Disputes
    # -------------------------
    def charge_dispute_created(self, dispute, event):
        order = self._order_by_intent(dispute.get("payment_intent"))
        if order is None:
            logger.warning("Dispute for unknown payment intent", payment_intent=dispute.get("payment_intent"))
            return ORDER_NOT_FOUND

        details = {
            "dispute_id": dispute.get("id"),
            "dispute_reason": dispute.get("reason"),
            "dispute_amount": dispute.get("amount"),
            "dispute_currency": dispute.get("currency"),
        }
        order.order_metadata = {**(order.order_metadata or {}), **details}
        self._project(order, OrderStatus.DISPUTED.value, "disputed", event)

        try:
            self.retry_service.schedule(
                OperationType.PROCESS_PAYMENT_EVENT,
                order.id,
                PaymentEventPayload(event_type=event.get("type"), event_id=event.get("id"), data=details),
            )
        except Exception as e:
            db.session.rollback()
            logger.error("Failed to schedule dispute processing", order_id=order.id, error=str(e), exc_info=True)
        return UPDATED
