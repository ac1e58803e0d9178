import json

import stripe
from flask import current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.logging_config import get_logger
from fulfillment.models import db
from fulfillment.webhooks import webhooks_bp

logger = get_logger(__name__)


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """
    Payment provider webhook.

    Signature failures are rejected with 400 and no side effects. Storage
    errors return 500 so the provider redelivers; any other processing error
    is logged and acknowledged, since the work it started is retried by the
    sweeper.
    """
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

    if not signature:
        logger.warning("Stripe webhook received without signature")
        return jsonify({"error": "Missing signature"}), 400
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        return jsonify({"error": "Webhook secret not configured"}), 500

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
        # Handlers work on the plain event dict
        event = json.loads(payload)
    except ValueError as e:
        logger.warning("Invalid Stripe webhook payload", error=str(e))
        return jsonify({"error": "Invalid payload"}), 400
    except stripe.SignatureVerificationError as e:
        logger.warning("Invalid Stripe webhook signature", error=str(e))
        return jsonify({"error": "Invalid signature"}), 400

    event_id = event.get("id")
    event_type = event.get("type")
    logger.info("Stripe webhook received", event_id=event_id, event_type=event_type)

    handler = current_app.extensions["fulfillment"]["payment_events"]
    try:
        outcome = handler.handle(event)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Storage error while handling Stripe webhook", event_id=event_id,
                     event_type=event_type, error=str(e), exc_info=True)
        return jsonify({"error": "Storage error"}), 500
    except Exception as e:
        db.session.rollback()
        logger.error("Error handling Stripe webhook", event_id=event_id,
                     event_type=event_type, error=str(e), exc_info=True)
        return jsonify({"received": True, "error": "processing_failed"}), 200

    return jsonify({"received": True, "outcome": outcome}), 200
