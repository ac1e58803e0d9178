from flask import Blueprint

webhooks_bp = Blueprint("webhooks", __name__)

from fulfillment.webhooks import stripe_routes, prodigi_routes  # noqa: E402,F401
