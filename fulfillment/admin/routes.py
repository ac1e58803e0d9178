from flask import current_app, jsonify, request

from fulfillment.admin import admin_bp
from fulfillment.auth import admin_required, get_actor
from fulfillment.exceptions import OrderNotFoundError, UnknownOperationTypeError
from fulfillment.logging_config import get_logger
from fulfillment.models import OperationStatus

logger = get_logger(__name__)

HEALTH_ACTIONS = ("process_pending_retries", "reschedule_failed_operations", "cleanup_old_operations")
OPERATION_STATUSES = {status.value for status in OperationStatus}


def _services():
    return current_app.extensions["fulfillment"]


def _int_arg(source, name, default, minimum=1, maximum=None):
    """Read a positive integer from a mapping; raise ValueError with a readable message."""
    value = source.get(name, default)
    if value is None:
        return None
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{name}' must be an integer")
    if value < minimum:
        raise ValueError(f"'{name}' must be >= {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


@admin_bp.route("/health", methods=["GET"])
@admin_required
def health():
    try:
        window_hours = _int_arg(request.args, "window_hours", 24, maximum=24 * 30)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    report = _services()["health_service"].report(window_hours=window_hours)
    return jsonify(report), 200


@admin_bp.route("/health", methods=["POST"])
@admin_required
def health_action():
    """
    Run an operator action.

    Body: {"action": "process_pending_retries" | "reschedule_failed_operations" | "cleanup_old_operations", ...}
    """
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    if action not in HEALTH_ACTIONS:
        return jsonify({"error": f"Unknown action. Expected one of: {', '.join(HEALTH_ACTIONS)}"}), 400

    health_service = _services()["health_service"]
    actor = get_actor()
    logger.info("Admin health action", action=action, actor=actor)

    try:
        if action == "process_pending_retries":
            limit = _int_arg(data, "limit", current_app.config.get("SWEEP_BATCH_SIZE", 100), maximum=1000)
            result = health_service.force_sweep(limit=limit)
        elif action == "reschedule_failed_operations":
            max_age_hours = _int_arg(data, "max_age_hours", 24)
            count = health_service.reschedule_failed(
                operation_type=data.get("operation_type"),
                max_age_hours=max_age_hours,
                actor=actor,
            )
            result = {"rescheduled": count}
        else:
            result = health_service.purge(
                completed_days=_int_arg(data, "completed_days", None),
                failed_days=_int_arg(data, "failed_days", None),
            )
    except (ValueError, UnknownOperationTypeError) as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"success": True, "action": action, "result": result}), 200


@admin_bp.route("/operations", methods=["GET"])
@admin_required
def list_operations():
    status = request.args.get("status")
    if status and status not in OPERATION_STATUSES:
        return jsonify({"error": f"Unknown status: {status}"}), 400
    try:
        limit = _int_arg(request.args, "limit", 100, maximum=500)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    operations = _services()["retry_service"].store.list_operations(
        status=status,
        order_id=request.args.get("order_id"),
        operation_type=request.args.get("type"),
        limit=limit,
    )
    return jsonify({"operations": [op.to_dict() for op in operations], "count": len(operations)}), 200


@admin_bp.route("/orders/<order_id>/operations/cancel", methods=["POST"])
@admin_required
def cancel_order_operations(order_id):
    try:
        count = _services()["health_service"].cancel_operations(order_id, actor=get_actor())
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"success": True, "order_id": order_id, "cancelled": count}), 200
