"""
Print the fulfillment health report and optionally run reconciliation actions.

Usage:
    python -m fulfillment.scripts.health_report
    python -m fulfillment.scripts.health_report --window-hours 72
    python -m fulfillment.scripts.health_report --reschedule-failed --operation-type create_remote_order
    python -m fulfillment.scripts.health_report --purge
"""
import argparse
import json
import sys

from fulfillment.logging_config import get_logger

logger = get_logger(__name__)

EXIT_CODES = {"healthy": 0, "degraded": 1, "critical": 2}


def health_report(window_hours=24, reschedule_failed=False, operation_type=None, max_age_hours=24,
                  purge=False, actor="health_report script"):
    """
    Build the report (after any requested actions) inside the current app context.

    Returns:
        dict: {"report": ..., "actions": {...}}
    """
    from flask import current_app

    health_service = current_app.extensions["fulfillment"]["health_service"]
    actions = {}

    if reschedule_failed:
        actions["rescheduled"] = health_service.reschedule_failed(
            operation_type=operation_type,
            max_age_hours=max_age_hours,
            actor=actor,
        )
    if purge:
        actions["purged"] = health_service.purge()

    return {"report": health_service.report(window_hours=window_hours), "actions": actions}


if __name__ == "__main__":
    from fulfillment import create_app

    parser = argparse.ArgumentParser(description="Fulfillment engine health report")
    parser.add_argument("--window-hours", type=int, default=24, help="Reporting window in hours (default: 24)")
    parser.add_argument("--reschedule-failed", action="store_true",
                        help="Move recently failed operations back to pending first")
    parser.add_argument("--operation-type", default=None, help="Restrict rescheduling to one operation type")
    parser.add_argument("--max-age-hours", type=int, default=24,
                        help="Only reschedule operations created within this many hours (default: 24)")
    parser.add_argument("--purge", action="store_true",
                        help="Delete old completed and failed operations using the configured retention")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        result = health_report(
            window_hours=args.window_hours,
            reschedule_failed=args.reschedule_failed,
            operation_type=args.operation_type,
            max_age_hours=args.max_age_hours,
            purge=args.purge,
        )

    print(json.dumps(result, indent=2, default=str))
    sys.exit(EXIT_CODES.get(result["report"]["status"], 2))
