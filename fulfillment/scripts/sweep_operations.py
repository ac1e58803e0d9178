"""
Run the retry batch sweeper once.

Releases stale claims and processes every due pending operation. Intended for
cron on deployments where the in-process scheduler is disabled.

Usage:
    python -m fulfillment.scripts.sweep_operations
    python -m fulfillment.scripts.sweep_operations --limit 500
"""
import argparse
import json
import sys

from fulfillment.logging_config import get_logger

logger = get_logger(__name__)


def run_sweep(limit=None):
    """Sweep inside the current app context and return the stats dict."""
    from flask import current_app

    retry_service = current_app.extensions["fulfillment"]["retry_service"]
    limit = limit or current_app.config.get("SWEEP_BATCH_SIZE", 100)
    return retry_service.sweep(limit=limit)


if __name__ == "__main__":
    from fulfillment import create_app

    parser = argparse.ArgumentParser(description="Process due retry operations once")
    parser.add_argument("--limit", type=int, default=None,
                        help="Maximum number of operations to process (default: SWEEP_BATCH_SIZE)")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        stats = run_sweep(limit=args.limit)

    print(json.dumps(stats, indent=2))
    sys.exit(1 if stats["failed"] else 0)
