"""
Tests for the command line entry points.
"""
from fulfillment.models import db
from fulfillment.scripts.health_report import EXIT_CODES, health_report
from fulfillment.scripts.sweep_operations import run_sweep

from factories import make_order


def test_run_sweep_on_empty_queue(app):
    assert run_sweep() == {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "released": 0}


def test_run_sweep_processes_due_notification(app, retry_service):
    order_id = make_order().id
    operation_id = retry_service.schedule("send_notification", order_id, {
        "type": "order_created",
        "title": "Order confirmed",
        "message": "Thanks!",
    })
    operation = retry_service.store.get(operation_id)
    operation.next_retry_at = operation.created_at
    db.session.commit()

    stats = run_sweep(limit=5)

    assert stats["processed"] == 1
    assert stats["succeeded"] == 1


def test_health_report_with_actions(app):
    result = health_report(window_hours=12, reschedule_failed=True, purge=True)

    assert result["report"]["status"] == "healthy"
    assert result["report"]["window_hours"] == 12
    assert result["actions"] == {"rescheduled": 0, "purged": {"completed": 0, "failed": 0, "total": 0}}
    assert EXIT_CODES[result["report"]["status"]] == 0
