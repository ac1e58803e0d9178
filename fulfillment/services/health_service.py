import time
from datetime import timedelta

from sqlalchemy import select, func, text
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.datetime_utils import utcnow, isoformat
from fulfillment.exceptions import OrderNotFoundError, ProviderError
from fulfillment.logging_config import get_logger
from fulfillment.models import (
    CustomerNotification,
    DropshipOrder,
    Order,
    OrderStatus,
    OperationStatus,
    RetryOperation,
    TERMINAL_DROPSHIP_STATUSES,
    db,
)
from fulfillment.retry.operations import OperationType
from fulfillment.services.order_log_service import OrderLogService

logger = get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"

STUCK_ORDER_STATUSES = (OrderStatus.PAID.value, OrderStatus.PROCESSING.value)

DEFAULT_THRESHOLDS = {
    "HEALTH_FAILED_CRITICAL": 10,
    "HEALTH_FAILED_DEGRADED": 5,
    "HEALTH_OVERDUE_DEGRADED": 5,
    "HEALTH_SUCCESS_RATE_CRITICAL": 50.0,
    "HEALTH_SUCCESS_RATE_DEGRADED": 80.0,
    "HEALTH_MIN_SAMPLE": 10,
    "HEALTH_STUCK_ORDER_HOURS": 2,
    "HEALTH_STUCK_PERCENT_DEGRADED": 20.0,
    "HEALTH_CANCELLED_PERCENT_DEGRADED": 10.0,
    "SWEEP_INTERVAL_SECONDS": 60,
    "PURGE_COMPLETED_DAYS": 7,
    "PURGE_FAILED_DAYS": 30,
}

PROVIDER_DEFAULTS = {
    "HEALTH_PROBE_PROVIDER": True,
    "DEFAULT_PROVIDER": "prodigi",
    "PRODIGI_API_KEY": None,
    "PRODIGI_ENVIRONMENT": "sandbox",
}


def _performance(latency_ms):
    if latency_ms < 100:
        return "excellent"
    if latency_ms < 500:
        return "good"
    if latency_ms < 1000:
        return "fair"
    return "poor"


def classify(operations, orders, settings):
    """
    Classify health from operation and order statistics.

    Returns:
        tuple: (status, list of human-readable issues)
    """
    status = HEALTHY
    issues = []

    def worsen(level):
        nonlocal status
        if status != CRITICAL:
            status = level

    failed = operations["failed"]
    sample_ok = operations["total"] >= settings["HEALTH_MIN_SAMPLE"]
    success_rate = operations["success_rate"]

    if failed > settings["HEALTH_FAILED_CRITICAL"]:
        worsen(CRITICAL)
        issues.append(f"{failed} failed operations in window")
    elif failed > settings["HEALTH_FAILED_DEGRADED"]:
        worsen(DEGRADED)
        issues.append(f"{failed} failed operations in window")

    if sample_ok and success_rate < settings["HEALTH_SUCCESS_RATE_CRITICAL"]:
        worsen(CRITICAL)
        issues.append(f"Success rate {success_rate}% below {settings['HEALTH_SUCCESS_RATE_CRITICAL']}%")
    elif sample_ok and success_rate < settings["HEALTH_SUCCESS_RATE_DEGRADED"]:
        worsen(DEGRADED)
        issues.append(f"Success rate {success_rate}% below {settings['HEALTH_SUCCESS_RATE_DEGRADED']}%")

    if operations["overdue"] > settings["HEALTH_OVERDUE_DEGRADED"]:
        worsen(DEGRADED)
        issues.append(f"{operations['overdue']} overdue operations")

    if orders["stuck_percentage"] > settings["HEALTH_STUCK_PERCENT_DEGRADED"]:
        worsen(DEGRADED)
        issues.append(f"{orders['stuck']} orders stuck in fulfillment ({orders['stuck_percentage']}%)")

    if orders["cancelled_percentage"] > settings["HEALTH_CANCELLED_PERCENT_DEGRADED"]:
        worsen(DEGRADED)
        issues.append(f"High order failure rate: {orders['cancelled_percentage']}% cancelled")

    return status, issues


class HealthService:
    """Health reporting and operator reconciliation actions"""

    def __init__(self, retry_service, config=None):
        self.retry_service = retry_service
        self.settings = {**DEFAULT_THRESHOLDS, **PROVIDER_DEFAULTS}
        if config:
            self.settings.update({key: config[key] for key in self.settings if key in config})

    # -------------------------
    # Report
    # -------------------------
    def report(self, window_hours=24):
        now = utcnow()
        since = now - timedelta(hours=window_hours)
        report = {
            "status": HEALTHY,
            "checked_at": isoformat(now),
            "window_hours": window_hours,
            "details": {},
            "issues": [],
        }

        database = self._probe_database()
        report["details"]["database"] = database
        if database["status"] != "ok":
            report["status"] = CRITICAL
            report["issues"].append(f"Database probe failed: {database.get('error')}")
            return report

        try:
            operations = self._operation_stats(since, now)
            orders = self._order_stats(since, now)
            notifications = self._notification_stats(since)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Health report query failed", error=str(e), exc_info=True)
            report["status"] = CRITICAL
            report["issues"].append(f"Health query failed: {e}")
            return report

        report["details"]["operations"] = operations
        report["details"]["orders"] = orders
        report["details"]["notifications"] = notifications
        report["status"], report["issues"] = classify(operations, orders, self.settings)

        provider = self._probe_provider()
        report["details"]["provider"] = provider
        if provider["status"] == "unhealthy":
            if report["status"] == HEALTHY:
                report["status"] = DEGRADED
            report["issues"].append(f"Provider {provider['name']} unavailable: {provider['error']}")

        if report["status"] != HEALTHY:
            logger.warning("Fulfillment health check", status=report["status"], issues=report["issues"])
        return report

    def _probe_database(self):
        start = time.monotonic()
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Database probe failed", error=str(e))
            return {"status": "error", "error": str(e)}
        latency_ms = round((time.monotonic() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency_ms, "performance": _performance(latency_ms)}

    def _operation_stats(self, since, now):
        overdue_before = now - timedelta(seconds=self.settings["SWEEP_INTERVAL_SECONDS"])
        stats = self.retry_service.store.stats_since(since, overdue_before)
        total = stats["total"]
        stats["success_rate"] = round(stats["completed"] / total * 100, 2) if total else 100.0
        return stats

    def _order_stats(self, since, now):
        rows = db.session.execute(
            select(Order.status, func.count(Order.id))
            .where(Order.created_at >= since)
            .group_by(Order.status)
        ).all()
        by_status = {status: count for status, count in rows}
        total = sum(by_status.values())

        # Old enough to be overdue, or remote creation already gave up
        stuck_cutoff = now - timedelta(hours=self.settings["HEALTH_STUCK_ORDER_HOURS"])
        candidates = db.session.execute(
            select(Order).where(
                Order.created_at >= since,
                Order.status.in_(STUCK_ORDER_STATUSES),
            )
        ).scalars().all()
        failed_creates = set(db.session.execute(
            select(RetryOperation.order_id).where(
                RetryOperation.order_id.in_([order.id for order in candidates]),
                RetryOperation.type == OperationType.CREATE_REMOTE_ORDER.value,
                RetryOperation.status == OperationStatus.FAILED.value,
            )
        ).scalars())

        stuck_ids = []
        for order in candidates:
            if order.created_at >= stuck_cutoff and order.id not in failed_creates:
                continue
            dropship_statuses = db.session.execute(
                select(DropshipOrder.status).where(DropshipOrder.order_id == order.id)
            ).scalars().all()
            if not dropship_statuses or any(s not in TERMINAL_DROPSHIP_STATUSES for s in dropship_statuses):
                stuck_ids.append(order.id)

        cancelled = by_status.get(OrderStatus.CANCELLED.value, 0)
        return {
            "total": total,
            "by_status": by_status,
            "stuck": len(stuck_ids),
            "stuck_order_ids": stuck_ids[:50],
            "stuck_percentage": round(len(stuck_ids) / total * 100, 2) if total else 0.0,
            "failed_creations": len(failed_creates),
            "cancelled": cancelled,
            "cancelled_percentage": round(cancelled / total * 100, 2) if total else 0.0,
        }

    def _notification_stats(self, since):
        rows = db.session.execute(
            select(CustomerNotification.type, CustomerNotification.is_read, func.count(CustomerNotification.id))
            .where(CustomerNotification.created_at >= since)
            .group_by(CustomerNotification.type, CustomerNotification.is_read)
        ).all()

        by_type = {}
        unread = 0
        for notification_type, is_read, count in rows:
            by_type[notification_type] = by_type.get(notification_type, 0) + count
            if not is_read:
                unread += count
        return {"total": sum(by_type.values()), "unread": unread, "by_type": by_type}

    def _probe_provider(self):
        """
        Check that the fulfillment provider API answers.

        A failing call in the sandbox environment is tolerated, since the
        sandbox does not serve every endpoint.
        """
        name = self.settings["DEFAULT_PROVIDER"]
        environment = self.settings["PRODIGI_ENVIRONMENT"]
        result = {"name": name, "environment": environment}

        if not self.settings["HEALTH_PROBE_PROVIDER"]:
            return {**result, "status": "skipped"}
        if not self.settings["PRODIGI_API_KEY"]:
            return {**result, "status": "unhealthy", "error": "API key not configured"}

        start = time.monotonic()
        try:
            products = self.retry_service.registry.get_client(name).get_products()
        except (ProviderError, ValueError) as e:
            if environment == "sandbox":
                logger.info("Provider probe failed in sandbox", provider=name, error=str(e))
                return {**result, "status": "healthy", "note": "endpoint not available in sandbox"}
            logger.error("Provider probe failed", provider=name, error=str(e))
            return {**result, "status": "unhealthy", "error": str(e)}

        latency_ms = round((time.monotonic() - start) * 1000, 2)
        return {**result, "status": "healthy", "latency_ms": latency_ms, "products_available": len(products)}

    # -------------------------
    # Operator actions
    # -------------------------
    def force_sweep(self, limit=100):
        logger.info("Forced sweep requested", limit=limit)
        return self.retry_service.sweep(limit=limit)

    def reschedule_failed(self, operation_type=None, max_age_hours=24, actor="system"):
        """
        Put recently failed operations back in the queue with a fresh attempt budget.

        Returns:
            int: number of operations rescheduled
        """
        if operation_type is not None:
            operation_type = OperationType.parse(operation_type).value

        now = utcnow()
        since = now - timedelta(hours=max_age_hours)
        operations = self.retry_service.store.failed_since(since, operation_type)

        for operation in operations:
            previous_error = operation.error
            operation.status = OperationStatus.PENDING.value
            operation.attempts = 0
            operation.error = None
            operation.error_kind = None
            operation.failed_at = None
            operation.next_retry_at = now
            OrderLogService.log(operation.order_id, "operation_rescheduled", {
                "operation_id": operation.id,
                "type": operation.type,
                "previous_error": previous_error,
                "actor": actor,
            })

        db.session.commit()
        logger.info("Rescheduled failed operations", count=len(operations), operation_type=operation_type,
                    max_age_hours=max_age_hours, actor=actor)
        return len(operations)

    def purge(self, completed_days=None, failed_days=None):
        completed_days = completed_days if completed_days is not None else self.settings["PURGE_COMPLETED_DAYS"]
        failed_days = failed_days if failed_days is not None else self.settings["PURGE_FAILED_DAYS"]
        now = utcnow()
        counts = self.retry_service.store.purge(
            completed_before=now - timedelta(days=completed_days),
            failed_before=now - timedelta(days=failed_days),
        )
        logger.info("Purged old operations", completed_days=completed_days, failed_days=failed_days, **counts)
        return counts

    def cancel_operations(self, order_id, actor="system"):
        """Cancel an order's pending operations. Operations already processing are not touched."""
        if db.session.get(Order, order_id) is None:
            raise OrderNotFoundError(order_id)

        count = self.retry_service.store.cancel_pending_for_order(order_id)
        if count:
            OrderLogService.log(order_id, "operations_cancelled", {"count": count, "actor": actor})
            db.session.commit()
        logger.info("Cancelled pending operations", order_id=order_id, count=count, actor=actor)
        return count
