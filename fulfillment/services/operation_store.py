"""
Persistence for retry operations.

All status transitions that can race between workers are single conditional
UPDATE statements, so the database decides which worker wins.
"""
from datetime import timedelta

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError

from fulfillment.datetime_utils import utcnow
from fulfillment.logging_config import get_logger
from fulfillment.models import RetryOperation, OperationStatus, db

logger = get_logger(__name__)

PENDING = OperationStatus.PENDING.value
PROCESSING = OperationStatus.PROCESSING.value
COMPLETED = OperationStatus.COMPLETED.value
FAILED = OperationStatus.FAILED.value
CANCELLED = OperationStatus.CANCELLED.value


class OperationStore:

    def get(self, operation_id, refresh=False):
        """Load an operation by id. refresh=True discards any cached state."""
        if refresh:
            return db.session.get(RetryOperation, operation_id, populate_existing=True)
        return db.session.get(RetryOperation, operation_id)

    def insert(self, operation):
        """
        Persist a new pending operation and commit.

        Operation ids embed a millisecond timestamp; two operations for the same
        order and type scheduled within the same millisecond get the next free id.
        """
        base_id = operation.id
        suffix = 0
        while db.session.get(RetryOperation, operation.id) is not None:
            suffix += 1
            operation.id = f"{base_id}_{suffix}"

        db.session.add(operation)
        db.session.commit()
        return operation

    def claim(self, operation_id, now=None):
        """
        Atomically move a pending operation to processing and count the attempt.

        Returns:
            bool: True if this caller now owns the operation. False if it was not
            pending, or another operation for the same order and type is
            already processing.
        """
        now = now or utcnow()
        stmt = (
            update(RetryOperation)
            .where(RetryOperation.id == operation_id, RetryOperation.status == PENDING)
            .values(
                status=PROCESSING,
                attempts=RetryOperation.attempts + 1,
                last_attempt_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.session.execute(stmt)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info("Claim lost to concurrent processing of the same order step", operation_id=operation_id)
            return False

        return result.rowcount == 1

    def complete(self, operation, result, now=None):
        operation.status = COMPLETED
        operation.result = result
        operation.error = None
        operation.error_kind = None
        operation.completed_at = now or utcnow()

    def reschedule(self, operation, error, error_kind, next_retry_at):
        operation.status = PENDING
        operation.error = error
        operation.error_kind = error_kind
        operation.next_retry_at = next_retry_at

    def fail(self, operation, error, error_kind=None, now=None):
        operation.status = FAILED
        operation.error = error
        operation.error_kind = error_kind
        operation.failed_at = now or utcnow()

    def release(self, operation_id, now=None):
        """Return a claimed operation to pending so it can be retried."""
        stmt = (
            update(RetryOperation)
            .where(RetryOperation.id == operation_id, RetryOperation.status == PROCESSING)
            .values(status=PENDING, next_retry_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        db.session.commit()
        return result.rowcount == 1

    def release_stale(self, claim_timeout_seconds, now=None):
        """
        Release operations whose claim is older than the timeout.

        A worker that died between claim and finalize leaves its operation in
        processing; releasing it lets the sweeper pick it up again.

        Returns:
            int: number of operations released
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=claim_timeout_seconds)
        stmt = (
            update(RetryOperation)
            .where(
                RetryOperation.status == PROCESSING,
                RetryOperation.last_attempt_at < cutoff,
            )
            .values(status=PENDING, next_retry_at=now)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        db.session.commit()

        if result.rowcount:
            logger.warning("Released stale operation claims", count=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount

    def due_ids(self, now=None, limit=100):
        """Ids of pending operations that are due, oldest due first."""
        now = now or utcnow()
        stmt = (
            select(RetryOperation.id)
            .where(RetryOperation.status == PENDING, RetryOperation.next_retry_at <= now)
            .order_by(RetryOperation.next_retry_at.asc())
            .limit(limit)
        )
        return list(db.session.execute(stmt).scalars())

    def list_operations(self, status=None, order_id=None, operation_type=None, limit=100):
        stmt = select(RetryOperation)
        if status:
            stmt = stmt.where(RetryOperation.status == status)
        if order_id:
            stmt = stmt.where(RetryOperation.order_id == order_id)
        if operation_type:
            stmt = stmt.where(RetryOperation.type == operation_type)
        stmt = stmt.order_by(RetryOperation.created_at.desc()).limit(limit)
        return list(db.session.execute(stmt).scalars())

    def cancel_pending_for_order(self, order_id, now=None):
        """
        Cancel all pending operations for an order. Processing operations are left alone.

        Returns:
            int: number of operations cancelled
        """
        stmt = (
            update(RetryOperation)
            .where(RetryOperation.order_id == order_id, RetryOperation.status == PENDING)
            .values(status=CANCELLED, cancelled_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        db.session.commit()
        return result.rowcount

    def failed_since(self, since, operation_type=None):
        """Failed operations whose last failure happened at or after since."""
        stmt = select(RetryOperation).where(
            RetryOperation.status == FAILED,
            RetryOperation.failed_at >= since,
        )
        if operation_type:
            stmt = stmt.where(RetryOperation.type == operation_type)
        return list(db.session.execute(stmt).scalars())

    def purge(self, completed_before, failed_before):
        """Delete completed and failed operations older than the given cutoffs."""
        completed = db.session.execute(
            delete(RetryOperation)
            .where(RetryOperation.status == COMPLETED, RetryOperation.completed_at < completed_before)
            .execution_options(synchronize_session=False)
        ).rowcount
        failed = db.session.execute(
            delete(RetryOperation)
            .where(RetryOperation.status == FAILED, RetryOperation.failed_at < failed_before)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.commit()
        return {"completed": completed, "failed": failed, "total": completed + failed}

    def stats_since(self, since, overdue_before):
        """
        Aggregate operation counts for operations created since `since`.

        Returns:
            dict: total, per-status counts, average attempts and overdue pending count
        """
        rows = db.session.execute(
            select(RetryOperation.status, func.count(RetryOperation.id))
            .where(RetryOperation.created_at >= since)
            .group_by(RetryOperation.status)
        ).all()
        counts = {status: 0 for status in (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)}
        for status, count in rows:
            counts[status] = count

        avg_attempts = db.session.execute(
            select(func.avg(RetryOperation.attempts)).where(RetryOperation.created_at >= since)
        ).scalar()

        overdue = db.session.execute(
            select(func.count(RetryOperation.id)).where(
                RetryOperation.created_at >= since,
                RetryOperation.status == PENDING,
                RetryOperation.next_retry_at < overdue_before,
            )
        ).scalar()

        return {
            "total": sum(counts.values()),
            **counts,
            "average_attempts": round(float(avg_attempts or 0), 2),
            "overdue": overdue or 0,
        }
