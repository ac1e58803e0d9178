"""
Retry scheduler, processor and batch sweeper.

Operations are persisted before any remote call is attempted, claimed with a
conditional update before they run, and finalized in the same transaction as
the order audit entry describing the outcome.
"""
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.datetime_utils import utcnow, isoformat
from fulfillment.exceptions import OrderNotFoundError, UnknownOperationTypeError, InvalidPayloadError
from fulfillment.logging_config import get_logger, OperationContext
from fulfillment.models import Order, RetryOperation, OperationStatus, TERMINAL_OPERATION_STATUSES, db
from fulfillment.retry.backoff import RetryConfig, next_delay
from fulfillment.retry.operations import OperationType, parse_payload, make_operation_id
from fulfillment.retry.results import SUCCESS_RESULTS, PermanentError, TransientError
from fulfillment.services.operation_store import OperationStore
from fulfillment.services.order_log_service import OrderLogService

logger = get_logger(__name__)

MAX_RETRIES_EXCEEDED = "Max retries exceeded"

# Outcomes of a single processing pass
COMPLETED = "completed"
ALREADY_FINISHED = "already_finished"
RETRY_SCHEDULED = "retry_scheduled"
FAILED = "failed"
SKIPPED = "skipped"
MISSING = "missing"


class RetryService:
    """Schedules, processes and sweeps retry operations."""

    def __init__(self, config: RetryConfig, registry, store=None):
        self.config = config
        self.registry = registry
        self.store = store or OperationStore()
        registry.attach_scheduler(self)

    # -------------------------
    # Scheduler
    # -------------------------
    def schedule(self, operation_type, order_id, payload, immediate=False):
        """
        Persist a new pending operation for an order.

        The row is committed before anything is executed. With immediate=True
        the operation is processed inline; failures of that attempt are logged
        and left to the sweeper.

        Returns:
            str: the operation id

        Raises:
            UnknownOperationTypeError: operation_type is not known
            InvalidPayloadError: payload does not match the operation type
            OrderNotFoundError: order_id does not reference an order
        """
        operation_type = OperationType.parse(operation_type)
        typed_payload = parse_payload(operation_type, payload)

        if db.session.get(Order, order_id) is None:
            raise OrderNotFoundError(order_id)

        now = utcnow()
        next_retry_at = now if immediate else now + next_delay(1, self.config)
        operation = RetryOperation(
            id=make_operation_id(operation_type, order_id),
            type=operation_type.value,
            order_id=order_id,
            payload=typed_payload.to_dict(),
            attempts=0,
            max_attempts=self.config.max_retries,
            status=OperationStatus.PENDING.value,
            next_retry_at=next_retry_at,
            created_at=now,
        )
        self.store.insert(operation)
        operation_id = operation.id

        logger.info(
            "Retry operation scheduled",
            operation_id=operation_id,
            type=operation_type.value,
            order_id=order_id,
            immediate=immediate,
            next_retry_at=isoformat(next_retry_at),
        )

        if immediate:
            try:
                self.process(operation_id)
            except Exception as e:
                db.session.rollback()
                logger.error(
                    "Immediate processing failed; sweeper will retry",
                    operation_id=operation_id,
                    error=str(e),
                    exc_info=True,
                )

        return operation_id

    # -------------------------
    # Processor
    # -------------------------
    def process(self, operation_id):
        """
        Run one attempt of an operation if it is due for one.

        Returns:
            bool: True if the operation is completed (now or before) or cancelled
        """
        return self._process(operation_id) in (COMPLETED, ALREADY_FINISHED)

    def _process(self, operation_id):
        operation = self.store.get(operation_id, refresh=True)
        if operation is None:
            logger.warning("Retry operation not found", operation_id=operation_id)
            return MISSING

        if operation.status in TERMINAL_OPERATION_STATUSES:
            return ALREADY_FINISHED
        if operation.status != OperationStatus.PENDING.value:
            return SKIPPED

        if operation.attempts >= operation.max_attempts:
            self.store.fail(operation, MAX_RETRIES_EXCEEDED, operation.error_kind)
            OrderLogService.log(operation.order_id, "operation_failed", {
                "operation_id": operation.id,
                "type": operation.type,
                "attempts": operation.attempts,
                "error": MAX_RETRIES_EXCEEDED,
            })
            db.session.commit()
            logger.error("Retry operation exhausted", operation_id=operation_id, attempts=operation.attempts)
            return FAILED

        if not self.store.claim(operation_id):
            logger.info("Retry operation claimed elsewhere", operation_id=operation_id)
            return SKIPPED

        with OperationContext("retry_process", operation_id=operation_id):
            result = self._execute(operation_id)
            try:
                return self._finalize(operation_id, result)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error("Failed to record operation outcome; releasing claim",
                             operation_id=operation_id, error=str(e), exc_info=True)
                self.store.release(operation_id)
                return SKIPPED

    def _execute(self, operation_id):
        operation = self.store.get(operation_id, refresh=True)
        order = db.session.get(Order, operation.order_id)

        try:
            payload = parse_payload(operation.type, operation.payload)
        except (UnknownOperationTypeError, InvalidPayloadError) as e:
            return PermanentError(str(e))

        try:
            return self.registry.execute(operation.type, order, payload)
        except Exception as e:
            db.session.rollback()
            logger.error("Executor raised unexpectedly", operation_id=operation_id,
                         type=operation.type, error=str(e), exc_info=True)
            return TransientError(f"Unexpected error: {e}")

    def _finalize(self, operation_id, result):
        operation = self.store.get(operation_id, refresh=True)
        now = utcnow()
        log_details = {
            "operation_id": operation.id,
            "type": operation.type,
            "attempts": operation.attempts,
        }

        if isinstance(result, SUCCESS_RESULTS):
            self.store.complete(operation, result.to_dict(), now)
            OrderLogService.log(operation.order_id, "operation_completed", log_details)
            db.session.commit()
            logger.info("Retry operation completed", operation_id=operation_id, attempts=operation.attempts)
            return COMPLETED

        retryable = isinstance(result, TransientError) or not self.config.fast_fail_permanent
        if retryable and operation.attempts < operation.max_attempts:
            next_retry_at = now + next_delay(operation.attempts, self.config)
            self.store.reschedule(operation, result.message, result.kind, next_retry_at)
            OrderLogService.log(operation.order_id, "operation_retry_scheduled", {
                **log_details,
                "error": result.message,
                "next_retry_at": isoformat(next_retry_at),
            })
            db.session.commit()
            logger.warning("Retry operation will be retried", operation_id=operation_id,
                           attempts=operation.attempts, error=result.message,
                           next_retry_at=isoformat(next_retry_at))
            return RETRY_SCHEDULED

        self.store.fail(operation, result.message, result.kind, now)
        OrderLogService.log(operation.order_id, "operation_failed", {
            **log_details,
            "error": result.message,
            "error_kind": result.kind,
        })
        db.session.commit()
        logger.error("Retry operation failed", operation_id=operation_id, attempts=operation.attempts,
                     error=result.message, error_kind=result.kind)
        return FAILED

    # -------------------------
    # Sweeper
    # -------------------------
    def sweep(self, limit=100):
        """
        Release stale claims, then process every due pending operation.

        Returns:
            dict: processed, succeeded, failed, skipped, released counts
        """
        stats = {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "released": 0}

        stats["released"] = self.store.release_stale(self.config.claim_timeout_seconds)
        operation_ids = self.store.due_ids(limit=limit)

        for operation_id in operation_ids:
            stats["processed"] += 1
            try:
                outcome = self._process(operation_id)
            except Exception as e:
                db.session.rollback()
                logger.error("Sweep failed to process operation", operation_id=operation_id,
                             error=str(e), exc_info=True)
                stats["failed"] += 1
                continue

            if outcome in (COMPLETED, ALREADY_FINISHED):
                stats["succeeded"] += 1
            elif outcome in (SKIPPED, MISSING):
                stats["skipped"] += 1
            else:
                stats["failed"] += 1

        if stats["processed"] or stats["released"]:
            logger.info("Retry sweep finished", **stats)
        return stats
