from fulfillment.retry.backoff import RetryConfig, next_delay
from fulfillment.retry.operations import (
    OperationType,
    CreateRemoteOrderPayload,
    RefreshRemoteStatusPayload,
    PaymentEventPayload,
    NotificationPayload,
    parse_payload,
    make_operation_id,
)
from fulfillment.retry.results import (
    ExecutorResult,
    Ok,
    AlreadyDone,
    TransientError,
    PermanentError,
)

__all__ = [
    "RetryConfig",
    "next_delay",
    "OperationType",
    "CreateRemoteOrderPayload",
    "RefreshRemoteStatusPayload",
    "PaymentEventPayload",
    "NotificationPayload",
    "parse_payload",
    "make_operation_id",
    "ExecutorResult",
    "Ok",
    "AlreadyDone",
    "TransientError",
    "PermanentError",
]
