"""Operation types and the typed payload each one carries."""
import time
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Optional

from fulfillment.exceptions import InvalidPayloadError, UnknownOperationTypeError


class OperationType(Enum):
    CREATE_REMOTE_ORDER = "create_remote_order"
    REFRESH_REMOTE_STATUS = "refresh_remote_status"
    PROCESS_PAYMENT_EVENT = "process_payment_event"
    SEND_NOTIFICATION = "send_notification"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownOperationTypeError(value)


@dataclass
class CreateRemoteOrderPayload:
    provider: str = "prodigi"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RefreshRemoteStatusPayload:
    provider: str = "prodigi"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PaymentEventPayload:
    event_type: str
    event_id: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class NotificationPayload:
    type: str
    title: str
    message: str
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)


PAYLOAD_TYPES = {
    OperationType.CREATE_REMOTE_ORDER: CreateRemoteOrderPayload,
    OperationType.REFRESH_REMOTE_STATUS: RefreshRemoteStatusPayload,
    OperationType.PROCESS_PAYMENT_EVENT: PaymentEventPayload,
    OperationType.SEND_NOTIFICATION: NotificationPayload,
}


def _require_str(data, key, operation_type):
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidPayloadError(f"{operation_type.value} payload requires a non-empty '{key}'")
    return value


def parse_payload(operation_type, payload):
    """
    Validate a stored payload and return the typed payload for its operation.

    Accepts an already-typed payload or a plain dict (as stored in JSON).

    Raises:
        UnknownOperationTypeError: operation_type is not a known type
        InvalidPayloadError: payload does not match the type's shape
    """
    operation_type = OperationType.parse(operation_type)
    payload_cls = PAYLOAD_TYPES[operation_type]

    if isinstance(payload, payload_cls):
        payload = payload.to_dict()
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise InvalidPayloadError(f"{operation_type.value} payload must be an object")

    if operation_type in (OperationType.CREATE_REMOTE_ORDER, OperationType.REFRESH_REMOTE_STATUS):
        provider = payload.get("provider", "prodigi")
        if not isinstance(provider, str) or not provider:
            raise InvalidPayloadError(f"{operation_type.value} payload 'provider' must be a non-empty string")
        return payload_cls(provider=provider)

    if operation_type == OperationType.PROCESS_PAYMENT_EVENT:
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise InvalidPayloadError("process_payment_event payload 'data' must be an object")
        return PaymentEventPayload(
            event_type=_require_str(payload, "event_type", operation_type),
            event_id=_require_str(payload, "event_id", operation_type),
            data=data,
        )

    metadata = payload.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise InvalidPayloadError("send_notification payload 'metadata' must be an object")
    return NotificationPayload(
        type=_require_str(payload, "type", operation_type),
        title=_require_str(payload, "title", operation_type),
        message=_require_str(payload, "message", operation_type),
        metadata=metadata,
    )


def make_operation_id(operation_type, order_id, now_ms=None):
    """Operation ids look like retry_<type>_<order id>_<epoch millis>."""
    operation_type = OperationType.parse(operation_type)
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"retry_{operation_type.value}_{order_id}_{now_ms}"
