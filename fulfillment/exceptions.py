"""Exception types raised across the fulfillment engine."""


class FulfillmentError(Exception):
    """Base class for engine errors."""


class OrderNotFoundError(FulfillmentError):
    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class UnknownOperationTypeError(FulfillmentError):
    def __init__(self, operation_type):
        self.operation_type = operation_type
        super().__init__(f"Unknown operation type: {operation_type}")


class InvalidPayloadError(FulfillmentError):
    """Payload does not match the shape expected for its operation type."""


class ProviderError(FulfillmentError):
    """Base class for fulfillment provider API failures."""

    def __init__(self, message, status_code=None, response_body=None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ProviderValidationError(ProviderError):
    """The provider rejected the request (4xx). Retrying will not help."""


class ProviderTransientError(ProviderError):
    """Network failure, timeout or 5xx from the provider."""


class NotificationError(FulfillmentError):
    """The notification sink could not record the notification."""


class WebhookSignatureError(FulfillmentError):
    """Webhook signature missing or invalid."""
