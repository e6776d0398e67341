"""Courier-Engine exception hierarchy."""


class CourierError(Exception):
    """Base exception for all Courier errors."""

    def __init__(self, message: str = "", code: str = "COURIER_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigurationError(CourierError):
    """Raised when a webhook endpoint definition is invalid."""

    def __init__(self, message: str = "Invalid webhook configuration"):
        super().__init__(message, code="CONFIGURATION")


class NotFoundError(CourierError):
    """Raised when an endpoint or delivery cannot be found."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND")


class InvalidTransitionError(CourierError):
    """Raised when a delivery status change is not permitted."""

    def __init__(self, message: str = "Invalid delivery status transition"):
        super().__init__(message, code="INVALID_TRANSITION")


class ConditionEvaluationError(CourierError):
    """Raised (and contained) when a custom condition predicate fails."""

    def __init__(self, message: str = "Condition evaluation failed", predicate: str | None = None):
        self.predicate = predicate
        super().__init__(message, code="CONDITION_EVALUATION")


class DeliveryTransportError(CourierError):
    """Network failure or timeout while calling a webhook endpoint."""

    def __init__(self, message: str = "Webhook transport failure", error_code: str = "connection_error"):
        self.error_code = error_code
        super().__init__(message, code="TRANSPORT")


class DeliveryRejectedError(CourierError):
    """Webhook endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}", code="REJECTED")


class ExhaustedRetriesError(CourierError):
    """A delivery used every attempt its retry policy allows."""

    def __init__(
        self,
        delivery_id: str,
        endpoint_id: str,
        attempts: int,
        last_error: str | None = None,
    ):
        self.delivery_id = delivery_id
        self.endpoint_id = endpoint_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Delivery {delivery_id} dead-lettered after {attempts} attempts: {last_error}",
            code="EXHAUSTED_RETRIES",
        )
