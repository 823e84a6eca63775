"""
Error taxonomy. Every failure the engine reports to a caller is one of these;
each carries a stable machine-readable code, an HTTP status and structured details.
"""
from typing import Any


class DispatchError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "error": self.message, "details": self.details}


class ValidationError(DispatchError):
    """Malformed input, raised before any side effect."""
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        self.field = field
        details = dict(details or {})
        if field is not None:
            details.setdefault("field", field)
        super().__init__(message, details)


class InvalidCoordinates(ValidationError):
    code = "INVALID_COORDINATES"


class Forbidden(DispatchError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Not allowed"):
        super().__init__(message)


class NotFound(DispatchError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None):
        self.resource = resource
        super().__init__(f"{resource} not found", {"resource": resource, "id": str(resource_id) if resource_id else None})


class InvalidTransition(DispatchError):
    """Requested status is not reachable from the current one for this actor."""
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot transition from {current} to {requested}",
            {"current_status": current, "requested_status": requested},
        )


class StaleState(DispatchError):
    """Another actor moved the order first; re-fetch and decide."""
    code = "STALE_STATE"
    status_code = 409

    def __init__(self, expected: str, requested: str):
        self.expected = expected
        self.requested = requested
        super().__init__(
            "Order changed concurrently, re-fetch and retry",
            {"expected_status": expected, "requested_status": requested},
        )


class AlreadyAssigned(DispatchError):
    code = "ALREADY_ASSIGNED"
    status_code = 409

    def __init__(self, order_id: Any):
        super().__init__("Order already has an assigned courier", {"order_id": str(order_id)})


class CourierOffline(DispatchError):
    code = "COURIER_OFFLINE"
    status_code = 403

    def __init__(self, courier_id: Any):
        super().__init__("Courier must be online", {"courier_id": str(courier_id)})


class CourierUnavailable(DispatchError):
    """Courier is busy with another delivery."""
    code = "COURIER_UNAVAILABLE"
    status_code = 409

    def __init__(self, courier_id: Any, reason: str = "Courier is currently on another delivery"):
        super().__init__(reason, {"courier_id": str(courier_id)})


class RateLimited(DispatchError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__("Rate limit exceeded", {"retry_after": retry_after})
