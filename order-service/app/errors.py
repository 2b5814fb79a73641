from typing import Any, Dict


class OrderServiceError(Exception):
    """Base for every error the service surfaces to its callers."""

    code = "ORDER_SERVICE_ERROR"
    status_code = 500

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.detail}


class Unauthenticated(OrderServiceError):
    code = "UNAUTHENTICATED"
    status_code = 401


class Unauthorized(OrderServiceError):
    code = "UNAUTHORIZED"
    status_code = 403


class NotFound(OrderServiceError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidRequest(OrderServiceError):
    code = "INVALID_REQUEST"
    status_code = 400


class EmptyCart(InvalidRequest):
    code = "EMPTY_CART"


class IncompleteAddress(InvalidRequest):
    code = "INCOMPLETE_ADDRESS"


class RestaurantMismatch(InvalidRequest):
    code = "RESTAURANT_MISMATCH"


class InvalidTransition(OrderServiceError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current_status: str, requested_status: str, reason: str = ""):
        message = f"Cannot move order from {current_status} to {requested_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            current_status=current_status,
            requested_status=requested_status,
        )
        self.current_status = current_status
        self.requested_status = requested_status


class UpstreamUnavailable(OrderServiceError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 502


class NotificationFailure(Exception):
    """Raised by notification senders. Logged by the dispatcher, never surfaced."""
