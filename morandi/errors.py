from typing import Any, Optional


class ShopError(Exception):
    """Base error for anything a handler should turn into a JSON failure."""

    status = 400
    code = "BAD_REQUEST"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "message": self.message, "code": self.code}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(ShopError):
    status = 400
    code = "INVALID_REQUEST"


class AuthenticationError(ShopError):
    status = 401
    code = "UNAUTHORIZED"


class PermissionDenied(ShopError):
    status = 403
    code = "FORBIDDEN"


class NotFoundError(ShopError):
    status = 404
    code = "NOT_FOUND"


class ConflictError(ShopError):
    status = 409
    code = "CONFLICT"


class RateLimitError(ShopError):
    status = 429
    code = "RATE_LIMIT_EXCEEDED"


class PaymentGatewayError(ShopError):
    status = 502
    code = "PAYMENT_GATEWAY_ERROR"
