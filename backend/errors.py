"""
UI Analyzer — Error Taxonomy
Each error carries its HTTP status and a machine-readable `error` string;
extra keyword fields are echoed in the JSON body.
"""

from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, **self.extra}


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class AuthError(AppError):
    status_code = 401
    default_message = "Invalid token"


class TokenExpiredError(AuthError):
    default_message = "Token expired"


class TokenMalformedError(AuthError):
    default_message = "Invalid token"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "Forbidden"


class UsageLimitError(AuthorizationError):
    default_message = "Usage limit reached"


class PaidPlanRequiredError(AuthorizationError):
    default_message = "Paid plan required"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class GatewayDeclineError(AppError):
    """The provider legitimately refused the payment. Not retried."""
    status_code = 400
    default_message = "Payment failed"


class GatewayFaultError(AppError):
    """Transport or infrastructure failure talking to the payment provider."""
    status_code = 502
    default_message = "Payment provider unavailable"


class PersistenceError(AppError):
    status_code = 500
    default_message = "Internal server error"
