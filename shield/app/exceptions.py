"""Custom exceptions for the abuse protection service."""

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shield.app.services.rate_limiter import RateLimitResult


class ShieldException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Abuse protection error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to the API error envelope."""
        return {
            "success": False,
            "error": {"code": self.error_code, "message": self.message},
        }


class StoreUnavailableError(ShieldException):
    """Raised when the counter store times out or cannot be reached.

    Checks never surface this to clients; they fail open instead.
    """
    status_code = 503
    error_code = "STORE_UNAVAILABLE"

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        message = f"Counter store unavailable during {operation}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ConfigurationError(ShieldException, ValueError):
    """Raised when a limiter or protector is built with invalid settings."""
    status_code = 500
    error_code = "CONFIGURATION_ERROR"


class RateLimitExceededError(ShieldException):
    """Raised when a caller exceeds its sliding-window quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        result: "RateLimitResult",
        detail: str = "Too many requests. Please try again later.",
    ):
        self.result = result
        super().__init__(detail)


class AccountLockedError(ShieldException):
    """Raised when authentication is attempted against a locked identifier.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "ACCOUNT_LOCKED"

    def __init__(self, locked_until: datetime, detail: str | None = None):
        self.locked_until = locked_until
        super().__init__(
            detail
            or f"Account is locked due to too many failed attempts. "
            f"Try again after {locked_until.isoformat()}."
        )

    def to_response(self) -> dict:
        body = super().to_response()
        body["error"]["lockedUntil"] = self.locked_until.isoformat()
        return body
