"""Middleware package for abuse protection."""

from shield.app.middleware.login_guard import Authorized, Denied, LoginGuard
from shield.app.middleware.rate_limit import (
    UNKNOWN_CLIENT,
    RateLimitMiddleware,
    apply_rate_limit,
    get_client_ip,
    rate_limit_dependency,
)
from shield.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "Authorized",
    "Denied",
    "LoginGuard",
    "UNKNOWN_CLIENT",
    "RateLimitMiddleware",
    "apply_rate_limit",
    "get_client_ip",
    "rate_limit_dependency",
    "RequestIdMiddleware",
    "get_request_id",
]
