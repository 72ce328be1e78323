"""Services package for abuse protection.

This package provides:
- Sliding window rate limiting
- Brute force protection with progressive delay and lockout
- A fire-and-forget audit sink
"""

from shield.app.services.audit import AuditEvent, AuditSink
from shield.app.services.brute_force import (
    BruteForceCheckResult,
    BruteForceConfig,
    BruteForceProtection,
    BruteForceStatus,
    create_brute_force_identifier,
    create_ip_based_identifier,
)
from shield.app.services.rate_limiter import (
    ANONYMOUS_CONFIG,
    AUTHENTICATED_CONFIG,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    create_anonymous_rate_limiter,
    create_authenticated_rate_limiter,
    create_custom_rate_limiter,
)

__all__ = [
    "AuditEvent",
    "AuditSink",
    "BruteForceCheckResult",
    "BruteForceConfig",
    "BruteForceProtection",
    "BruteForceStatus",
    "create_brute_force_identifier",
    "create_ip_based_identifier",
    "ANONYMOUS_CONFIG",
    "AUTHENTICATED_CONFIG",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "create_anonymous_rate_limiter",
    "create_authenticated_rate_limiter",
    "create_custom_rate_limiter",
]
