"""Rate limiting middleware and helpers for HTTP routes.

Resolves who is calling, picks a policy, asks the RateLimiter for a
verdict and turns it into HTTP: a 429 with retry metadata on denial, or
X-RateLimit-* headers on the passed-through response.
"""

from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shield.app.core.config import settings
from shield.app.core.logging import get_logger
from shield.app.core.store import CounterStore
from shield.app.exceptions import RateLimitExceededError
from shield.app.services.audit import RATE_LIMIT_EXCEEDED, AuditEvent, AuditSink
from shield.app.services.rate_limiter import (
    ANONYMOUS_CONFIG,
    AUTHENTICATED_CONFIG,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
)

logger = get_logger(__name__)

# Returned when no proxy header identifies the client. If trusted proxy
# headers are not configured, every anonymous caller collapses into this
# one bucket and per-client isolation is lost.
UNKNOWN_CLIENT = "unknown"

CLIENT_IP_HEADERS = ("X-Forwarded-For", "X-Real-IP", "CF-Connecting-IP")

DEFAULT_RETRY_AFTER_SECONDS = 60

_unknown_client_warned = False


def get_client_ip(request: Request) -> str:
    """Resolve the client address from proxy headers.

    Trust order: first hop of X-Forwarded-For, then X-Real-IP, then
    CF-Connecting-IP. Falls back to UNKNOWN_CLIENT.
    """
    global _unknown_client_warned

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    for header in CLIENT_IP_HEADERS[1:]:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()

    if not _unknown_client_warned:
        logger.warning(
            "No client address header present; anonymous traffic shares the "
            f"'{UNKNOWN_CLIENT}' rate limit bucket. Configure the proxy to set "
            "X-Forwarded-For or X-Real-IP."
        )
        _unknown_client_warned = True
    return UNKNOWN_CLIENT


def get_user_id(request: Request) -> Optional[str]:
    """Authenticated user id placed on request.state by the auth layer."""
    user_id = getattr(request.state, "user_id", None)
    return str(user_id) if user_id else None


def build_rate_limit_headers(result: RateLimitResult, include_retry_after: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": result.reset_at.isoformat(),
    }
    if include_retry_after:
        headers["Retry-After"] = str(result.retry_after or DEFAULT_RETRY_AFTER_SECONDS)
    return headers


def add_rate_limit_headers(response: Response, result: RateLimitResult) -> Response:
    """Attach X-RateLimit-* headers to a passed-through response."""
    response.headers.update(build_rate_limit_headers(result))
    return response


def rate_limit_exceeded_response(
    result: RateLimitResult,
    message: str = "Too many requests. Please try again later.",
) -> JSONResponse:
    """Build the 429 response for a denied request."""
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": {
                "code": RateLimitExceededError.error_code,
                "message": message,
            },
        },
        headers=build_rate_limit_headers(result, include_retry_after=True),
    )


async def apply_rate_limit(
    request: Request,
    identifier: str,
    limiter: RateLimiter,
    endpoint: Optional[str] = None,
) -> Optional[JSONResponse]:
    """Check a request against a limiter.

    Args:
        request: Incoming request
        identifier: Rate limit subject
        limiter: Limiter holding the policy to apply
        endpoint: Endpoint override; defaults to the request path

    Returns:
        None when allowed, or a 429 JSONResponse when denied
    """
    path = endpoint or request.url.path
    result = await limiter.check_limit(identifier, path)
    if result.allowed:
        request.state.rate_limit = result
        return None

    logger.info(
        "Rate limit exceeded",
        extra={"identifier": identifier, "endpoint": path, "path": request.url.path},
    )
    return rate_limit_exceeded_response(result)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Authenticated requests (request.state.user_id set by an outer layer)
    are limited per user with the authenticated policy; everything else is
    limited per client address with the anonymous policy. Path prefixes in
    ``path_configs`` override both with a tighter policy.
    """

    def __init__(
        self,
        app: Any,
        store: CounterStore,
        anonymous_config: RateLimitConfig = ANONYMOUS_CONFIG,
        authenticated_config: RateLimitConfig = AUTHENTICATED_CONFIG,
        path_configs: Optional[Dict[str, RateLimitConfig]] = None,
        exempt_paths: Optional[list[str]] = None,
        include_headers: Optional[bool] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(app)
        self.anonymous_limiter = RateLimiter(store, anonymous_config, clock=clock)
        self.authenticated_limiter = RateLimiter(store, authenticated_config, clock=clock)
        # Longest prefix first so /api/auth/login beats /api/auth.
        self.path_limiters = [
            (prefix, RateLimiter(store, config, clock=clock))
            for prefix, config in sorted(
                (path_configs or {}).items(), key=lambda item: len(item[0]), reverse=True
            )
        ]
        self.exempt_paths = tuple(
            exempt_paths if exempt_paths is not None else settings.rate_limit_exempt_paths
        )
        self.include_headers = (
            include_headers if include_headers is not None else settings.rate_limit_headers_enabled
        )
        self.audit = audit

    def _select(self, request: Request) -> tuple[str, RateLimiter]:
        """Pick the identifier and limiter for a request."""
        user_id = get_user_id(request)
        identifier = f"user:{user_id}" if user_id else get_client_ip(request)

        path = request.url.path
        for prefix, limiter in self.path_limiters:
            if path.startswith(prefix):
                return identifier, limiter

        if user_id:
            return identifier, self.authenticated_limiter
        return identifier, self.anonymous_limiter

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request with rate limiting."""
        if request.url.path.startswith(self.exempt_paths):
            return await call_next(request)

        identifier, limiter = self._select(request)
        result = await limiter.check_limit(identifier, request.url.path)

        if not result.allowed:
            logger.info(
                "Rate limit exceeded",
                extra={
                    "identifier": identifier,
                    "path": request.url.path,
                    "method": request.method,
                    "request_id": getattr(request.state, "request_id", None),
                },
            )
            if self.audit is not None:
                self.audit.record(
                    AuditEvent(
                        action=RATE_LIMIT_EXCEEDED,
                        identifier=identifier,
                        ip_address=get_client_ip(request),
                        user_agent=request.headers.get("user-agent"),
                        metadata={"path": request.url.path, "retry_after": result.retry_after},
                    )
                )
            return rate_limit_exceeded_response(result)

        request.state.rate_limit = result
        response = await call_next(request)

        # An inner route-level limiter may already have answered with its own policy.
        if self.include_headers and "X-RateLimit-Limit" not in response.headers:
            add_rate_limit_headers(response, result)
        return response


def _route_policy(request: Request, user_id: Optional[str]) -> RateLimitConfig:
    """Application policy for the caller, in a namespace of its own.

    Route counters live under ``<prefix>:route`` so a route behind both
    the middleware and this dependency records one entry in each window
    instead of two in the same one.
    """
    name = "authenticated" if user_id else "anonymous"
    limiters = getattr(request.app.state, "rate_limiters", None) or {}
    if name in limiters:
        base = limiters[name].config
    else:
        base = AUTHENTICATED_CONFIG if user_id else ANONYMOUS_CONFIG
    return replace(base, key_prefix=f"{base.key_prefix}:route")


def rate_limit_dependency(config: Optional[RateLimitConfig] = None, endpoint: Optional[str] = None):
    """Create a FastAPI dependency that rate limits a single route.

    The counter store is taken from ``app.state.counter_store``. Without a
    config the application's anonymous or authenticated policy applies. A
    denied request raises RateLimitExceededError, which the application
    turns into a 429.

    Example:
        export_policy = RateLimitConfig(window_ms=60_000, max_requests=5, key_prefix="ratelimit:export")

        @router.get("/export", dependencies=[Depends(rate_limit_dependency(export_policy))])
        async def export(): ...
    """

    async def dependency(request: Request) -> RateLimitResult:
        store: CounterStore = request.app.state.counter_store
        user_id = get_user_id(request)
        policy = config or _route_policy(request, user_id)
        identifier = f"user:{user_id}" if user_id else get_client_ip(request)

        result = await RateLimiter(store, policy).check_limit(identifier, endpoint or request.url.path)
        if not result.allowed:
            raise RateLimitExceededError(result)
        return result

    return dependency
