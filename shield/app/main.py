from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shield.app.api.admin import router as admin_router
from shield.app.api.health import router as health_router
from shield.app.core.config import Settings, settings as default_settings
from shield.app.core.logging import get_logger, setup_logging
from shield.app.core.redis import create_counter_store
from shield.app.core.store import CounterStore
from shield.app.exceptions import (
    AccountLockedError,
    RateLimitExceededError,
    ShieldException,
    StoreUnavailableError,
)
from shield.app.middleware.login_guard import LoginGuard
from shield.app.middleware.rate_limit import (
    RateLimitMiddleware,
    build_rate_limit_headers,
)
from shield.app.middleware.request_id import RequestIdMiddleware
from shield.app.services.audit import AuditSink
from shield.app.services.brute_force import BruteForceConfig, BruteForceProtection
from shield.app.services.rate_limiter import RateLimitConfig, RateLimiter


def build_policies(config: Settings) -> dict[str, RateLimitConfig]:
    """Named rate limit policies from settings."""
    return {
        "anonymous": RateLimitConfig(
            window_ms=config.anonymous_window_ms,
            max_requests=config.anonymous_max_requests,
            key_prefix="ratelimit:anon",
        ),
        "authenticated": RateLimitConfig(
            window_ms=config.authenticated_window_ms,
            max_requests=config.authenticated_max_requests,
            key_prefix="ratelimit:auth",
        ),
        "auth": RateLimitConfig(
            window_ms=config.auth_rate_limit_window_ms,
            max_requests=config.auth_rate_limit_max_requests,
            key_prefix="ratelimit:login",
        ),
        "upload": RateLimitConfig(
            window_ms=config.upload_rate_limit_window_ms,
            max_requests=config.upload_rate_limit_max_requests,
            key_prefix="ratelimit:upload",
        ),
    }


def create_app(
    store: Optional[CounterStore] = None,
    config: Optional[Settings] = None,
    audit: Optional[AuditSink] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    This is the one place the counter store is created. Every limiter,
    the brute force protection and the middleware share it.

    Args:
        store: Counter store to use instead of building one from settings
        config: Settings override
        audit: Audit sink override

    Returns:
        Configured FastAPI application instance
    """
    config = config or default_settings
    setup_logging()
    logger = get_logger(__name__)

    store = store or create_counter_store()
    audit = audit or AuditSink(queue_size=config.audit_queue_size)

    policies = build_policies(config)
    rate_limiters = {name: RateLimiter(store, policy) for name, policy in policies.items()}
    brute_force = BruteForceProtection(
        store,
        BruteForceConfig(
            max_attempts=config.brute_force_max_attempts,
            base_delay_ms=config.brute_force_base_delay_ms,
            max_delay_ms=config.brute_force_max_delay_ms,
            window_ms=config.brute_force_window_ms,
            lockout_duration_ms=config.brute_force_lockout_duration_ms,
        ),
        audit=audit,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the audit sink, then flush it and close the store on shutdown."""
        audit.start()
        try:
            latency_ms = await store.ping()
            logger.info(f"Counter store reachable ({latency_ms:.1f} ms)")
        except StoreUnavailableError as e:
            # Checks fail open, so start anyway.
            logger.warning(f"Counter store unreachable at startup: {e}")

        logger.info(
            "Application startup complete",
            extra={"store": type(store).__name__, "debug_mode": config.debug},
        )
        yield

        await audit.shutdown()
        await store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="abuseshield",
        description="Distributed rate limiting and brute force protection",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.counter_store = store
    app.state.audit = audit
    app.state.rate_limiters = rate_limiters
    app.state.brute_force = brute_force
    app.state.login_guard = LoginGuard(brute_force, rate_limiters["auth"], audit=audit)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        RateLimitMiddleware,
        store=store,
        anonymous_config=policies["anonymous"],
        authenticated_config=policies["authenticated"],
        path_configs={
            **{path: policies["auth"] for path in config.auth_rate_limit_paths},
            **{path: policies["upload"] for path in config.upload_rate_limit_paths},
        },
        exempt_paths=config.rate_limit_exempt_paths,
        include_headers=config.rate_limit_headers_enabled,
        audit=audit,
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
    )

    app.include_router(health_router)
    app.include_router(admin_router)

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=build_rate_limit_headers(exc.result, include_retry_after=True),
        )

    @app.exception_handler(AccountLockedError)
    async def account_locked_handler(request: Request, exc: AccountLockedError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(ShieldException)
    async def shield_exception_handler(request: Request, exc: ShieldException) -> JSONResponse:
        logger.error(f"{type(exc).__name__}: {exc.message}", extra={"path": request.url.path})
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    return app


app = create_app()
