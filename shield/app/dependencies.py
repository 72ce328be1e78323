"""FastAPI dependencies for the components built by the application.

The composition root in shield.app.main stores every component on
app.state; these accessors hand them to routes.

Usage:
    from shield.app.dependencies import BruteForceDep

    @router.get("/status/{identifier}")
    async def status(identifier: str, protection: BruteForceDep):
        return await protection.get_status(identifier)
"""

from typing import Annotated

from fastapi import Depends, Request

from shield.app.core.store import CounterStore
from shield.app.middleware.login_guard import LoginGuard
from shield.app.services.brute_force import BruteForceProtection
from shield.app.services.rate_limiter import RateLimiter


def get_counter_store(request: Request) -> CounterStore:
    return request.app.state.counter_store


def get_brute_force_protection(request: Request) -> BruteForceProtection:
    return request.app.state.brute_force


def get_rate_limiters(request: Request) -> dict[str, RateLimiter]:
    """Named limiters: anonymous, authenticated, auth, upload."""
    return request.app.state.rate_limiters


def get_login_guard(request: Request) -> LoginGuard:
    return request.app.state.login_guard


CounterStoreDep = Annotated[CounterStore, Depends(get_counter_store)]
BruteForceDep = Annotated[BruteForceProtection, Depends(get_brute_force_protection)]
RateLimitersDep = Annotated[dict[str, RateLimiter], Depends(get_rate_limiters)]
LoginGuardDep = Annotated[LoginGuard, Depends(get_login_guard)]

__all__ = [
    "CounterStoreDep",
    "BruteForceDep",
    "RateLimitersDep",
    "LoginGuardDep",
]
