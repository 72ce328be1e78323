"""Operator endpoints for inspecting and clearing protection state."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from shield.app.core.logging import get_logger
from shield.app.dependencies import BruteForceDep, RateLimitersDep
from shield.app.middleware.auth import require_admin
from shield.app.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _get_limiter(limiters: dict[str, RateLimiter], policy: str) -> RateLimiter:
    limiter = limiters.get(policy)
    if limiter is None:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown rate limit policy '{policy}'. Known: {', '.join(sorted(limiters))}",
        )
    return limiter


@router.get("/protection/{identifier}")
async def get_protection_status(identifier: str, protection: BruteForceDep) -> dict[str, Any]:
    """Attempts and lockout state for an identifier."""
    status = await protection.get_status(identifier)
    return {"identifier": identifier, **status.to_dict()}


@router.post("/protection/{identifier}/unlock")
async def unlock_identifier(identifier: str, protection: BruteForceDep) -> dict[str, Any]:
    await protection.unlock_account(identifier)
    logger.info("Account unlocked by admin", extra={"identifier": identifier})
    return {"success": True, "identifier": identifier}


@router.get("/rate-limits/{identifier}")
async def get_rate_limit_count(
    identifier: str,
    limiters: RateLimitersDep,
    endpoint: str = Query(..., description="Endpoint path, e.g. /api/projects"),
    policy: str = Query("anonymous"),
) -> dict[str, Any]:
    limiter = _get_limiter(limiters, policy)
    count = await limiter.get_current_count(identifier, endpoint)
    return {
        "identifier": identifier,
        "endpoint": endpoint,
        "policy": policy,
        "count": count,
        "limit": limiter.config.max_requests,
        "windowMs": limiter.config.window_ms,
    }


@router.delete("/rate-limits/{identifier}")
async def reset_rate_limit(
    identifier: str,
    limiters: RateLimitersDep,
    endpoint: Optional[str] = Query(None, description="Omit to reset every endpoint"),
    policy: str = Query("anonymous"),
) -> dict[str, Any]:
    """Clear one endpoint's counter, or all of the identifier's counters."""
    limiter = _get_limiter(limiters, policy)
    await limiter.reset_limit(identifier, endpoint)
    return {"success": True, "identifier": identifier, "endpoint": endpoint, "policy": policy}
