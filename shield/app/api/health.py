from typing import Any

from fastapi import APIRouter

from shield.app.core.logging import get_logger
from shield.app.dependencies import CounterStoreDep

logger = get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health(store: CounterStoreDep) -> dict[str, Any]:
    """Health check with counter store reachability.

    An unreachable store reports "degraded" rather than failing: the
    limiters fail open, so the service keeps answering.
    """
    try:
        latency_ms = await store.ping()
    except Exception as e:
        logger.warning(f"Counter store health check failed: {e}")
        return {
            "status": "degraded",
            "store": {"healthy": False, "error": str(e)[:100]},
        }
    return {
        "status": "ok",
        "store": {
            "healthy": True,
            "type": type(store).__name__,
            "latency_ms": round(latency_ms, 2),
        },
    }
