"""API endpoints package for abuse protection."""

from shield.app.api.admin import router as admin_router
from shield.app.api.health import router as health_router

__all__ = [
    "admin_router",
    "health_router",
]
