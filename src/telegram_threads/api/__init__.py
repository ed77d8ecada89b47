"""API routes for Telegram Threads server."""

from .threads import router as threads_router
from .settings import router as settings_router

API_VERSION = "v1"
API_PREFIX = f"/api/{API_VERSION}"

__all__ = [
    "threads_router",
    "settings_router",
    "API_VERSION",
    "API_PREFIX",
]
