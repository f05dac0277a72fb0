"""Version 1 API endpoints."""

from .endpoints import appeals_router, security_router, system_router

__all__ = [
    "appeals_router",
    "security_router",
    "system_router",
]
