"""API endpoint modules for version 1."""

from .appeals import router as appeals_router
from .security import router as security_router
from .system import router as system_router

__all__ = [
    "appeals_router",
    "security_router",
    "system_router",
]
