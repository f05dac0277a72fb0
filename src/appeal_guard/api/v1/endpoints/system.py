"""Health and landing endpoints."""

from __future__ import annotations

import time

import psutil
from fastapi import APIRouter, Request

from appeal_guard.api.v1.dependencies import SettingsDep, StoreDep
from appeal_guard.db.time import utcnow

router = APIRouter(tags=["system"])


@router.get("/health")
async def health_check(request: Request, store: StoreDep) -> dict[str, object]:
    """Liveness probe with process uptime and memory usage.

    Returns:
        Dictionary with status, uptime in whole seconds, resident and virtual
        memory in bytes, reputation store mode, and the current timestamp
    """
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    memory = psutil.Process().memory_info()
    return {
        "status": "healthy",
        "uptime": int(time.monotonic() - started_at),
        "memory": {"rss": memory.rss, "vms": memory.vms},
        "store": "degraded" if store.degraded else "shared",
        "timestamp": utcnow().isoformat(),
    }


@router.get("/")
async def root(config: SettingsDep) -> dict[str, str]:
    """Root endpoint with basic information about the service."""
    return {
        "name": config.app_name,
        "version": config.app_version,
        "appeals": f"{config.api_prefix}/appeals",
    }
