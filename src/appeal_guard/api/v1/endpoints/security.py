"""Security administration endpoints: list and lift IP bans."""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, HTTPException, status

from appeal_guard.api.v1.dependencies import SettingsDep, StoreDep
from appeal_guard.db.time import utcnow
from appeal_guard.schemas.security import (
    BlockedIp,
    BlockedIpList,
    UnblockRequest,
    UnblockResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/security", tags=["security"])


def _admin_key_matches(expected: str | None, supplied: str | None) -> bool:
    # No configured key means the endpoint is closed.
    if not expected or not supplied:
        return False
    return secrets.compare_digest(expected.encode(), supplied.encode())


@router.get("/blocked-ips", response_model=BlockedIpList)
async def list_blocked_ips(store: StoreDep) -> BlockedIpList:
    """List every live ban.

    Returns:
        Ban count, the bans with expiry in epoch milliseconds, and the
        response timestamp
    """
    records = await store.list_bans()
    return BlockedIpList(
        total=len(records),
        ips=[
            BlockedIp(ip=r.origin, expires_at=int(r.expires_at * 1000), reason=r.reason)
            for r in records
        ],
        timestamp=utcnow().isoformat(),
    )


@router.post("/unblock", response_model=UnblockResponse)
async def unblock_ip(
    payload: UnblockRequest,
    store: StoreDep,
    config: SettingsDep,
) -> UnblockResponse:
    """Lift the ban on one IP.

    Raises:
        HTTPException: If the admin key is missing or wrong, or no IP is given
    """
    if not _admin_key_matches(config.admin_key, payload.admin_key):
        logger.warning("Rejected unblock request with invalid admin key")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")

    ip = (payload.ip or "").strip()
    if not ip:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="IP address is required")

    if await store.unban(ip):
        logger.info("IP unblocked by admin: %s", ip)
        return UnblockResponse(success=True, message=f"IP {ip} unblocked")
    return UnblockResponse(success=False, message=f"IP {ip} was not blocked")
