"""Schemas for the security administration endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class BlockedIp(BaseModel):
    """One live ban; ``expiresAt`` is epoch milliseconds."""

    model_config = ConfigDict(populate_by_name=True)

    ip: str
    expires_at: int = Field(..., alias="expiresAt")
    reason: str


class BlockedIpList(BaseModel):
    total: int
    ips: list[BlockedIp]
    timestamp: str


class UnblockRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ip: str | None = None
    admin_key: str | None = Field(default=None, alias="adminKey")


class UnblockResponse(BaseModel):
    success: bool
    message: str
