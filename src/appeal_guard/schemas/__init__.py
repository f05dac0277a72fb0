"""Pydantic schemas for request/response validation."""

from .appeal import AppealAccepted, AppealSubmission
from .security import BlockedIp, BlockedIpList, UnblockRequest, UnblockResponse

__all__ = [
    "AppealAccepted",
    "AppealSubmission",
    "BlockedIp",
    "BlockedIpList",
    "UnblockRequest",
    "UnblockResponse",
]
