"""Discord webhook notifications for new appeals.

Delivery is fire-and-forget: the request that produced the appeal never waits
for, or learns about, the webhook outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from appeal_guard.core.settings import Settings

logger = logging.getLogger(__name__)

WEBHOOK_USERNAME = "CARTEL Appeals"
EMBED_TITLE = "\N{BELL} New Appeal Submitted"
EMBED_FOOTER = "CARTEL Appeal System"
EMBED_COLOR = 0x00FF00
EMBED_FIELD_LIMIT = 1024


@dataclass(frozen=True)
class AppealNotice:
    """Snapshot of an appeal, detached from any database session."""

    user_id: str
    denial_date: str
    appeal_reason: str
    submitted_at: datetime


def _truncate(value: str, limit: int = EMBED_FIELD_LIMIT) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def build_webhook_payload(notice: AppealNotice) -> dict[str, Any]:
    """Render the Discord message body for an appeal."""
    return {
        "username": WEBHOOK_USERNAME,
        "embeds": [
            {
                "title": EMBED_TITLE,
                "color": EMBED_COLOR,
                "fields": [
                    {"name": "Discord User ID", "value": f"`{notice.user_id}`", "inline": True},
                    {"name": "Denial Date", "value": notice.denial_date, "inline": True},
                    {
                        "name": "Appeal Reason",
                        "value": _truncate(notice.appeal_reason),
                        "inline": False,
                    },
                ],
                "timestamp": notice.submitted_at.isoformat(),
                "footer": {"text": EMBED_FOOTER},
            }
        ],
    }


class AppealNotifier:
    """Posts appeal notices to a Discord webhook in detached tasks."""

    def __init__(
        self,
        webhook_url: str | None = None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._pending: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, config: Settings) -> AppealNotifier:
        return cls(config.discord_webhook_url, timeout_seconds=config.http_timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, notice: AppealNotice) -> asyncio.Task[None] | None:
        """Schedule delivery and return immediately."""
        if not self.enabled:
            logger.info("No Discord webhook URL configured, skipping notification")
            return None
        task = asyncio.create_task(self.send(notice))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send(self, notice: AppealNotice) -> bool:
        """Deliver one notice; failures are logged and reported as False."""
        if not self.webhook_url:
            return False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        try:
            response = await self._client.post(self.webhook_url, json=build_webhook_payload(notice))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send Discord webhook for user %s: %s", notice.user_id, exc)
            return False
        logger.info("Discord webhook sent for user %s", notice.user_id)
        return True

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
