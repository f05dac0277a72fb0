"""Tests for Discord webhook notifications."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from appeal_guard.services.notifications import (
    EMBED_FIELD_LIMIT,
    AppealNotice,
    AppealNotifier,
    build_webhook_payload,
)

WEBHOOK_URL = "https://discord.example/api/webhooks/1/abc"


def _notice(reason: str = "Please review my denial, it was a mistake.") -> AppealNotice:
    return AppealNotice(
        user_id="123456789012345678",
        denial_date="2024-05-01",
        appeal_reason=reason,
        submitted_at=datetime(2024, 5, 2, 12, 0, tzinfo=UTC),
    )


def test_payload_layout() -> None:
    payload = build_webhook_payload(_notice())

    assert payload["username"] == "CARTEL Appeals"
    embed = payload["embeds"][0]
    assert embed["title"].endswith("New Appeal Submitted")
    assert embed["color"] == 0x00FF00
    assert embed["footer"] == {"text": "CARTEL Appeal System"}
    assert embed["fields"][0] == {
        "name": "Discord User ID",
        "value": "`123456789012345678`",
        "inline": True,
    }
    assert embed["timestamp"] == "2024-05-02T12:00:00+00:00"


def test_long_reason_is_truncated_to_field_limit() -> None:
    payload = build_webhook_payload(_notice("x" * 1500))

    value = payload["embeds"][0]["fields"][2]["value"]
    assert len(value) == EMBED_FIELD_LIMIT
    assert value.endswith("...")


async def test_dispatch_without_url_does_nothing() -> None:
    notifier = AppealNotifier(None)

    assert notifier.dispatch(_notice()) is None
    assert notifier.pending == 0


async def test_dispatch_posts_in_background() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = AppealNotifier(WEBHOOK_URL, client=client)

    task = notifier.dispatch(_notice())
    assert task is not None
    await task

    assert str(seen[0].url) == WEBHOOK_URL
    assert json.loads(seen[0].content)["username"] == "CARTEL Appeals"
    assert notifier.pending == 0
    await client.aclose()


async def test_webhook_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    notifier = AppealNotifier(WEBHOOK_URL, client=client)

    with caplog.at_level("ERROR"):
        delivered = await notifier.send(_notice())

    assert delivered is False
    assert "Failed to send Discord webhook" in caplog.text
    await client.aclose()
