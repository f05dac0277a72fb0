"""Tests for the blocked-IP listing and unblock endpoints."""

from __future__ import annotations

import httpx
from fastapi import status

from appeal_guard.core.settings import Settings
from appeal_guard.services.reputation import MemoryReputationStore
from tests.conftest import TEST_ADMIN_KEY, ClientFactory, FakeClock

BANNED_IP = "198.51.100.7"


async def test_blocked_ips_lists_live_bans(
    client: httpx.AsyncClient, store: MemoryReputationStore, clock: FakeClock
) -> None:
    await store.ban(BANNED_IP, 600, "honeypot:/.env")

    r = await client.get("/api/security/blocked-ips")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["total"] == 1
    assert data["ips"] == [
        {"ip": BANNED_IP, "expiresAt": int((clock.now + 600) * 1000), "reason": "honeypot:/.env"}
    ]
    assert "timestamp" in data


async def test_unblock_with_admin_key(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    await store.ban(BANNED_IP, 600, "test")

    r = await client.post(
        "/api/security/unblock", json={"ip": BANNED_IP, "adminKey": TEST_ADMIN_KEY}
    )
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"success": True, "message": f"IP {BANNED_IP} unblocked"}
    assert not await store.is_banned(BANNED_IP)

    r = await client.post(
        "/api/security/unblock", json={"ip": "198.51.100.8", "adminKey": TEST_ADMIN_KEY}
    )
    assert r.json() == {"success": False, "message": "IP 198.51.100.8 was not blocked"}


async def test_wrong_or_missing_key_changes_nothing(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    await store.ban(BANNED_IP, 600, "test")

    for body in ({"ip": BANNED_IP, "adminKey": "wrong"}, {"ip": BANNED_IP}):
        r = await client.post("/api/security/unblock", json=body)
        assert r.status_code == status.HTTP_403_FORBIDDEN
        assert r.json() == {"error": "Unauthorized"}

    assert await store.is_banned(BANNED_IP)


async def test_unblock_is_closed_without_configured_key(
    client: httpx.AsyncClient, store: MemoryReputationStore, test_settings: Settings
) -> None:
    test_settings.admin_key = None
    await store.ban(BANNED_IP, 600, "test")

    r = await client.post("/api/security/unblock", json={"ip": BANNED_IP, "adminKey": ""})

    assert r.status_code == status.HTTP_403_FORBIDDEN
    assert await store.is_banned(BANNED_IP)


async def test_unblock_requires_ip(client: httpx.AsyncClient) -> None:
    r = await client.post("/api/security/unblock", json={"adminKey": TEST_ADMIN_KEY})

    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json() == {"error": "IP address is required"}


async def test_unbanned_origin_is_served_again(
    client: httpx.AsyncClient, client_factory: ClientFactory, store: MemoryReputationStore
) -> None:
    banned = await client_factory(BANNED_IP)
    await store.ban(BANNED_IP, 600, "flood")

    r = await banned.get("/api/security/blocked-ips")
    assert r.status_code == status.HTTP_403_FORBIDDEN

    r = await client.post(
        "/api/security/unblock", json={"ip": BANNED_IP, "adminKey": TEST_ADMIN_KEY}
    )
    assert r.json()["success"] is True

    r = await banned.get("/api/security/blocked-ips")
    assert r.status_code == status.HTTP_200_OK
    assert r.json()["total"] == 0
