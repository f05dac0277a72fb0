"""End-to-end tests of the defense middleware through the HTTP surface."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from appeal_guard.core.settings import Settings
from appeal_guard.main import create_app
from appeal_guard.services.captcha import CaptchaVerifier
from appeal_guard.services.notifications import AppealNotifier
from appeal_guard.services.reputation import MemoryReputationStore
from tests.conftest import DEFAULT_CLIENT_IP, ClientFactory

CLOUDFLARE_PEER = "173.245.48.10"
VALID_APPEAL = {
    "userId": "123456789012345678",
    "denialDate": "2024-05-01",
    "appealReason": "I was removed by mistake and would like a second review.",
}


def nested(levels: int) -> Any:
    value: Any = 1
    for _ in range(levels):
        value = {"k": value}
    return value


def test_stage_order_is_fixed(app: FastAPI) -> None:
    assert app.state.pipeline.stage_names == (
        "ban_enforcement",
        "method",
        "path_traversal",
        "header_injection",
        "request_timeout",
        "connection_flood",
        "rapid_repeat",
        "fingerprint_anomaly",
        "speed_limit",
        "rate_limit",
        "payload_shape",
        "suspicious_content",
    )


async def test_honeypot_hit_bans_origin_for_a_day(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    r = await client.get("/api/swagger")
    assert r.status_code == status.HTTP_404_NOT_FOUND
    assert r.text == "Not Found"

    r = await client.get("/")
    assert r.status_code == status.HTTP_403_FORBIDDEN
    assert r.json()["retryAfter"] == 1440
    assert r.json()["error"].startswith("Access forbidden.")

    bans = await store.list_bans()
    assert [(b.origin, b.reason) for b in bans] == [(DEFAULT_CLIENT_IP, "honeypot:/api/swagger")]


async def test_honeypot_matches_case_and_trailing_slash(client: httpx.AsyncClient) -> None:
    r = await client.post("/WP-Admin/", json={})
    assert r.status_code == status.HTTP_404_NOT_FOUND


async def test_trusted_proxy_header_names_the_banned_origin(
    client_factory: ClientFactory, store: MemoryReputationStore
) -> None:
    client = await client_factory(CLOUDFLARE_PEER, headers={"cf-connecting-ip": "192.0.2.44"})

    await client.get("/.env")

    assert await store.is_banned("192.0.2.44")
    assert not await store.is_banned(CLOUDFLARE_PEER)


async def test_spoofed_proxy_header_is_forbidden(
    client_factory: ClientFactory, store: MemoryReputationStore
) -> None:
    client = await client_factory(headers={"x-forwarded-for": "192.0.2.44"})

    r = await client.get("/")

    assert r.status_code == status.HTTP_403_FORBIDDEN
    assert r.json() == {"error": "Forbidden"}
    assert await store.list_bans() == []


async def test_encoded_traversal_is_rejected_and_banned(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    r = await client.get("/api/%2e%2e/%2e%2e/etc/passwd")

    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json() == {"error": "Invalid request path"}
    assert await store.remaining_ban_seconds(DEFAULT_CLIENT_IP) == 180 * 60


async def test_unknown_method_is_rejected(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    r = await client.request("TRACE", "/api/appeals")

    assert r.status_code == status.HTTP_405_METHOD_NOT_ALLOWED
    assert await store.remaining_ban_seconds(DEFAULT_CLIENT_IP) == 15 * 60


async def test_security_headers_are_set(client: httpx.AsyncClient) -> None:
    r = await client.get("/")

    assert r.status_code == status.HTTP_200_OK
    assert r.headers["x-content-type-options"] == "nosniff"
    assert r.headers["x-frame-options"] == "SAMEORIGIN"
    assert r.headers["content-security-policy"].startswith("default-src 'self'")
    assert "max-age=31536000" in r.headers["strict-transport-security"]
    assert "server" not in r.headers


async def test_flood_over_http_blocks_the_origin(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    # Distinct paths so the identical-request detector stays quiet.
    for i in range(30):
        r = await client.get(f"/api/probe-{i}")
        assert r.status_code == status.HTTP_404_NOT_FOUND

    r = await client.get("/api/probe-final")
    assert r.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    assert r.json() == {"error": "Request flood detected. IP blocked.", "blocked": True}

    r = await client.get("/")
    assert r.status_code == status.HTTP_403_FORBIDDEN
    assert r.json()["retryAfter"] == 30


async def test_flood_counting_ignores_non_api_paths(client: httpx.AsyncClient) -> None:
    for _ in range(40):
        r = await client.get("/health")
        assert r.status_code != status.HTTP_429_TOO_MANY_REQUESTS


async def test_deeply_nested_body_is_rejected(
    client_factory: ClientFactory, store: MemoryReputationStore
) -> None:
    deep = await client_factory("198.51.100.30")
    shallow = await client_factory("198.51.100.31")

    r = await deep.post("/api/appeals", json={**VALID_APPEAL, "extra": nested(10)})
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json() == {"error": "Invalid request structure"}
    assert await store.remaining_ban_seconds("198.51.100.30") == 60 * 60

    r = await shallow.post("/api/appeals", json={**VALID_APPEAL, "extra": nested(9)})
    assert r.status_code == status.HTTP_200_OK


async def test_oversized_body_is_rejected(client: httpx.AsyncClient) -> None:
    r = await client.post(
        "/api/appeals",
        content=b"x" * (10 * 1024 + 1),
        headers={"content-type": "text/plain"},
    )

    assert r.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    assert r.json() == {"error": "Payload too large"}


async def test_suspicious_query_is_rejected_without_ban(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    r = await client.get("/api/security/blocked-ips", params={"q": "1 UNION SELECT password"})

    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json() == {"error": "Invalid request parameters"}
    assert not await store.is_banned(DEFAULT_CLIENT_IP)


async def test_unhandled_error_becomes_json_500(
    app: FastAPI, client_factory: ClientFactory
) -> None:
    @app.get("/api/boom")
    async def boom() -> None:
        raise RuntimeError("boom")

    client = await client_factory(raise_app_exceptions=False)
    r = await client.get("/api/boom")

    assert r.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert r.json() == {"error": "Internal server error"}


async def test_request_deadline_returns_408() -> None:
    config = Settings(_env_file=None, redis_url=None, request_timeout_seconds=0.05)
    application = create_app(
        config,
        MemoryReputationStore(),
        captcha=CaptchaVerifier(),
        notifier=AppealNotifier(None),
    )

    @application.get("/api/slow")
    async def slow() -> dict[str, bool]:
        await asyncio.sleep(0.3)
        return {"done": True}

    transport = httpx.ASGITransport(app=application, client=(DEFAULT_CLIENT_IP, 50_000))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        r = await client.get("/api/slow")

    assert r.status_code == status.HTTP_408_REQUEST_TIMEOUT
    assert r.json() == {"error": "Request timeout"}


async def test_server_header_set_by_a_route_is_removed(
    app: FastAPI, client: httpx.AsyncClient
) -> None:
    @app.get("/api/branded")
    async def branded() -> JSONResponse:
        return JSONResponse({"ok": True}, headers={"server": "uvicorn"})

    r = await client.get("/api/branded")

    assert r.status_code == status.HTTP_200_OK
    assert "server" not in r.headers
    assert r.headers["x-content-type-options"] == "nosniff"


async def test_trap_and_unknown_route_404s_are_indistinguishable(
    client_factory: ClientFactory,
) -> None:
    scanner = await client_factory("198.51.100.70")
    visitor = await client_factory("198.51.100.71")

    trap = await scanner.get("/wp-login.php")
    unknown = await visitor.get("/api/no-such-route")

    assert trap.status_code == unknown.status_code == status.HTTP_404_NOT_FOUND
    assert trap.text == unknown.text == "Not Found"
    assert trap.headers["content-type"] == unknown.headers["content-type"]
    assert trap.headers["content-length"] == unknown.headers["content-length"]


async def test_chunked_body_is_not_buffered_past_limit(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    sent = 0

    async def upload():
        nonlocal sent
        for _ in range(500):
            sent += 1
            yield b"x" * 10 * 1024

    r = await client.post(
        "/api/appeals", content=upload(), headers={"content-type": "application/json"}
    )

    assert r.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    assert r.json() == {"error": "Payload too large"}
    assert sent < 10
    assert await store.remaining_ban_seconds(DEFAULT_CLIENT_IP) == 30 * 60


async def test_chunked_body_within_limit_reaches_the_handler(client: httpx.AsyncClient) -> None:
    payload = json.dumps(VALID_APPEAL).encode()

    async def upload():
        yield payload[:20]
        yield payload[20:]

    r = await client.post(
        "/api/appeals", content=upload(), headers={"content-type": "application/json"}
    )

    assert r.status_code == status.HTTP_200_OK


async def test_banned_origin_touches_no_counters(
    client: httpx.AsyncClient, store: MemoryReputationStore
) -> None:
    await store.ban(DEFAULT_CLIENT_IP, 600, "test")
    before = await store.get_counter(DEFAULT_CLIENT_IP)

    for i in range(5):
        r = await client.post(f"/api/appeals?n={i}", json=VALID_APPEAL)
        assert r.status_code == status.HTTP_403_FORBIDDEN

    assert await store.get_counter(DEFAULT_CLIENT_IP) == before
    assert await store.hits(f"rate:{DEFAULT_CLIENT_IP}") == 0
    assert await store.hits(f"appeal-ip:{DEFAULT_CLIENT_IP}") == 0


@pytest.mark.parametrize(
    "method", ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS", "TRACE", "PROPFIND"]
)
async def test_honeypot_bans_once_per_request_for_every_method(
    method: str, client: httpx.AsyncClient, store: MemoryReputationStore, mocker
) -> None:
    ban = mocker.spy(store, "ban")

    r = await client.request(method, "/.env")

    assert r.status_code == status.HTTP_404_NOT_FOUND
    ban.assert_called_once_with(DEFAULT_CLIENT_IP, 1440 * 60, "honeypot:/.env")


async def test_honeypot_still_bans_an_already_banned_origin(
    client: httpx.AsyncClient, store: MemoryReputationStore, mocker
) -> None:
    await store.ban(DEFAULT_CLIENT_IP, 600, "flood")
    ban = mocker.spy(store, "ban")

    for _ in range(2):
        r = await client.get("/phpmyadmin")
        assert r.status_code == status.HTTP_404_NOT_FOUND
        assert r.text == "Not Found"

    assert ban.call_count == 2
    assert await store.remaining_ban_seconds(DEFAULT_CLIENT_IP) == 1440 * 60
