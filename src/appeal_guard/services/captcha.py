"""Bot verification against hCaptcha and Cloudflare Turnstile."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from appeal_guard.core.settings import Settings

logger = logging.getLogger(__name__)

HCAPTCHA_VERIFY_URL = "https://hcaptcha.com/siteverify"
TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class CaptchaError(Exception):
    """Raised when a submission fails bot verification."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class CaptchaVerifier:
    """Verify a client token with whichever provider is configured.

    Turnstile is preferred when the client sent a Turnstile token and a
    Turnstile secret is configured; otherwise hCaptcha is tried. With no
    provider configured verification is skipped with a warning.
    """

    def __init__(
        self,
        *,
        hcaptcha_secret: str | None = None,
        turnstile_secret: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.hcaptcha_secret = hcaptcha_secret
        self.turnstile_secret = turnstile_secret
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._client_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, config: Settings) -> CaptchaVerifier:
        return cls(
            hcaptcha_secret=config.hcaptcha_secret_key,
            turnstile_secret=config.turnstile_secret_key,
            timeout_seconds=config.http_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.hcaptcha_secret or self.turnstile_secret)

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def verify(
        self,
        remote_ip: str,
        *,
        hcaptcha_token: str | None = None,
        turnstile_token: str | None = None,
    ) -> None:
        """Verify the submitted token.

        Raises:
            CaptchaError: Verification was required and did not succeed.
        """
        if not self.enabled:
            logger.warning("No CAPTCHA provider configured; skipping bot verification")
            return

        if turnstile_token and self.turnstile_secret:
            await self._verify_turnstile(turnstile_token, remote_ip)
        elif hcaptcha_token and self.hcaptcha_secret:
            await self._verify_hcaptcha(hcaptcha_token, remote_ip)
        else:
            raise CaptchaError("No CAPTCHA token provided")

    async def _verify_hcaptcha(self, token: str, remote_ip: str) -> None:
        data = await self._post(
            "hCaptcha",
            HCAPTCHA_VERIFY_URL,
            data={"response": token, "secret": self.hcaptcha_secret, "remoteip": remote_ip},
        )
        self._check("hCaptcha", data, remote_ip)

    async def _verify_turnstile(self, token: str, remote_ip: str) -> None:
        data = await self._post(
            "Turnstile",
            TURNSTILE_VERIFY_URL,
            json={"secret": self.turnstile_secret, "response": token, "remoteip": remote_ip},
        )
        self._check("Turnstile", data, remote_ip)

    async def _post(self, provider: str, url: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._ensure_client()
        try:
            response = await client.post(url, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("%s verification error: %s", provider, exc)
            raise CaptchaError("Verification failed") from exc
        if not isinstance(payload, dict):
            raise CaptchaError("Verification failed")
        return payload

    @staticmethod
    def _check(provider: str, data: dict[str, Any], remote_ip: str) -> None:
        if data.get("success") is True:
            return
        codes = ", ".join(str(code) for code in data.get("error-codes") or [])
        logger.warning("%s failed for %s. Errors: %s", provider, remote_ip, codes or "none")
        raise CaptchaError(codes or "Verification failed")
