"""HTTP middleware that runs the defense pipeline around every request."""

from __future__ import annotations

import asyncio
import json
import logging
import time

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.types import ASGIApp

from appeal_guard.services.detectors import BODY_METHODS, RequestContext, Verdict
from appeal_guard.services.honeypot import NOT_FOUND_BODY
from appeal_guard.services.identity import SpoofedProxyHeaderError
from appeal_guard.services.pipeline import DefensePipeline
from appeal_guard.services.reputation import ReputationStore

logger = logging.getLogger(__name__)

SECURITY_HEADERS: dict[str, str] = {
    "Content-Security-Policy": (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline' 'unsafe-eval' https://js.hcaptcha.com "
        "https://challenges.cloudflare.com; "
        "frame-src 'self' https://hcaptcha.com https://*.hcaptcha.com "
        "https://challenges.cloudflare.com; "
        "style-src 'self' 'unsafe-inline' https://hcaptcha.com; "
        "connect-src 'self' https://hcaptcha.com https://*.hcaptcha.com; "
        "img-src 'self' data: https:"
    ),
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-XSS-Protection": "0",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
    "Cross-Origin-Opener-Policy": "same-origin",
}


def verdict_response(verdict: Verdict) -> Response:
    return JSONResponse(status_code=verdict.status_code or 400, content=verdict.body)


def _declared_length(request: Request) -> int:
    try:
        return max(0, int(request.headers.get("content-length", "0")))
    except ValueError:
        return 0


class DefenseMiddleware(BaseHTTPMiddleware):
    """Identity, honeypot, ban gate, detectors and deadline, in that order."""

    def __init__(self, app: ASGIApp, *, pipeline: DefensePipeline, store: ReputationStore) -> None:
        super().__init__(app)
        self.pipeline = pipeline
        self.store = store

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        origin = request.client.host if request.client else None
        try:
            response = await self._defend(request, call_next)
        except Exception:
            logger.exception(
                "Unhandled error for %s %s from %s",
                request.method,
                request.url.path,
                getattr(request.state, "client_ip", origin),
            )
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Internal server error"},
            )

        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if "server" in response.headers:
            del response.headers["server"]

        path = request.url.path
        if path.startswith(self.pipeline.api_prefix):
            logger.info(
                "%s %s %d in %.0fms [%s]",
                request.method,
                path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
                getattr(request.state, "client_ip", origin),
            )
        return response

    async def _defend(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        peer = request.client.host if request.client else None
        try:
            identity = self.pipeline.resolver.resolve(peer, request.headers)
        except SpoofedProxyHeaderError:
            return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "Forbidden"})
        request.state.client_ip = identity.origin

        path = request.url.path
        if self.pipeline.honeypot.matches(path):
            await self.pipeline.honeypot.trigger(identity.origin, path, self.store)
            return PlainTextResponse(NOT_FOUND_BODY, status_code=status.HTTP_404_NOT_FOUND)

        raw_path = request.scope.get("raw_path") or b""
        ctx = RequestContext(
            origin=identity.origin,
            method=request.method,
            path=path,
            raw_path=raw_path.decode("latin-1").split("?", 1)[0],
            headers=request.headers,
            query_params=request.query_params.multi_items(),
            api_prefix=self.pipeline.api_prefix,
        )

        verdict = await self.pipeline.screen(ctx, self.store)
        if verdict.rejected:
            return verdict_response(verdict)

        try:
            return await asyncio.wait_for(
                self._inspect_and_forward(request, ctx, call_next),
                timeout=self.pipeline.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Request timeout for %s %s from %s", ctx.method, path, ctx.origin)
            return JSONResponse(
                status_code=status.HTTP_408_REQUEST_TIMEOUT,
                content={"error": "Request timeout"},
            )

    async def _inspect_and_forward(
        self,
        request: Request,
        ctx: RequestContext,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if ctx.method.upper() in BODY_METHODS:
            await self._load_body(request, ctx)
        verdict = await self.pipeline.inspect(ctx, self.store)
        if verdict.rejected:
            return verdict_response(verdict)
        return await call_next(request)

    async def _read_bounded(self, request: Request) -> bytes:
        """Read at most ``max_body_bytes + 1`` bytes of the request stream.

        A complete body is cached on the request so the route handler can
        read it again; an oversized one is abandoned mid-stream.
        """
        limit = self.pipeline.max_body_bytes
        chunks: list[bytes] = []
        received = 0
        async for chunk in request.stream():
            chunks.append(chunk)
            received += len(chunk)
            if received > limit:
                return b"".join(chunks)
        raw = b"".join(chunks)
        request._body = raw
        return raw

    async def _load_body(self, request: Request, ctx: RequestContext) -> None:
        declared = _declared_length(request)
        if declared > self.pipeline.max_body_bytes:
            # Oversized by declaration; the payload detector rejects without reading.
            ctx.content_length = declared
            return
        raw = await self._read_bounded(request)
        ctx.content_length = max(declared, len(raw))
        if not raw or ctx.content_length > self.pipeline.max_body_bytes:
            return
        content_type = request.headers.get("content-type", "").lower()
        if not content_type or "json" in content_type:
            try:
                ctx.body = json.loads(raw)
                return
            except RecursionError:
                ctx.body_too_deep = True
            except ValueError:
                logger.debug("Undecodable JSON body from %s", ctx.origin)
        ctx.body_text = raw.decode("utf-8", errors="replace")
