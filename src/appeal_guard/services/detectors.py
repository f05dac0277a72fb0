"""Request detectors and the driver that runs them in order.

Every detector is an awaitable ``(context, store) -> Verdict``. Detectors hold
configuration only; all evidence they accumulate lives in the reputation store.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from appeal_guard.services.reputation import RequestWindowCounter, ReputationStore
from appeal_guard.utils.hash import canonical_json, digest_fields

logger = logging.getLogger(__name__)

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

TRAVERSAL_PATTERNS = (
    "../",
    "..\\",
    "%2e%2e",
    "%252e",
    "%c0%ae",
    "%c1%9c",
    "..%2f",
    "..%5c",
)

SQL_INJECTION_PATTERN = re.compile(
    r"(\bUNION\b|\bSELECT\b|\bDROP\b|\bINSERT\b|\bDELETE\b|\bUPDATE\b|--|\bOR\b\s+\d+\s*=\s*\d+)",
    re.IGNORECASE,
)
XSS_PATTERN = re.compile(r"<script|javascript:|onerror=|onload=", re.IGNORECASE)

TOOL_USER_AGENTS = ("curl", "wget", "python-requests", "go-http-client")

FINGERPRINT_HEADERS = ("user-agent", "accept-language", "accept-encoding", "accept")

# Depth measurement stops once this is exceeded.
DEPTH_SCAN_LIMIT = 20


@dataclass(frozen=True)
class Verdict:
    """Outcome of one detector: pass, or reject with a status and body."""

    status_code: int | None = None
    body: Any = None

    @property
    def rejected(self) -> bool:
        return self.status_code is not None


PASS = Verdict()


def reject(status_code: int, error: str, **extra: Any) -> Verdict:
    return Verdict(status_code=status_code, body={"error": error, **extra})


@dataclass
class RequestContext:
    """Everything a detector may look at for one request."""

    origin: str
    method: str
    path: str
    raw_path: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    query_params: Sequence[tuple[str, str]] = ()
    body: Any = None
    body_text: str = ""
    body_too_deep: bool = False
    content_length: int = 0
    api_prefix: str = "/api"

    @property
    def is_api(self) -> bool:
        return self.path.startswith(self.api_prefix)


def json_depth(value: Any, limit: int = DEPTH_SCAN_LIMIT) -> int:
    """Return the nesting depth of a decoded JSON value.

    The root container sits at depth 0 and each value inside a container sits
    one level below it, so ``{"a": 1}`` has depth 1 and an empty container
    contributes its own depth. Scanning stops as soon as ``limit`` is passed.
    """
    deepest = 0
    stack: list[tuple[Any, int]] = [(value, 0)]
    while stack:
        node, depth = stack.pop()
        if depth > deepest:
            deepest = depth
            if deepest > limit:
                return deepest
        if isinstance(node, dict):
            stack.extend((child, depth + 1) for child in node.values())
        elif isinstance(node, list):
            stack.extend((child, depth + 1) for child in node)
    return deepest


class Detector(Protocol):
    name: str

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict: ...


async def ban_origin(
    store: ReputationStore, origin: str, minutes: float, reason: str
) -> None:
    """Ban ``origin`` for ``minutes`` and log it; non-positive durations are ignored."""
    if minutes <= 0:
        return
    await store.ban(origin, minutes * 60, reason)
    logger.error("Blocked %s for %s minutes: %s", origin, minutes, reason)


class BanEnforcementGate:
    """Reject every request from a currently banned origin."""

    name = "ban_enforcement"
    message = (
        "Access forbidden. Your IP has been temporarily blocked due to suspicious activity."
    )

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        remaining = await store.remaining_ban_seconds(ctx.origin)
        if remaining <= 0:
            return PASS
        retry_after = -(-remaining // 60)
        logger.warning(
            "Blocked origin %s attempted access to %s (%s min remaining)",
            ctx.origin,
            ctx.path,
            retry_after,
        )
        return reject(403, self.message, retryAfter=retry_after)


class MethodValidator:
    name = "method"

    def __init__(self, ban_minutes: int = 15, allowed: Iterable[str] = ALLOWED_METHODS) -> None:
        self.ban_minutes = ban_minutes
        self.allowed = frozenset(m.upper() for m in allowed)

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if ctx.method.upper() in self.allowed:
            return PASS
        logger.warning("Invalid HTTP method %s from %s", ctx.method, ctx.origin)
        await ban_origin(store, ctx.origin, self.ban_minutes, f"Invalid HTTP method: {ctx.method}")
        return reject(405, "Method not allowed")


class PathTraversalDetector:
    name = "path_traversal"

    def __init__(self, ban_minutes: int = 180) -> None:
        self.ban_minutes = ban_minutes

    @staticmethod
    def is_traversal(*paths: str) -> bool:
        lowered = [p.lower() for p in paths if p]
        return any(pattern in p for p in lowered for pattern in TRAVERSAL_PATTERNS)

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if not self.is_traversal(ctx.raw_path, ctx.path):
            return PASS
        logger.error("Path traversal attempt from %s: %s", ctx.origin, ctx.raw_path or ctx.path)
        await ban_origin(store, ctx.origin, self.ban_minutes, "Path traversal attack attempt")
        return reject(400, "Invalid request path")


class HeaderInjectionDetector:
    """Reject CR/LF in header values; user-agent heuristics only log."""

    name = "header_injection"

    def __init__(self, ban_minutes: int = 360) -> None:
        self.ban_minutes = ban_minutes

    def _log_user_agent(self, ctx: RequestContext) -> None:
        user_agent = ctx.headers.get("user-agent", "")
        if not user_agent:
            logger.warning("Missing User-Agent from %s", ctx.origin)
        elif any(tool in user_agent.lower() for tool in TOOL_USER_AGENTS):
            logger.warning("Suspicious User-Agent %r from %s", user_agent, ctx.origin)

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if ctx.is_api:
            self._log_user_agent(ctx)
        injected = [
            name for name, value in ctx.headers.items() if "\r" in value or "\n" in value
        ]
        if not injected:
            return PASS
        logger.error("Header injection attempt from %s in %s", ctx.origin, ", ".join(injected))
        await ban_origin(store, ctx.origin, self.ban_minutes, "HTTP header injection attempt")
        return reject(400, "Invalid request headers")


class ConnectionFloodDetector:
    """Count API requests per origin in a fixed window and escalate bans."""

    name = "connection_flood"

    def __init__(
        self,
        *,
        window_seconds: float = 10.0,
        max_requests: int = 30,
        warn_requests: int = 20,
        ban_step_minutes: int = 30,
        max_ban_minutes: int = 1440,
        counter_idle_seconds: int = 3600,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.warn_requests = warn_requests
        self.ban_step_minutes = ban_step_minutes
        self.max_ban_minutes = max_ban_minutes
        self.counter_idle_seconds = counter_idle_seconds

    def ban_minutes_for(self, violations: int) -> int:
        return min(violations * self.ban_step_minutes, self.max_ban_minutes)

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if not ctx.is_api:
            return PASS
        now = store.clock()

        def count_request(counter: RequestWindowCounter) -> None:
            if now - counter.window_start > self.window_seconds:
                counter.count = 0
                counter.window_start = now
            counter.count += 1
            if counter.count > self.max_requests:
                counter.violations += 1
                ban_seconds = self.ban_minutes_for(counter.violations) * 60
                # Keep escalation evidence past the end of the ban.
                counter.retain_until = max(
                    counter.retain_until, now + ban_seconds + self.counter_idle_seconds
                )

        counter = await store.touch_counter(ctx.origin, count_request)
        if counter.count > self.max_requests:
            minutes = self.ban_minutes_for(counter.violations)
            await ban_origin(
                store,
                ctx.origin,
                minutes,
                f"Connection flood: {counter.count} requests in "
                f"{self.window_seconds:g} seconds",
            )
            return reject(429, "Request flood detected. IP blocked.", blocked=True)
        if counter.count > self.warn_requests:
            logger.warning(
                "Potential flood from %s (%d requests in %gs)",
                ctx.origin,
                counter.count,
                self.window_seconds,
            )
        return PASS


class RapidRepeatDetector:
    """Penalise the same request repeated by one origin within a short interval."""

    name = "rapid_repeat"

    def __init__(
        self,
        *,
        window_ms: int = 1000,
        max_violations: int = 5,
        ban_minutes: int = 60,
    ) -> None:
        self.window_ms = window_ms
        self.max_violations = max_violations
        self.ban_minutes = ban_minutes

    @staticmethod
    def signature(ctx: RequestContext) -> str:
        normalized = canonical_json(ctx.body) if ctx.body is not None else ctx.body_text
        return digest_fields((ctx.method.upper(), ctx.path, normalized))

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if not ctx.is_api:
            return PASS
        now = store.clock()
        previous = await store.record_signature(ctx.origin, self.signature(ctx))
        if previous is None or (now - previous) * 1000 >= self.window_ms:
            return PASS

        logger.warning("Rapid repeat request from %s to %s", ctx.origin, ctx.path)

        def add_violation(counter: RequestWindowCounter) -> None:
            counter.repeat_violations += 1

        counter = await store.touch_counter(ctx.origin, add_violation)
        if counter.repeat_violations > self.max_violations:
            await ban_origin(
                store,
                ctx.origin,
                self.ban_minutes,
                "Rapid repeated identical requests (bot behavior)",
            )
            return reject(429, "Too many identical requests")
        return PASS


class FingerprintAnomalyDetector:
    """Track header fingerprint rotation per origin."""

    name = "fingerprint_anomaly"

    def __init__(self, *, max_changes: int = 3, ban_minutes: int = 120) -> None:
        self.max_changes = max_changes
        self.ban_minutes = ban_minutes

    @staticmethod
    def fingerprint(headers: Mapping[str, str]) -> str:
        return digest_fields(headers.get(name, "") for name in FINGERPRINT_HEADERS)

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if not ctx.is_api:
            return PASS
        fingerprint = self.fingerprint(ctx.headers)
        changed = False

        def observe(counter: RequestWindowCounter) -> None:
            nonlocal changed
            if counter.last_fingerprint and counter.last_fingerprint != fingerprint:
                counter.fingerprint_changes += 1
                changed = True
            counter.last_fingerprint = fingerprint

        counter = await store.touch_counter(ctx.origin, observe)
        if not changed:
            return PASS
        logger.warning("Fingerprint change detected for %s", ctx.origin)
        if counter.fingerprint_changes > self.max_changes:
            await ban_origin(
                store,
                ctx.origin,
                self.ban_minutes,
                "Multiple fingerprint changes detected (bot behavior)",
            )
            return reject(403, "Suspicious activity detected")
        return PASS


class SpeedLimiter:
    """Delay API requests once an origin passes a soft request budget."""

    name = "speed_limit"

    def __init__(
        self,
        *,
        window_seconds: int = 900,
        delay_after: int = 50,
        delay_ms: int = 100,
        max_delay_ms: int = 5000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.window_seconds = window_seconds
        self.delay_after = delay_after
        self.delay_ms = delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep

    def delay_seconds(self, hits: int) -> float:
        if hits <= self.delay_after:
            return 0.0
        return min(hits * self.delay_ms, self.max_delay_ms) / 1000

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if not ctx.is_api:
            return PASS
        hits = await store.hit(f"speed:{ctx.origin}", self.window_seconds)
        delay = self.delay_seconds(hits)
        if delay:
            logger.info("Slowing %s by %.1fs (%d requests)", ctx.origin, delay, hits)
            await self._sleep(delay)
        return PASS


class RateLimiter:
    """Hard cap on API requests per origin in a fixed window; rejects without banning."""

    name = "rate_limit"

    def __init__(self, *, window_seconds: int = 900, max_requests: int = 100) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if not ctx.is_api:
            return PASS
        hits = await store.hit(f"rate:{ctx.origin}", self.window_seconds)
        if hits <= self.max_requests:
            return PASS
        logger.warning("Rate limit exceeded for %s (%d requests)", ctx.origin, hits)
        return reject(429, "Too many requests from this IP, please try again later.")


class PayloadShapeDetector:
    """Reject oversized or deeply nested request bodies."""

    name = "payload_shape"

    def __init__(
        self,
        *,
        max_bytes: int = 10 * 1024,
        max_depth: int = 10,
        size_ban_minutes: int = 30,
        depth_ban_minutes: int = 60,
    ) -> None:
        self.max_bytes = max_bytes
        self.max_depth = max_depth
        self.size_ban_minutes = size_ban_minutes
        self.depth_ban_minutes = depth_ban_minutes

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        if ctx.method.upper() not in BODY_METHODS:
            return PASS
        if ctx.content_length > self.max_bytes:
            logger.warning(
                "Large payload from %s (%d bytes)", ctx.origin, ctx.content_length
            )
            await ban_origin(store, ctx.origin, self.size_ban_minutes, "Payload bomb attempt")
            return reject(413, "Payload too large")
        if ctx.body_too_deep or isinstance(ctx.body, (dict, list)):
            depth = json_depth(ctx.body) if not ctx.body_too_deep else DEPTH_SCAN_LIMIT + 1
            if depth > self.max_depth:
                logger.error("Deeply nested payload from %s (depth %d)", ctx.origin, depth)
                await ban_origin(
                    store,
                    ctx.origin,
                    self.depth_ban_minutes,
                    "Deeply nested payload (potential attack)",
                )
                return reject(400, "Invalid request structure")
        return PASS


class SuspiciousContentDetector:
    """Pattern match query parameters and body for SQL injection and XSS."""

    name = "suspicious_content"

    def __init__(self, ban_minutes: int = 0) -> None:
        self.ban_minutes = ban_minutes

    @staticmethod
    def scanned_text(ctx: RequestContext) -> str:
        params: dict[str, Any] = dict(ctx.query_params)
        if isinstance(ctx.body, dict):
            params.update(ctx.body)
        elif ctx.body is not None:
            params["_body"] = ctx.body
        elif ctx.body_text:
            params["_body"] = ctx.body_text
        return canonical_json(params)

    async def __call__(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        text = self.scanned_text(ctx)
        if SQL_INJECTION_PATTERN.search(text):
            kind = "SQL injection"
        elif XSS_PATTERN.search(text):
            kind = "XSS"
        else:
            return PASS
        logger.error("%s attempt from %s on %s", kind, ctx.origin, ctx.path)
        await ban_origin(store, ctx.origin, self.ban_minutes, f"{kind} attempt")
        return reject(400, "Invalid request parameters")


class DetectorChain:
    """Run detectors in order; the first rejection wins."""

    def __init__(self, detectors: Iterable[Detector]) -> None:
        self.detectors: tuple[Detector, ...] = tuple(detectors)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(detector.name for detector in self.detectors)

    async def run(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        for detector in self.detectors:
            verdict = await detector(ctx, store)
            if verdict.rejected:
                logger.debug("%s rejected %s %s from %s", detector.name, ctx.method, ctx.path, ctx.origin)
                return verdict
        return PASS
