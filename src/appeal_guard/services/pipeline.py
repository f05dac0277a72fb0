"""The assembled request-defense pipeline.

Stage order is fixed: the ban gate, the cheap screening detectors, then the
request deadline, under which the stateful inspection detectors and the route
handler run. The honeypot set is consulted before any of them.
"""

from __future__ import annotations

from dataclasses import dataclass

from appeal_guard.core.settings import Settings
from appeal_guard.services.detectors import (
    BanEnforcementGate,
    ConnectionFloodDetector,
    DetectorChain,
    FingerprintAnomalyDetector,
    HeaderInjectionDetector,
    MethodValidator,
    PathTraversalDetector,
    PayloadShapeDetector,
    RapidRepeatDetector,
    RateLimiter,
    RequestContext,
    SpeedLimiter,
    SuspiciousContentDetector,
    Verdict,
)
from appeal_guard.services.honeypot import HoneypotRouteSet
from appeal_guard.services.identity import ClientIdentityResolver
from appeal_guard.services.reputation import ReputationStore

REQUEST_TIMEOUT_STAGE = "request_timeout"


@dataclass
class DefensePipeline:
    """Explicit, inspectable composition of every defense stage."""

    resolver: ClientIdentityResolver
    honeypot: HoneypotRouteSet
    screening: DetectorChain
    inspection: DetectorChain
    timeout_seconds: float = 30.0
    api_prefix: str = "/api"
    max_body_bytes: int = 10 * 1024

    @classmethod
    def from_settings(cls, config: Settings) -> DefensePipeline:
        screening = DetectorChain(
            (
                BanEnforcementGate(),
                MethodValidator(ban_minutes=config.method_ban_minutes),
                PathTraversalDetector(ban_minutes=config.traversal_ban_minutes),
                HeaderInjectionDetector(ban_minutes=config.header_injection_ban_minutes),
            )
        )
        inspection = DetectorChain(
            (
                ConnectionFloodDetector(
                    window_seconds=config.flood_window_seconds,
                    max_requests=config.flood_max_requests,
                    warn_requests=config.flood_warn_requests,
                    ban_step_minutes=config.flood_ban_step_minutes,
                    max_ban_minutes=config.max_ban_minutes,
                    counter_idle_seconds=config.counter_idle_seconds,
                ),
                RapidRepeatDetector(
                    window_ms=config.repeat_window_ms,
                    max_violations=config.repeat_max_violations,
                    ban_minutes=config.repeat_ban_minutes,
                ),
                FingerprintAnomalyDetector(
                    max_changes=config.fingerprint_max_changes,
                    ban_minutes=config.fingerprint_ban_minutes,
                ),
                SpeedLimiter(
                    window_seconds=config.speed_limit_window_seconds,
                    delay_after=config.speed_limit_delay_after,
                    delay_ms=config.speed_limit_delay_ms,
                    max_delay_ms=config.speed_limit_max_delay_ms,
                ),
                RateLimiter(
                    window_seconds=config.rate_limit_window_seconds,
                    max_requests=config.rate_limit_max_requests,
                ),
                PayloadShapeDetector(
                    max_bytes=config.max_body_bytes,
                    max_depth=config.max_json_depth,
                    size_ban_minutes=config.payload_size_ban_minutes,
                    depth_ban_minutes=config.payload_depth_ban_minutes,
                ),
                SuspiciousContentDetector(ban_minutes=config.suspicious_content_ban_minutes),
            )
        )
        return cls(
            resolver=ClientIdentityResolver.from_settings(config),
            honeypot=HoneypotRouteSet(ban_minutes=config.honeypot_ban_minutes),
            screening=screening,
            inspection=inspection,
            timeout_seconds=config.request_timeout_seconds,
            api_prefix=config.api_prefix,
            max_body_bytes=config.max_body_bytes,
        )

    @property
    def stage_names(self) -> tuple[str, ...]:
        return (*self.screening.names, REQUEST_TIMEOUT_STAGE, *self.inspection.names)

    async def screen(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        """Ban gate plus the method, path and header checks."""
        return await self.screening.run(ctx, store)

    async def inspect(self, ctx: RequestContext, store: ReputationStore) -> Verdict:
        """Stateful detectors that run inside the request deadline."""
        return await self.inspection.run(ctx, store)
