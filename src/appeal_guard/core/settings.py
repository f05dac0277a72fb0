"""Application settings and configuration.

This module defines all configuration options for the appeal guard service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Published Cloudflare edge ranges; the only peers allowed to assert a client IP.
CLOUDFLARE_IPV4_RANGES: tuple[str, ...] = (
    "173.245.48.0/20",
    "103.21.244.0/22",
    "103.22.200.0/22",
    "103.31.4.0/22",
    "141.101.64.0/18",
    "108.162.192.0/18",
    "190.93.240.0/20",
    "188.114.96.0/20",
    "197.234.240.0/22",
    "198.41.128.0/17",
    "162.158.0.0/15",
    "104.16.0.0/13",
    "104.24.0.0/14",
    "172.64.0.0/13",
    "131.0.72.0/22",
)

CLOUDFLARE_IPV6_RANGES: tuple[str, ...] = (
    "2400:cb00::/32",
    "2606:4700::/32",
    "2803:f800::/32",
    "2405:b500::/32",
    "2405:8100::/32",
    "2a06:98c0::/29",
    "2c0f:f248::/32",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every detector threshold and ban duration is configurable so that the
    defense pipeline can be tuned without code changes. Durations suffixed
    with ``_minutes`` are ban lengths; the pipeline converts them to seconds
    before talking to the reputation store.
    """

    # Application metadata
    app_name: str = Field(default="Appeal Guard", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=80, alias="PORT")

    # Reputation store; no URL means the in-process degraded store
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_key_prefix: str = Field(default="guard", alias="REDIS_KEY_PREFIX")
    redis_socket_timeout_seconds: float = Field(
        default=2.0,
        alias="REDIS_SOCKET_TIMEOUT_SECONDS",
    )

    # Appeal persistence
    database_url: str = Field(default="sqlite:///./appeals.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Admin surface
    admin_key: str | None = Field(default=None, alias="SECURITY_ADMIN_KEY")

    # Client identity resolution
    trusted_proxy_cidrs: list[str] = Field(
        default=[*CLOUDFLARE_IPV4_RANGES, *CLOUDFLARE_IPV6_RANGES],
        alias="TRUSTED_PROXY_CIDRS",
    )
    trust_loopback_proxy: bool = Field(default=True, alias="TRUST_LOOPBACK_PROXY")
    strict_proxy_validation: bool = Field(default=True, alias="STRICT_PROXY_VALIDATION")

    # Detector scope
    api_prefix: str = Field(default="/api", alias="API_PREFIX")

    # Method / path / header screening
    method_ban_minutes: int = Field(default=15, alias="METHOD_BAN_MINUTES")
    traversal_ban_minutes: int = Field(default=180, alias="TRAVERSAL_BAN_MINUTES")
    header_injection_ban_minutes: int = Field(
        default=360,
        alias="HEADER_INJECTION_BAN_MINUTES",
    )

    # Per-request deadline
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")

    # Connection flood detection
    flood_window_seconds: float = Field(default=10.0, alias="FLOOD_WINDOW_SECONDS")
    flood_max_requests: int = Field(default=30, alias="FLOOD_MAX_REQUESTS")
    flood_warn_requests: int = Field(default=20, alias="FLOOD_WARN_REQUESTS")
    flood_ban_step_minutes: int = Field(default=30, alias="FLOOD_BAN_STEP_MINUTES")
    max_ban_minutes: int = Field(default=1440, alias="MAX_BAN_MINUTES")

    # Rapid identical request detection
    repeat_window_ms: int = Field(default=1000, alias="REPEAT_WINDOW_MS")
    repeat_max_violations: int = Field(default=5, alias="REPEAT_MAX_VIOLATIONS")
    repeat_ban_minutes: int = Field(default=60, alias="REPEAT_BAN_MINUTES")
    signature_cache_size: int = Field(default=10_000, alias="SIGNATURE_CACHE_SIZE")
    signature_ttl_seconds: int = Field(default=60, alias="SIGNATURE_TTL_SECONDS")

    # Fingerprint anomaly detection
    fingerprint_max_changes: int = Field(default=3, alias="FINGERPRINT_MAX_CHANGES")
    fingerprint_ban_minutes: int = Field(default=120, alias="FINGERPRINT_BAN_MINUTES")

    # Gradual slow-down, then a hard per-IP cap, over a shared window
    speed_limit_window_seconds: int = Field(default=900, alias="SPEED_LIMIT_WINDOW_SECONDS")
    speed_limit_delay_after: int = Field(default=50, alias="SPEED_LIMIT_DELAY_AFTER")
    speed_limit_delay_ms: int = Field(default=100, alias="SPEED_LIMIT_DELAY_MS")
    speed_limit_max_delay_ms: int = Field(default=5000, alias="SPEED_LIMIT_MAX_DELAY_MS")
    rate_limit_window_seconds: int = Field(default=900, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(default=100, alias="RATE_LIMIT_MAX_REQUESTS")

    # Payload shape validation
    max_body_bytes: int = Field(default=10 * 1024, alias="MAX_BODY_BYTES")
    max_json_depth: int = Field(default=10, alias="MAX_JSON_DEPTH")
    payload_size_ban_minutes: int = Field(default=30, alias="PAYLOAD_SIZE_BAN_MINUTES")
    payload_depth_ban_minutes: int = Field(default=60, alias="PAYLOAD_DEPTH_BAN_MINUTES")

    # Suspicious content; 0 keeps the detector reject-only
    suspicious_content_ban_minutes: int = Field(
        default=0,
        alias="SUSPICIOUS_CONTENT_BAN_MINUTES",
    )

    # Honeypot traps
    honeypot_ban_minutes: int = Field(default=1440, alias="HONEYPOT_BAN_MINUTES")

    # Counter retention and background sweep
    counter_idle_seconds: int = Field(default=3600, alias="COUNTER_IDLE_SECONDS")
    sweep_interval_seconds: float = Field(default=300.0, alias="SWEEP_INTERVAL_SECONDS")

    # Appeal intake limits
    appeals_per_ip_per_hour: int = Field(default=3, alias="APPEALS_PER_IP_PER_HOUR")
    appeals_per_user_per_day: int = Field(default=5, alias="APPEALS_PER_USER_PER_DAY")
    appeal_failures_per_window: int = Field(default=10, alias="APPEAL_FAILURES_PER_WINDOW")
    appeal_failure_window_seconds: int = Field(
        default=300,
        alias="APPEAL_FAILURE_WINDOW_SECONDS",
    )

    # Outbound collaborators
    discord_webhook_url: str | None = Field(default=None, alias="DISCORD_WEBHOOK_URL")
    hcaptcha_secret_key: str | None = Field(default=None, alias="HCAPTCHA_SECRET_KEY")
    turnstile_secret_key: str | None = Field(
        default=None,
        alias="CLOUDFLARE_TURNSTILE_SECRET",
    )
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


settings = Settings()
