"""Decoy routes that no legitimate visitor of this site ever requests."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from appeal_guard.services.detectors import ban_origin
from appeal_guard.services.reputation import ReputationStore

logger = logging.getLogger(__name__)

# Trap hits and genuinely unknown routes share this body.
NOT_FOUND_BODY = "Not Found"

HONEYPOT_PATHS: tuple[str, ...] = (
    # CMS admin panels
    "/wp-admin",
    "/wp-login.php",
    "/wp-config.php",
    "/xmlrpc.php",
    "/admin",
    "/administrator",
    "/admin.php",
    "/phpmyadmin",
    # Config and environment files
    "/.env",
    "/.env.production",
    "/.git/config",
    "/config.php",
    "/configuration.php",
    # API schema and introspection
    "/api/swagger",
    "/swagger",
    "/swagger.json",
    "/swagger.yaml",
    "/swagger/v1/swagger.json",
    "/swagger/v2/swagger.json",
    "/api-docs",
    "/api/docs",
    "/docs",
    "/graphql",
    "/api/graphql",
    "/v1/api-docs",
    "/v2/api-docs",
    "/openapi.json",
    "/api.json",
    # Backups and VCS metadata
    "/backup",
    "/backup.sql",
    "/backup.zip",
    "/database.sql",
    "/.git",
    "/.svn",
    "/.htaccess",
    "/web.config",
    # Server status pages
    "/server-status",
    "/server-info",
)


def normalize_path(path: str) -> str:
    """Lower-case and drop a single trailing slash (the root stays ``/``)."""
    lowered = path.lower()
    if len(lowered) > 1 and lowered.endswith("/"):
        lowered = lowered[:-1]
    return lowered


class HoneypotRouteSet:
    """Exact-match catalogue of trap paths; any method matches."""

    def __init__(self, paths: Iterable[str] = HONEYPOT_PATHS, *, ban_minutes: int = 1440) -> None:
        self.paths = frozenset(normalize_path(p) for p in paths)
        self.ban_minutes = ban_minutes

    def matches(self, path: str) -> bool:
        return normalize_path(path) in self.paths

    async def trigger(self, origin: str, path: str, store: ReputationStore) -> None:
        """Record a trap hit: log it and ban the origin."""
        logger.error("Honeypot access to %s from %s", path, origin)
        await ban_origin(store, origin, self.ban_minutes, f"honeypot:{path}")
