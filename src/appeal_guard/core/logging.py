"""Logging configuration shared by the server entry points."""

from __future__ import annotations

import logging

_FORMAT = "[{asctime}] [{levelname}] {name}: {message}"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str | int = logging.INFO,
    handler: logging.Handler | None = None,
    *,
    root: bool = True,
) -> None:
    """Install a single timestamped stream handler.

    Args:
        level: Level name (``"INFO"``) or numeric level.
        handler: Optional handler; defaults to a stderr stream handler.
        root: Configure the root logger instead of the package logger.
    """
    handler = handler or logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT, _DATE_FORMAT, style="{"))

    logger = logging.getLogger() if root else logging.getLogger(__name__.split(".")[0])
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    # Re-running setup (reload, tests) must not stack handlers.
    for existing in list(logger.handlers):
        if getattr(existing, "_appeal_guard", False):
            logger.removeHandler(existing)
    handler._appeal_guard = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
