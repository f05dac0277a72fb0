"""Main entry point for the appeal guard application."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from appeal_guard.api.middleware import DefenseMiddleware
from appeal_guard.api.v1 import appeals_router, security_router, system_router
from appeal_guard.core.logging import setup_logging
from appeal_guard.core.settings import Settings, settings
from appeal_guard.db.session import create_tables
from appeal_guard.services.captcha import CaptchaVerifier
from appeal_guard.services.honeypot import NOT_FOUND_BODY
from appeal_guard.services.notifications import AppealNotifier
from appeal_guard.services.pipeline import DefensePipeline
from appeal_guard.services.reputation import ReputationStore, get_reputation_store
from appeal_guard.services.sweeper import ReputationSweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    store: ReputationStore = app.state.store
    create_tables()
    if store.degraded:
        logger.warning("Running with the in-process reputation store")
    elif not await store.ping():
        logger.error("Reputation store did not answer ping; falling back to process memory")
    else:
        logger.info("Reputation store connected")

    sweeper: ReputationSweeper = app.state.sweeper
    await sweeper.start()
    try:
        yield
    finally:
        await sweeper.stop()
        await app.state.notifier.close()
        await app.state.captcha.close()
        await store.close()


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """Render HTTP errors as ``{"error": ...}`` bodies.

    Unknown routes answer exactly like a honeypot hit so traps cannot be told apart.
    """
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return PlainTextResponse(NOT_FOUND_BODY, status_code=status.HTTP_404_NOT_FOUND)
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request body"},
    )


def create_app(
    config: Settings | None = None,
    store: ReputationStore | None = None,
    *,
    captcha: CaptchaVerifier | None = None,
    notifier: AppealNotifier | None = None,
) -> FastAPI:
    """Build the application around an explicit settings object and store."""
    config = config or settings
    store = store or get_reputation_store(config)
    pipeline = DefensePipeline.from_settings(config)

    # Schema and docs routes are honeypots here, so FastAPI's own are disabled.
    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.captcha = captcha or CaptchaVerifier.from_settings(config)
    app.state.notifier = notifier or AppealNotifier.from_settings(config)
    app.state.sweeper = ReputationSweeper(store, config.sweep_interval_seconds)
    app.state.started_at = time.monotonic()

    if not app.state.captcha.enabled:
        logger.warning("No CAPTCHA secret configured; appeals are accepted without bot verification")

    app.add_middleware(DefenseMiddleware, pipeline=pipeline, store=store)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.include_router(system_router)
    app.include_router(security_router, prefix=config.api_prefix)
    app.include_router(appeals_router, prefix=config.api_prefix)
    return app


app = create_app()


def run() -> None:
    """Console entry point: configure logging and serve with uvicorn."""
    import uvicorn

    setup_logging(settings.log_level)
    uvicorn.run(
        "appeal_guard.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        log_config=None,
        server_header=False,
    )


if __name__ == "__main__":
    run()
