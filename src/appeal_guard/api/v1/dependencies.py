"""Shared API dependencies resolved from application state."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from appeal_guard.core.settings import Settings
from appeal_guard.db.session import get_db
from appeal_guard.services.captcha import CaptchaVerifier
from appeal_guard.services.notifications import AppealNotifier
from appeal_guard.services.reputation import ReputationStore


def get_settings(request: Request) -> Settings:
    """Return the settings the running application was built with."""
    return request.app.state.settings


def get_store(request: Request) -> ReputationStore:
    """Return the reputation store shared with the defense middleware."""
    return request.app.state.store


def get_captcha_verifier(request: Request) -> CaptchaVerifier:
    return request.app.state.captcha


def get_notifier(request: Request) -> AppealNotifier:
    return request.app.state.notifier


def get_client_ip(request: Request) -> str:
    """Return the origin resolved by the defense middleware.

    Falls back to the socket peer when the middleware did not run.
    """
    client_ip = getattr(request.state, "client_ip", None)
    if client_ip:
        return client_ip
    return request.client.host if request.client else "unknown"


# Type aliases for dependency injection
SessionDep = Annotated[Session, Depends(get_db)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
StoreDep = Annotated[ReputationStore, Depends(get_store)]
CaptchaDep = Annotated[CaptchaVerifier, Depends(get_captcha_verifier)]
NotifierDep = Annotated[AppealNotifier, Depends(get_notifier)]
ClientIpDep = Annotated[str, Depends(get_client_ip)]
