"""Appeal submission endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, HTTPException, status
from sqlalchemy.orm import Session

from appeal_guard.api.v1.dependencies import (
    CaptchaDep,
    ClientIpDep,
    NotifierDep,
    SessionDep,
    SettingsDep,
    StoreDep,
)
from appeal_guard.models import Appeal
from appeal_guard.schemas.appeal import AppealAccepted, AppealSubmission
from appeal_guard.services.captcha import CaptchaError, CaptchaVerifier
from appeal_guard.services.notifications import AppealNotice, AppealNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appeals", tags=["appeals"])

HOUR_SECONDS = 3600
DAY_SECONDS = 24 * HOUR_SECONDS

CAPTCHA_FAILED_MESSAGE = (
    "Bot verification failed. Please complete the CAPTCHA challenge and try again."
)


@router.post("", response_model=AppealAccepted)
async def submit_appeal(
    payload: AppealSubmission,
    db: SessionDep,
    store: StoreDep,
    config: SettingsDep,
    captcha: CaptchaDep,
    notifier: NotifierDep,
    client_ip: ClientIpDep,
    cf_turnstile_response: str | None = Header(default=None),
) -> AppealAccepted:
    """Accept an appeal against a community access denial.

    Every attempt counts towards the per-IP hourly and per-user daily limits,
    including attempts that later fail validation. Attempts that fail after
    those limits are counted separately and lock the IP out for a short window.

    Raises:
        HTTPException: 429 when a limit is exceeded, 400 on invalid fields,
            403 when bot verification fails
    """
    ip_count = await store.hit(f"appeal-ip:{client_ip}", HOUR_SECONDS)
    if ip_count > config.appeals_per_ip_per_hour:
        logger.warning("Appeal rate limit exceeded for %s", client_ip)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=(
                "Too many appeal submissions. You can submit up to "
                f"{config.appeals_per_ip_per_hour} appeals per hour."
            ),
        )

    if payload.user_id:
        user_count = await store.hit(f"appeal-user:{payload.user_id}", DAY_SECONDS)
        if user_count > config.appeals_per_user_per_day:
            logger.warning("Per-user appeal limit exceeded for %s from %s", payload.user_id, client_ip)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=(
                    "This Discord user has submitted too many appeals today. "
                    f"Maximum {config.appeals_per_user_per_day} per day."
                ),
            )

    failure_key = f"appeal-failures:{client_ip}"
    try:
        if await store.hits(failure_key) >= config.appeal_failures_per_window:
            logger.warning("Failed appeal limit exceeded for %s", client_ip)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many failed requests. You have been temporarily blocked.",
            )
        return await _accept_appeal(
            payload,
            db,
            captcha,
            notifier,
            client_ip,
            turnstile_header=cf_turnstile_response,
        )
    except Exception:
        await store.hit(failure_key, config.appeal_failure_window_seconds)
        raise


async def _accept_appeal(
    payload: AppealSubmission,
    db: Session,
    captcha: CaptchaVerifier,
    notifier: AppealNotifier,
    client_ip: str,
    *,
    turnstile_header: str | None,
) -> AppealAccepted:
    problem = payload.problem()
    if problem:
        logger.warning("Rejected appeal from %s: %s", client_ip, problem)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)

    try:
        await captcha.verify(
            client_ip,
            hcaptcha_token=payload.hcaptcha,
            turnstile_token=payload.turnstile or turnstile_header,
        )
    except CaptchaError as exc:
        logger.error("CAPTCHA verification failed for %s: %s", client_ip, exc.reason)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": CAPTCHA_FAILED_MESSAGE,
                "code": "CAPTCHA_FAILED",
                "details": exc.reason,
            },
        ) from exc

    appeal = Appeal(
        user_id=payload.user_id,
        denial_date=payload.denial_date,
        appeal_reason=payload.appeal_reason,
        client_ip=client_ip,
    )
    db.add(appeal)
    db.commit()
    db.refresh(appeal)

    notifier.dispatch(
        AppealNotice(
            user_id=appeal.user_id,
            denial_date=appeal.denial_date,
            appeal_reason=appeal.appeal_reason,
            submitted_at=appeal.submitted_at,
        )
    )
    logger.info("New appeal %s from user %s, IP %s", appeal.id, appeal.user_id, client_ip)
    return AppealAccepted()
