"""Appeal submission schemas."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

DISCORD_ID_PATTERN = re.compile(r"^\d{17,19}$")
MIN_REASON_LENGTH = 10
MAX_REASON_LENGTH = 2000


class AppealSubmission(BaseModel):
    """Body of ``POST /api/appeals``.

    Fields are optional at the schema level so that missing or malformed
    values produce the form's own error messages rather than a generic
    validation response; see :meth:`problem`.
    """

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    user_id: str | None = Field(default=None, alias="userId")
    denial_date: str | None = Field(default=None, alias="denialDate")
    appeal_reason: str | None = Field(default=None, alias="appealReason")
    captcha_token: str | None = Field(default=None, alias="captchaToken")
    hcaptcha_response: str | None = Field(default=None, alias="h-captcha-response")
    turnstile_token: str | None = Field(default=None, alias="turnstileToken")
    cf_turnstile: str | None = Field(default=None, alias="cfTurnstile")

    def problem(self) -> str | None:
        """Return the first validation error message, or None when valid."""
        if not (self.user_id and self.denial_date and self.appeal_reason):
            return "All fields are required"
        if not DISCORD_ID_PATTERN.match(self.user_id):
            return "Invalid Discord user ID format"
        if len(self.appeal_reason) < MIN_REASON_LENGTH:
            return f"Appeal reason must be at least {MIN_REASON_LENGTH} characters"
        if len(self.appeal_reason) > MAX_REASON_LENGTH:
            return f"Appeal reason must be less than {MAX_REASON_LENGTH} characters"
        return None

    @property
    def hcaptcha(self) -> str | None:
        return self.captcha_token or self.hcaptcha_response

    @property
    def turnstile(self) -> str | None:
        return self.turnstile_token or self.cf_turnstile


class AppealAccepted(BaseModel):
    """Response returned once an appeal is stored."""

    success: bool = True
    message: str = "Appeal submitted successfully"
