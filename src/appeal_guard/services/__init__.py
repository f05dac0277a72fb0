"""Defense pipeline and collaborator services for the appeal guard."""

from .captcha import CaptchaError, CaptchaVerifier
from .identity import ClientIdentityResolver, SpoofedProxyHeaderError
from .notifications import AppealNotifier
from .pipeline import DefensePipeline
from .reputation import (
    MemoryReputationStore,
    RedisReputationStore,
    ReputationStore,
    get_reputation_store,
)
from .sweeper import ReputationSweeper

__all__ = [
    "AppealNotifier",
    "CaptchaError",
    "CaptchaVerifier",
    "ClientIdentityResolver",
    "DefensePipeline",
    "MemoryReputationStore",
    "RedisReputationStore",
    "ReputationStore",
    "ReputationSweeper",
    "SpoofedProxyHeaderError",
    "get_reputation_store",
]
