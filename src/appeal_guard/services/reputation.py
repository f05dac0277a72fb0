"""IP reputation store: ban records, request windows and violation counters.

Two implementations share one interface. ``MemoryReputationStore`` keeps
everything in process and is the explicit degraded mode. ``RedisReputationStore``
persists bans with native key expiry so they survive restarts and are shared by
every instance pointing at the same Redis; when Redis becomes unreachable it
logs the failure and continues on an embedded memory store instead of failing
requests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from threading import Lock
from typing import Any, Final

import redis.asyncio as redis
from redis.exceptions import RedisError

from appeal_guard.core.settings import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

DEFAULT_COUNTER_IDLE_SECONDS: Final[int] = 3600
DEFAULT_SIGNATURE_TTL_SECONDS: Final[int] = 60
DEFAULT_SIGNATURE_CACHE_SIZE: Final[int] = 10_000

_REDIS_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class BanRecord:
    """A time-bounded denial for one origin."""

    origin: str
    expires_at: float
    reason: str

    def remaining_seconds(self, now: float) -> int:
        """Whole seconds left on the ban, rounded up; 0 once expired."""
        return max(0, math.ceil(self.expires_at - now))

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class RequestWindowCounter:
    """Per-origin request window and violation bookkeeping.

    ``violations`` is the flood escalation counter and survives window
    rollover. ``retain_until`` is the inactivity horizon after which the whole
    record is discarded.
    """

    origin: str
    count: int = 0
    window_start: float = 0.0
    violations: int = 0
    repeat_violations: int = 0
    fingerprint_changes: int = 0
    last_fingerprint: str | None = None
    retain_until: float = 0.0

    def is_stale(self, now: float) -> bool:
        return self.retain_until > 0 and now > self.retain_until

    def to_mapping(self) -> dict[str, str]:
        """Flatten to the string mapping stored in a Redis hash."""
        data = asdict(self)
        data.pop("origin")
        if data["last_fingerprint"] is None:
            data["last_fingerprint"] = ""
        return {key: str(value) for key, value in data.items()}

    @classmethod
    def from_mapping(cls, origin: str, mapping: dict[str, Any]) -> RequestWindowCounter:
        """Rebuild a counter from a Redis hash; missing fields use defaults."""
        if not mapping:
            return cls(origin=origin)
        fingerprint = mapping.get("last_fingerprint") or None
        return cls(
            origin=origin,
            count=max(0, int(mapping.get("count", 0))),
            window_start=float(mapping.get("window_start", 0.0)),
            violations=int(mapping.get("violations", 0)),
            repeat_violations=int(mapping.get("repeat_violations", 0)),
            fingerprint_changes=int(mapping.get("fingerprint_changes", 0)),
            last_fingerprint=fingerprint,
            retain_until=float(mapping.get("retain_until", 0.0)),
        )


CounterMutation = Callable[[RequestWindowCounter], None]


@dataclass(frozen=True)
class SweepResult:
    """Number of records evicted by one sweep pass."""

    bans: int = 0
    counters: int = 0
    signatures: int = 0


class ReputationStore(ABC):
    """Interface every detector and admin operation talks to.

    Implementations must never raise storage errors to callers.
    """

    def __init__(
        self,
        *,
        clock: Clock = time.time,
        counter_idle_seconds: int = DEFAULT_COUNTER_IDLE_SECONDS,
        signature_ttl_seconds: int = DEFAULT_SIGNATURE_TTL_SECONDS,
    ) -> None:
        self.clock = clock
        self.counter_idle_seconds = counter_idle_seconds
        self.signature_ttl_seconds = signature_ttl_seconds

    @property
    @abstractmethod
    def degraded(self) -> bool:
        """True when bans are neither durable nor shared."""

    @abstractmethod
    async def ban(self, origin: str, duration_seconds: float, reason: str) -> None:
        """Create or overwrite the ban for ``origin``."""

    @abstractmethod
    async def is_banned(self, origin: str) -> bool: ...

    @abstractmethod
    async def remaining_ban_seconds(self, origin: str) -> int: ...

    @abstractmethod
    async def unban(self, origin: str) -> bool:
        """Remove a ban; return whether one existed."""

    @abstractmethod
    async def list_bans(self) -> list[BanRecord]: ...

    @abstractmethod
    async def get_counter(self, origin: str) -> RequestWindowCounter: ...

    @abstractmethod
    async def touch_counter(
        self, origin: str, mutation: CounterMutation
    ) -> RequestWindowCounter:
        """Read-modify-write the counter record and return the stored value."""

    @abstractmethod
    async def record_signature(self, origin: str, signature: str) -> float | None:
        """Record a request signature; return the previous occurrence time."""

    @abstractmethod
    async def hit(self, key: str, window_seconds: int) -> int:
        """Increment a fixed-window counter and return the new count."""

    @abstractmethod
    async def hits(self, key: str) -> int:
        """Return the live count of a fixed-window counter without incrementing it."""

    @abstractmethod
    async def sweep(self) -> SweepResult: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def _retention_horizon(self, counter: RequestWindowCounter, now: float) -> float:
        return max(counter.retain_until, now + self.counter_idle_seconds)


class MemoryReputationStore(ReputationStore):
    """Process-local store; not shared between workers and lost on restart."""

    def __init__(
        self,
        *,
        clock: Clock = time.time,
        counter_idle_seconds: int = DEFAULT_COUNTER_IDLE_SECONDS,
        signature_ttl_seconds: int = DEFAULT_SIGNATURE_TTL_SECONDS,
        signature_cache_size: int = DEFAULT_SIGNATURE_CACHE_SIZE,
    ) -> None:
        super().__init__(
            clock=clock,
            counter_idle_seconds=counter_idle_seconds,
            signature_ttl_seconds=signature_ttl_seconds,
        )
        self.signature_cache_size = signature_cache_size
        self._bans: dict[str, BanRecord] = {}
        self._counters: dict[str, RequestWindowCounter] = {}
        self._signatures: dict[tuple[str, str], float] = {}
        self._hits: dict[str, list[float]] = {}
        self._lock = Lock()

    @property
    def degraded(self) -> bool:
        return True

    def _live_ban(self, origin: str, now: float) -> BanRecord | None:
        record = self._bans.get(origin)
        if record is None:
            return None
        if not record.is_live(now):
            del self._bans[origin]
            logger.info("Ban expired for %s", origin)
            return None
        return record

    async def ban(self, origin: str, duration_seconds: float, reason: str) -> None:
        if duration_seconds <= 0:
            return
        now = self.clock()
        with self._lock:
            self._bans[origin] = BanRecord(origin, now + duration_seconds, reason)

    async def is_banned(self, origin: str) -> bool:
        with self._lock:
            return self._live_ban(origin, self.clock()) is not None

    async def remaining_ban_seconds(self, origin: str) -> int:
        now = self.clock()
        with self._lock:
            record = self._live_ban(origin, now)
        return record.remaining_seconds(now) if record else 0

    async def unban(self, origin: str) -> bool:
        with self._lock:
            record = self._live_ban(origin, self.clock())
            self._bans.pop(origin, None)
        return record is not None

    async def list_bans(self) -> list[BanRecord]:
        now = self.clock()
        with self._lock:
            records = [r for r in self._bans.values() if r.is_live(now)]
        return sorted(records, key=lambda r: r.expires_at)

    def _current_counter(self, origin: str, now: float) -> RequestWindowCounter:
        counter = self._counters.get(origin)
        if counter is not None and counter.is_stale(now):
            del self._counters[origin]
            counter = None
        return counter if counter is not None else RequestWindowCounter(origin=origin)

    async def get_counter(self, origin: str) -> RequestWindowCounter:
        with self._lock:
            return replace(self._current_counter(origin, self.clock()))

    async def touch_counter(
        self, origin: str, mutation: CounterMutation
    ) -> RequestWindowCounter:
        now = self.clock()
        with self._lock:
            counter = replace(self._current_counter(origin, now))
            mutation(counter)
            counter.count = max(0, counter.count)
            counter.retain_until = self._retention_horizon(counter, now)
            self._counters[origin] = counter
            return replace(counter)

    async def record_signature(self, origin: str, signature: str) -> float | None:
        now = self.clock()
        key = (origin, signature)
        with self._lock:
            previous = self._signatures.get(key)
            self._signatures[key] = now
            if len(self._signatures) > self.signature_cache_size:
                self._prune_signatures(now)
        return previous

    def _prune_signatures(self, now: float) -> int:
        cutoff = now - self.signature_ttl_seconds
        stale = [key for key, seen in self._signatures.items() if seen < cutoff]
        for key in stale:
            del self._signatures[key]
        return len(stale)

    async def hit(self, key: str, window_seconds: int) -> int:
        now = self.clock()
        with self._lock:
            entry = self._hits.get(key)
            if entry is None or entry[1] <= now:
                entry = [0, now + window_seconds]
                self._hits[key] = entry
            entry[0] += 1
            return int(entry[0])

    async def hits(self, key: str) -> int:
        now = self.clock()
        with self._lock:
            entry = self._hits.get(key)
            if entry is None or entry[1] <= now:
                return 0
            return int(entry[0])

    async def sweep(self) -> SweepResult:
        now = self.clock()
        with self._lock:
            expired = [origin for origin, r in self._bans.items() if not r.is_live(now)]
            for origin in expired:
                del self._bans[origin]
            stale = [origin for origin, c in self._counters.items() if c.is_stale(now)]
            for origin in stale:
                del self._counters[origin]
            signatures = self._prune_signatures(now)
            for key in [k for k, (_, end) in self._hits.items() if end <= now]:
                del self._hits[key]
        for origin in expired:
            logger.info("Ban expired for %s", origin)
        return SweepResult(bans=len(expired), counters=len(stale), signatures=signatures)


class RedisReputationStore(ReputationStore):
    """Redis-backed store with native TTLs and an in-process safety net.

    Any Redis failure switches the instance to its embedded
    ``MemoryReputationStore`` for the rest of the process lifetime; the
    failing operation is replayed there so a ban decision is never lost.
    """

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str = "guard",
        clock: Clock = time.time,
        counter_idle_seconds: int = DEFAULT_COUNTER_IDLE_SECONDS,
        signature_ttl_seconds: int = DEFAULT_SIGNATURE_TTL_SECONDS,
        fallback: MemoryReputationStore | None = None,
    ) -> None:
        super().__init__(
            clock=clock,
            counter_idle_seconds=counter_idle_seconds,
            signature_ttl_seconds=signature_ttl_seconds,
        )
        self._redis = client
        self._prefix = key_prefix
        self._fallback = fallback or MemoryReputationStore(
            clock=clock,
            counter_idle_seconds=counter_idle_seconds,
            signature_ttl_seconds=signature_ttl_seconds,
        )

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisReputationStore:
        """Build a store from a Redis URL; connection happens lazily."""
        socket_timeout = kwargs.pop("socket_timeout", None)
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, **kwargs)

    @property
    def degraded(self) -> bool:
        return self._redis is None

    @property
    def fallback(self) -> MemoryReputationStore:
        return self._fallback

    def _degrade(self, operation: str, exc: BaseException) -> None:
        logger.error(
            "Reputation store unreachable during %s (%s); continuing on the "
            "in-process store, bans are no longer shared",
            operation,
            exc,
        )
        self._redis = None

    def _ban_key(self, origin: str) -> str:
        return f"{self._prefix}:ban:{origin}"

    def _counter_key(self, origin: str) -> str:
        return f"{self._prefix}:counter:{origin}"

    def _signature_key(self, origin: str, signature: str) -> str:
        return f"{self._prefix}:sig:{origin}:{signature}"

    def _hit_key(self, key: str) -> str:
        return f"{self._prefix}:hit:{key}"

    @staticmethod
    def _decode_ban(origin: str, raw: str | None) -> BanRecord | None:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            return BanRecord(origin, float(payload["expires_at"]), str(payload.get("reason", "")))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed ban payload for %s", origin)
            return None

    async def ban(self, origin: str, duration_seconds: float, reason: str) -> None:
        if duration_seconds <= 0:
            return
        if self._redis is not None:
            expires_at = self.clock() + duration_seconds
            payload = json.dumps({"expires_at": expires_at, "reason": reason})
            try:
                await self._redis.set(
                    self._ban_key(origin),
                    payload,
                    px=max(1, int(math.ceil(duration_seconds * 1000))),
                )
                return
            except _REDIS_ERRORS as exc:
                self._degrade("ban", exc)
        await self._fallback.ban(origin, duration_seconds, reason)

    async def is_banned(self, origin: str) -> bool:
        if self._redis is not None:
            try:
                return bool(await self._redis.exists(self._ban_key(origin)))
            except _REDIS_ERRORS as exc:
                self._degrade("is_banned", exc)
        return await self._fallback.is_banned(origin)

    async def remaining_ban_seconds(self, origin: str) -> int:
        if self._redis is not None:
            try:
                remaining_ms = await self._redis.pttl(self._ban_key(origin))
            except _REDIS_ERRORS as exc:
                self._degrade("remaining_ban_seconds", exc)
            else:
                # -2: no key, -1: key without expiry (never written by ban()).
                if remaining_ms is None or remaining_ms < 0:
                    return 0
                return math.ceil(remaining_ms / 1000)
        return await self._fallback.remaining_ban_seconds(origin)

    async def unban(self, origin: str) -> bool:
        if self._redis is not None:
            try:
                return bool(await self._redis.delete(self._ban_key(origin)))
            except _REDIS_ERRORS as exc:
                self._degrade("unban", exc)
        return await self._fallback.unban(origin)

    async def list_bans(self) -> list[BanRecord]:
        if self._redis is not None:
            prefix = self._ban_key("")
            try:
                keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
                values = await self._redis.mget(keys) if keys else []
            except _REDIS_ERRORS as exc:
                self._degrade("list_bans", exc)
            else:
                now = self.clock()
                records = []
                for key, raw in zip(keys, values):
                    record = self._decode_ban(key[len(prefix):], raw)
                    if record is not None and record.is_live(now):
                        records.append(record)
                return sorted(records, key=lambda r: r.expires_at)
        return await self._fallback.list_bans()

    async def get_counter(self, origin: str) -> RequestWindowCounter:
        if self._redis is not None:
            try:
                mapping = await self._redis.hgetall(self._counter_key(origin))
            except _REDIS_ERRORS as exc:
                self._degrade("get_counter", exc)
            else:
                counter = RequestWindowCounter.from_mapping(origin, mapping)
                if counter.is_stale(self.clock()):
                    return RequestWindowCounter(origin=origin)
                return counter
        return await self._fallback.get_counter(origin)

    async def touch_counter(
        self, origin: str, mutation: CounterMutation
    ) -> RequestWindowCounter:
        if self._redis is not None:
            key = self._counter_key(origin)
            try:
                mapping = await self._redis.hgetall(key)
                now = self.clock()
                counter = RequestWindowCounter.from_mapping(origin, mapping)
                if counter.is_stale(now):
                    counter = RequestWindowCounter(origin=origin)
                mutation(counter)
                counter.count = max(0, counter.count)
                counter.retain_until = self._retention_horizon(counter, now)
                ttl = max(1, math.ceil(counter.retain_until - now))
                pipe = self._redis.pipeline()
                pipe.hset(key, mapping=counter.to_mapping())
                pipe.expire(key, ttl)
                await pipe.execute()
                return counter
            except _REDIS_ERRORS as exc:
                self._degrade("touch_counter", exc)
        return await self._fallback.touch_counter(origin, mutation)

    async def record_signature(self, origin: str, signature: str) -> float | None:
        if self._redis is not None:
            try:
                previous = await self._redis.set(
                    self._signature_key(origin, signature),
                    repr(self.clock()),
                    ex=self.signature_ttl_seconds,
                    get=True,
                )
            except _REDIS_ERRORS as exc:
                self._degrade("record_signature", exc)
            else:
                return float(previous) if previous else None
        return await self._fallback.record_signature(origin, signature)

    async def hit(self, key: str, window_seconds: int) -> int:
        if self._redis is not None:
            redis_key = self._hit_key(key)
            try:
                pipe = self._redis.pipeline()
                pipe.incr(redis_key)
                # NX keeps the first hit as the window start.
                pipe.expire(redis_key, window_seconds, nx=True)
                count, _ = await pipe.execute()
                return int(count)
            except _REDIS_ERRORS as exc:
                self._degrade("hit", exc)
        return await self._fallback.hit(key, window_seconds)

    async def hits(self, key: str) -> int:
        if self._redis is not None:
            try:
                value = await self._redis.get(self._hit_key(key))
            except _REDIS_ERRORS as exc:
                self._degrade("hits", exc)
            else:
                return int(value) if value else 0
        return await self._fallback.hits(key)

    async def sweep(self) -> SweepResult:
        # Redis expires bans, counters and signatures natively; only the
        # fallback map can hold anything to evict.
        return await self._fallback.sweep()

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except _REDIS_ERRORS as exc:
            self._degrade("ping", exc)
            return False

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except _REDIS_ERRORS as exc:  # pragma: no cover - shutdown path
                logger.warning("Error closing reputation store connection: %s", exc)


def get_reputation_store(config: Settings, *, clock: Clock = time.time) -> ReputationStore:
    """Return the store selected by configuration.

    Without ``REDIS_URL`` the service runs on the in-process store; that is a
    supported but degraded mode and is reported loudly.
    """
    common: dict[str, Any] = {
        "clock": clock,
        "counter_idle_seconds": config.counter_idle_seconds,
        "signature_ttl_seconds": config.signature_ttl_seconds,
    }
    if not config.redis_url:
        logger.warning(
            "No REDIS_URL configured: bans are kept in process memory only. "
            "They will not survive a restart and are not shared between "
            "instances (NOT PRODUCTION SAFE)."
        )
        return MemoryReputationStore(
            signature_cache_size=config.signature_cache_size,
            **common,
        )

    fallback = MemoryReputationStore(signature_cache_size=config.signature_cache_size, **common)
    try:
        store = RedisReputationStore.from_url(
            config.redis_url,
            key_prefix=config.redis_key_prefix,
            socket_timeout=config.redis_socket_timeout_seconds,
            fallback=fallback,
            **common,
        )
    except ValueError as exc:
        logger.error("Invalid REDIS_URL (%s); using the in-process store", exc)
        return fallback
    logger.info("Reputation store backed by Redis")
    return store
