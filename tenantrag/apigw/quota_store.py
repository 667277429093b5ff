"""
Stores de compteurs à fenêtre fixe pour le contrôle d'admission.

Une fenêtre démarre à la première requête d'un scope et expire à `window_start + window_length`;
la remise à zéro est calculée paresseusement à l'accès (aucun timer). Deux implémentations:

- `InMemoryQuotaStore`: seaux `QuotaBucket` protégés par un verrou par scope;
- `RedisQuotaStore`: script Lua atomique (INCR + PEXPIRE), en fail-open si Redis est indisponible.
"""

from __future__ import annotations

import hashlib
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from tenantrag.app.metrics import ADMISSION_STORE_ERRORS
from tenantrag.core.constants import QUOTA_KEY_PREFIX

log = structlog.get_logger(__name__)

# Script Lua pour fenêtre fixe atomique: n'incrémente que sous la limite.
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
    return {0, current, redis.call('PTTL', key)}
end

current = redis.call('INCR', key)
if current == 1 then
    redis.call('PEXPIRE', key, window_ms)
end
return {1, current, redis.call('PTTL', key)}
"""

# Annule un incrément (admission refusée sur un autre scope).
RELEASE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""


@dataclass
class QuotaBucket:
    """Compteur d'un scope sur la fenêtre courante."""

    scope: str
    window_start: float
    count: int
    limit: int
    window_length: float

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.window_length

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_length


@dataclass
class QuotaDecision:
    """Résultat d'une vérification de quota pour un scope."""

    allowed: bool
    scope: str
    count: int
    limit: int
    remaining: int
    reset_in: float
    retry_after: int | None = None


def _decision(allowed: bool, scope: str, count: int, limit: int, reset_in: float) -> QuotaDecision:
    reset_in = max(0.0, reset_in)
    return QuotaDecision(
        allowed=allowed,
        scope=scope,
        count=count,
        limit=limit,
        remaining=max(0, limit - count),
        reset_in=reset_in,
        retry_after=None if allowed else max(1, math.ceil(reset_in)),
    )


class QuotaStore(ABC):
    """Interface des compteurs à fenêtre fixe."""

    @abstractmethod
    async def check_and_record(self, scope: str, limit: int, window_seconds: float) -> QuotaDecision:
        """Enregistre une requête si `count < limit`; sinon refuse sans incrémenter."""
        raise NotImplementedError

    @abstractmethod
    async def release(self, scope: str) -> None:
        """Annule le dernier incrément du scope dans la fenêtre courante."""
        raise NotImplementedError


class InMemoryQuotaStore(QuotaStore):
    """
    Compteurs en mémoire, un verrou par scope.

    Les seaux expirés et leurs verrous sont balayés au plus une fois par `sweep_interval`: un scope
    vu une seule fois ne reste pas en mémoire au-delà de sa fenêtre.
    """

    def __init__(
        self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._guard = threading.Lock()
        self._buckets: dict[str, QuotaBucket] = {}
        self._locks: dict[str, threading.Lock] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def _acquire(self, scope: str) -> threading.Lock:
        # a sweep may retire the lock between lookup and acquisition
        while True:
            with self._guard:
                lock = self._locks.setdefault(scope, threading.Lock())
            lock.acquire()
            if self._locks.get(scope) is lock:
                return lock
            lock.release()

    def _sweep(self, now: float) -> None:
        with self._guard:
            if now < self._next_sweep:
                return
            self._next_sweep = now + self._sweep_interval
            for scope, bucket in list(self._buckets.items()):
                if not bucket.expired(now):
                    continue
                lock = self._locks.get(scope)
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                del self._buckets[scope]
                self._locks.pop(scope, None)
                if lock is not None:
                    lock.release()

    def bucket(self, scope: str) -> QuotaBucket | None:
        return self._buckets.get(scope)

    async def check_and_record(self, scope: str, limit: int, window_seconds: float) -> QuotaDecision:
        self._sweep(self._clock())
        lock = self._acquire(scope)
        try:
            now = self._clock()
            bucket = self._buckets.get(scope)
            if bucket is None or bucket.expired(now):
                bucket = QuotaBucket(
                    scope=scope, window_start=now, count=0, limit=limit,
                    window_length=window_seconds,
                )
                self._buckets[scope] = bucket
            bucket.limit = limit
            if bucket.count >= limit:
                return _decision(False, scope, bucket.count, limit, bucket.reset_at - now)
            bucket.count += 1
            return _decision(True, scope, bucket.count, limit, bucket.reset_at - now)
        finally:
            lock.release()

    async def release(self, scope: str) -> None:
        if scope not in self._buckets:
            return
        lock = self._acquire(scope)
        try:
            bucket = self._buckets.get(scope)
            if bucket is not None and not bucket.expired(self._clock()) and bucket.count > 0:
                bucket.count -= 1
        finally:
            lock.release()



class RedisQuotaStore(QuotaStore):
    """Compteurs Redis atomiques (multi-pods), fail-open sur erreur du store."""

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client
        self._check = client.register_script(FIXED_WINDOW_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, timeout_ms: int = 200) -> RedisQuotaStore:
        return cls(
            aioredis.from_url(
                url,
                socket_connect_timeout=timeout_ms / 1000,
                socket_timeout=timeout_ms / 1000,
            )
        )

    @staticmethod
    def _key(scope: str) -> str:
        """Hash scope for consistent key generation (no raw ids in Redis keys)."""
        return f"{QUOTA_KEY_PREFIX}:{hashlib.sha256(scope.encode()).hexdigest()[:24]}"

    async def check_and_record(self, scope: str, limit: int, window_seconds: float) -> QuotaDecision:
        window_ms = max(1, int(window_seconds * 1000))
        try:
            allowed, count, pttl = await self._check(
                keys=[self._key(scope)], args=[limit, window_ms]
            )
        except (ConnectionError, TimeoutError) as exc:
            return self._fail_open(scope, limit, window_seconds, "connection_error", exc)
        except RedisError as exc:
            return self._fail_open(scope, limit, window_seconds, "unexpected_error", exc)
        reset_in = (int(pttl) if int(pttl) > 0 else window_ms) / 1000
        return _decision(bool(int(allowed)), scope, int(count), limit, reset_in)

    async def release(self, scope: str) -> None:
        try:
            await self._release(keys=[self._key(scope)])
        except RedisError as exc:
            ADMISSION_STORE_ERRORS.labels(error_type="release_error").inc()
            log.warning("quota_release_failed", scope_kind=scope.split(":", 1)[0], error=str(exc))

    def _fail_open(
        self, scope: str, limit: int, window_seconds: float, error_type: str, exc: Exception
    ) -> QuotaDecision:
        # Fail-open: allow request if Redis is unavailable
        ADMISSION_STORE_ERRORS.labels(error_type=error_type).inc()
        log.warning(
            "quota_store_unavailable_failing_open",
            scope_kind=scope.split(":", 1)[0],
            error=str(exc),
        )
        return _decision(True, scope, 1, limit, window_seconds)

    async def close(self) -> None:
        await self.client.aclose()
