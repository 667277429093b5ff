"""In-memory key-value store with TTL and tag index (dev/tests).

Mutations never await, so each operation is atomic with respect to other asyncio tasks. Expired
keys are swept on `set` through an expiry heap, so keys that are never read again do not pile up.
"""

from __future__ import annotations

import heapq
import time
from collections.abc import Callable, Iterable

from tenantrag.infra.kv.base import KeyValueStore


class InMemoryKV(KeyValueStore):
    """Store mémoire: valeurs, expirations et index tag -> clés (et clé -> tags)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._vals: dict[str, str] = {}
        self._exp: dict[str, float] = {}
        self._heap: list[tuple[float, str]] = []
        self._tags: dict[str, set[str]] = {}
        self._key_tags: dict[str, set[str]] = {}

    def _purge_if_expired(self, key: str) -> None:
        exp = self._exp.get(key)
        if exp is not None and exp <= self._clock():
            self._drop(key)

    def _sweep(self) -> None:
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            exp, key = heapq.heappop(self._heap)
            # a rewritten key has a newer expiry in `_exp`
            if self._exp.get(key) == exp:
                self._drop(key)

    def _drop(self, key: str) -> bool:
        self._exp.pop(key, None)
        existed = self._vals.pop(key, None) is not None
        for tag in self._key_tags.pop(key, ()):
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]
        return existed

    async def get(self, key: str) -> str | None:
        self._purge_if_expired(key)
        return self._vals.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int, tags: Iterable[str] = ()) -> None:
        self._sweep()
        exp = self._clock() + max(1, int(ttl_seconds))
        self._vals[key] = value
        self._exp[key] = exp
        heapq.heappush(self._heap, (exp, key))
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)
            self._key_tags.setdefault(key, set()).add(tag)

    async def delete(self, key: str) -> None:
        self._drop(key)

    async def tags(self) -> set[str]:
        return {tag for tag, keys in self._tags.items() if keys}

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in list(tags):
            for key in list(self._tags.pop(tag, set())):
                if self._drop(key):
                    removed += 1
        return removed

    async def incr(self, key: str) -> int:
        self._purge_if_expired(key)
        value = int(self._vals.get(key, "0")) + 1
        self._vals[key] = str(value)
        return value

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for k in self._vals if self._exp.get(k, now + 1) > now)
