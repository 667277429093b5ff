"""Store clé-valeur adossé à Redis (asyncio) avec index de tags.

Disposition des clés (toutes préfixées par `prefix`):
- `{prefix}:v:{key}`   -> valeur (SET EX) ou compteur (INCR, sans TTL)
- `{prefix}:t:{tag}`   -> set des clés portant le tag (EXPIRE >= TTL des entrées)
- `{prefix}:tags`      -> registre des tags connus

L'invalidation lit les membres d'un tag et supprime valeurs et set dans un seul script Lua: une
écriture concurrente ne peut pas s'intercaler entre la lecture et la suppression.
"""

from __future__ import annotations

from collections.abc import Iterable

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from tenantrag.domain.errors import CacheUnavailable
from tenantrag.infra.kv.base import KeyValueStore

log = structlog.get_logger(__name__)

# KEYS[1] = registre des tags, KEYS[2..] = sets de tags; ARGV[1] = préfixe des valeurs,
# ARGV[2..] = noms des tags (même ordre que KEYS[2..]).
INVALIDATE_TAGS_SCRIPT = """
local removed = 0
for i = 2, #KEYS do
    local members = redis.call('SMEMBERS', KEYS[i])
    for _, member in ipairs(members) do
        removed = removed + redis.call('DEL', ARGV[1] .. member)
    end
    redis.call('DEL', KEYS[i])
    redis.call('SREM', KEYS[1], ARGV[i])
end
return removed
"""

DEFAULT_TAG_TTL_S = 24 * 3600


class RedisKV(KeyValueStore):
    """Store Redis asynchrone; toute erreur Redis devient `CacheUnavailable`."""

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = "tenantrag",
        tag_ttl_seconds: int = DEFAULT_TAG_TTL_S,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.tag_ttl_seconds = tag_ttl_seconds
        self._invalidate = client.register_script(INVALIDATE_TAGS_SCRIPT)

    @classmethod
    def from_url(
        cls,
        url: str,
        prefix: str = "tenantrag",
        timeout_ms: int = 200,
        tag_ttl_seconds: int = DEFAULT_TAG_TTL_S,
    ) -> RedisKV:
        """Crée un client Redis à partir de l'URL fournie (connexion paresseuse)."""
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=timeout_ms / 1000,
            socket_timeout=timeout_ms / 1000,
        )
        return cls(client, prefix=prefix, tag_ttl_seconds=tag_ttl_seconds)

    def _vkey(self, key: str) -> str:
        return f"{self.prefix}:v:{key}"

    def _tkey(self, tag: str) -> str:
        return f"{self.prefix}:t:{tag}"

    @property
    def _registry(self) -> str:
        return f"{self.prefix}:tags"

    async def get(self, key: str) -> str | None:
        try:
            return await self.client.get(self._vkey(key))
        except RedisError as exc:
            raise CacheUnavailable(f"redis get failed: {type(exc).__name__}") from exc

    async def set(self, key: str, value: str, ttl_seconds: int, tags: Iterable[str] = ()) -> None:
        vkey = self._vkey(key)
        ttl = max(1, int(ttl_seconds))
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(vkey, value, ex=ttl)
                for tag in tags:
                    tkey = self._tkey(tag)
                    pipe.sadd(tkey, key)
                    # the tag set outlives every member written through it
                    pipe.expire(tkey, max(ttl, self.tag_ttl_seconds))
                    pipe.sadd(self._registry, tag)
                await pipe.execute()
        except RedisError as exc:
            raise CacheUnavailable(f"redis set failed: {type(exc).__name__}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._vkey(key))
        except RedisError as exc:
            raise CacheUnavailable(f"redis delete failed: {type(exc).__name__}") from exc

    async def tags(self) -> set[str]:
        try:
            return set(await self.client.smembers(self._registry))
        except RedisError as exc:
            raise CacheUnavailable(f"redis smembers failed: {type(exc).__name__}") from exc

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        names = list(tags)
        if not names:
            return 0
        try:
            removed = await self._invalidate(
                keys=[self._registry, *(self._tkey(t) for t in names)],
                args=[self._vkey(""), *names],
            )
        except RedisError as exc:
            raise CacheUnavailable(f"redis invalidation failed: {type(exc).__name__}") from exc
        log.debug("redis_kv_invalidated", removed=int(removed))
        return int(removed)

    async def incr(self, key: str) -> int:
        try:
            return int(await self.client.incr(self._vkey(key)))
        except RedisError as exc:
            raise CacheUnavailable(f"redis incr failed: {type(exc).__name__}") from exc

    async def close(self) -> None:
        await self.client.aclose()
