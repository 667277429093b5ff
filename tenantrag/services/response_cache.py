"""Cache des réponses complètes du pipeline, isolé par tenant et par permissions.

La clé compose le tenant, les niveaux d'accès triés, la requête normalisée, le contexte de page et
l'empreinte de l'historique: deux requérants aux permissions ou conversations différentes ne
partagent jamais une entrée. Les entrées portent les tags `tenant:<id>` et `ns:<namespace>` et sont
invalidées immédiatement lorsqu'un tenant signale un changement de documents.

Le cache est une optimisation: toute indisponibilité du store est journalisée puis contournée.
"""

from __future__ import annotations

import hashlib
import json
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel, Field, ValidationError

from tenantrag.app.metrics import CACHE_ERRORS, CACHE_INVALIDATIONS, CACHE_LOOKUPS
from tenantrag.core.constants import NAMESPACE_TAG_PREFIX, TENANT_TAG_PREFIX
from tenantrag.domain.conversation import ConversationTurn, history_fingerprint
from tenantrag.domain.errors import CacheUnavailable
from tenantrag.domain.retrieval_types import Citation
from tenantrag.domain.tenancy import TenantContext
from tenantrag.domain.text import normalize_query
from tenantrag.infra.kv.base import KeyValueStore

log = structlog.get_logger(__name__)


def tenant_tag(tenant_id: str) -> str:
    return f"{TENANT_TAG_PREFIX}{tenant_id}"


def namespace_tag(namespace: str) -> str:
    return f"{NAMESPACE_TAG_PREFIX}{namespace}"


class CachedAnswer(BaseModel):
    """Valeur sérialisée d'une entrée du cache de réponses."""

    tenant_id: str
    answer: str
    citations: list[Citation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ResponseCache:
    """Cache de réponses avec TTL dépendant des sources et invalidation par tag."""

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str = "answers",
        short_ttl: int = 300,
        long_ttl: int = 6 * 3600,
        static_source_types: Iterable[str] = ("policy", "handbook", "faq"),
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.short_ttl = short_ttl
        self.long_ttl = long_ttl
        self.static_source_types = frozenset(s.lower() for s in static_source_types)

    def build_key(
        self,
        ctx: TenantContext,
        query: str,
        history: list[ConversationTurn] | None = None,
        generation: int = 0,
    ) -> str:
        """Clé déterministe: tenant, génération, permissions, requête, page et historique."""
        page = ctx.page_context
        material = json.dumps(
            {
                "tenant": ctx.tenant_id,
                "generation": generation,
                "access": ctx.sorted_access_levels(),
                "query": normalize_query(query),
                "page": [page.type, page.id] if page else None,
                "history": history_fingerprint(history or []),
            },
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        )
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
        tenant_hash = hashlib.sha256(ctx.tenant_id.encode("utf-8")).hexdigest()[:16]
        return f"{self.namespace}:{tenant_hash}:{digest}"

    def ttl_for(self, citations: list[Citation]) -> int:
        """TTL long si le type de source dominant est statique, court sinon (égalité incluse)."""
        if not citations:
            return self.short_ttl
        counts = Counter(c.source_type.lower() for c in citations).most_common()
        top_count = counts[0][1]
        dominant = {source for source, n in counts if n == top_count}
        if dominant <= self.static_source_types:
            return self.long_ttl
        return self.short_ttl

    def tags_for(self, tenant_id: str) -> list[str]:
        return [tenant_tag(tenant_id), namespace_tag(self.namespace)]

    def _generation_key(self, tenant_id: str) -> str:
        tenant_hash = hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:16]
        return f"{self.namespace}:gen:{tenant_hash}"

    async def generation(self, tenant_id: str) -> int | None:
        """
        Génération courante du tenant, incrémentée à chaque invalidation.

        Retourne None si le store est indisponible.
        """
        try:
            raw = await self.store.get(self._generation_key(tenant_id))
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="response", op="generation").inc()
            log.warning("response_cache_bypassed", op="generation", error=str(exc))
            return None
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            log.warning("response_cache_corrupt_generation", tenant=tenant_id)
            return 0

    async def get(self, key: str, tenant_id: str | None = None) -> CachedAnswer | None:
        """
        Retourne l'entrée de `key`, ou None (miss, store indisponible, entrée invalide).

        Si `tenant_id` est fourni, une entrée appartenant à un autre tenant ou citant un autre
        tenant est supprimée et traitée comme un miss.
        """
        try:
            raw = await self.store.get(key)
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="response", op="get").inc()
            log.warning("response_cache_bypassed", op="get", error=str(exc))
            return None
        if raw is None:
            CACHE_LOOKUPS.labels(cache="response", result="miss").inc()
            return None
        try:
            value = CachedAnswer.model_validate_json(raw)
        except ValidationError:
            log.warning("response_cache_corrupt_entry")
            await self._discard(key)
            return None
        if tenant_id is not None and (
            value.tenant_id != tenant_id or any(c.tenant_id != tenant_id for c in value.citations)
        ):
            log.error("response_cache_tenant_mismatch", tenant=tenant_id)
            await self._discard(key)
            CACHE_LOOKUPS.labels(cache="response", result="miss").inc()
            return None
        CACHE_LOOKUPS.labels(cache="response", result="hit").inc()
        return value

    async def set(
        self,
        key: str,
        value: CachedAnswer,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        generation: int | None = None,
    ) -> bool:
        """
        Écrit l'entrée; retourne False si le store est indisponible.

        Avec `generation`, l'écriture est abandonnée si le tenant a été invalidé depuis la lecture
        de cette génération: la réponse a été calculée sur des documents périmés.
        """
        if generation is not None:
            current = await self.generation(value.tenant_id)
            if current != generation:
                log.info(
                    "response_cache_stale_write_skipped",
                    tenant=value.tenant_id,
                    expected=generation,
                    current=current,
                )
                return False
        ttl = ttl if ttl is not None else self.ttl_for(value.citations)
        all_tags = set(tags or ()) | set(self.tags_for(value.tenant_id))
        try:
            await self.store.set(key, value.model_dump_json(), ttl, sorted(all_tags))
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="response", op="set").inc()
            log.warning("response_cache_bypassed", op="set", error=str(exc))
            return False
        return True

    async def invalidate(self, tag_predicate: Callable[[str], bool]) -> int:
        """Supprime les entrées dont au moins un tag satisfait `tag_predicate`."""
        try:
            matching = [t for t in await self.store.tags() if tag_predicate(t)]
            removed = await self.store.invalidate_tags(matching) if matching else 0
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="response", op="invalidate").inc()
            log.warning("response_cache_bypassed", op="invalidate", error=str(exc))
            return 0
        CACHE_INVALIDATIONS.labels(cache="response").inc(removed)
        return removed

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """
        Invalidation immédiate de toutes les entrées d'un tenant.

        La génération est incrémentée avant la suppression: les requêtes en vol ne peuvent plus
        écrire sous l'ancienne génération, et leurs clés ne sont plus lues.
        """
        try:
            await self.store.incr(self._generation_key(tenant_id))
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="response", op="generation").inc()
            log.warning("response_cache_bypassed", op="generation", error=str(exc))
        wanted = tenant_tag(tenant_id)
        removed = await self.invalidate(lambda tag: tag == wanted)
        log.info("response_cache_tenant_invalidated", tenant=tenant_id, removed=removed)
        return removed

    async def _discard(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="response", op="delete").inc()
            log.warning("response_cache_bypassed", op="delete", error=str(exc))
