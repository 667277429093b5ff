"""Cache d'embeddings avec coalescence des requêtes concurrentes.

- Clé: `emb:{model}:{sha256(texte normalisé)}` (le texte brut n'est jamais une clé)
- Miss: un seul appel externe par clé en vol; les autres demandeurs attendent la même tâche
- Les attentes passent par `asyncio.shield`: l'annulation d'un demandeur n'interrompt ni le calcul
  partagé ni son écriture en cache
- Aucun vecteur partiel ou invalide n'est jamais mis en cache
"""

from __future__ import annotations

import asyncio
import json
import math

import structlog

from tenantrag.app.metrics import (
    CACHE_ERRORS,
    CACHE_LOOKUPS,
    EMBEDDING_CALLS,
    EMBEDDING_COALESCED,
)
from tenantrag.core.constants import EMBEDDING_KEY_PREFIX
from tenantrag.domain.errors import CacheUnavailable, EmbeddingUnavailable, InvalidInput
from tenantrag.domain.text import content_hash, normalize_text
from tenantrag.infra.embeddings.base import Embeddings
from tenantrag.infra.kv.base import KeyValueStore

log = structlog.get_logger(__name__)


class EmbeddingCache:
    """Mémoïse texte -> vecteur devant la capacité d'embedding externe."""

    def __init__(
        self,
        embedder: Embeddings,
        store: KeyValueStore,
        ttl_seconds: int = 6 * 3600,
        dimension: int | None = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.dimension = dimension
        self._inflight: dict[str, asyncio.Task[list[float]]] = {}

    def key_for(self, text: str) -> str:
        model = getattr(self.embedder, "model", "unknown")
        return f"{EMBEDDING_KEY_PREFIX}:{model}:{content_hash(normalize_text(text))}"

    async def get_embedding(self, text: str) -> list[float]:
        """
        Retourne le vecteur de `text`, depuis le cache ou la capacité externe.

        Raises:
            InvalidInput: Texte vide après normalisation.
            EmbeddingUnavailable: Échec de l'embedder ou vecteur invalide.
        """
        normalized = normalize_text(text)
        if not normalized:
            raise InvalidInput("cannot embed empty text")
        key = self.key_for(normalized)

        task = self._inflight.get(key)
        if task is not None:
            EMBEDDING_COALESCED.inc()
            return await asyncio.shield(task)

        cached = await self._read(key)
        if cached is not None:
            CACHE_LOOKUPS.labels(cache="embedding", result="hit").inc()
            return cached
        CACHE_LOOKUPS.labels(cache="embedding", result="miss").inc()

        # A concurrent miss may have started the computation while we were reading.
        task = self._inflight.get(key)
        if task is not None:
            EMBEDDING_COALESCED.inc()
            return await asyncio.shield(task)

        task = asyncio.ensure_future(self._compute(key, normalized))
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        return await asyncio.shield(task)

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        self._inflight.pop(key, None)
        if not task.cancelled():
            # marks the exception retrieved when every waiter was cancelled
            task.exception()

    async def _read(self, key: str) -> list[float] | None:
        try:
            raw = await self.store.get(key)
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="embedding", op="get").inc()
            log.warning("embedding_cache_bypassed", op="get", error=str(exc))
            return None
        if raw is None:
            return None
        try:
            vector = [float(v) for v in json.loads(raw)]
        except (TypeError, ValueError):
            log.warning("embedding_cache_corrupt_entry")
            return None
        return vector if self._valid(vector) else None

    async def _compute(self, key: str, text: str) -> list[float]:
        try:
            vectors = await self.embedder.embed([text])
        except EmbeddingUnavailable:
            EMBEDDING_CALLS.labels(result="error").inc()
            raise
        except Exception as exc:
            EMBEDDING_CALLS.labels(result="error").inc()
            raise EmbeddingUnavailable(f"embedder failed: {type(exc).__name__}") from exc

        vector = [float(v) for v in vectors[0]] if vectors else []
        if not self._valid(vector):
            EMBEDDING_CALLS.labels(result="invalid").inc()
            raise EmbeddingUnavailable("embedder returned an unusable vector")
        EMBEDDING_CALLS.labels(result="ok").inc()

        try:
            await self.store.set(key, json.dumps(vector), self.ttl_seconds)
        except CacheUnavailable as exc:
            CACHE_ERRORS.labels(cache="embedding", op="set").inc()
            log.warning("embedding_cache_bypassed", op="set", error=str(exc))
        return vector

    def _valid(self, vector: list[float]) -> bool:
        if not vector or not all(math.isfinite(v) for v in vector):
            return False
        return self.dimension is None or len(vector) == self.dimension
