"""Recherche vectorielle filtrée par tenant et niveaux d'accès.

Ordre des filtres:
1. Filtre de permissions (tenant + intersection des niveaux d'accès) transmis à l'index comme
   pré-filtre strict, puis re-vérifié sur chaque résultat;
2. Boost de page (souple: réordonne sans exclure);
3. Seuil de score appliqué à la similarité brute, après le filtre de permissions. Appliquer le seuil
   avant exposerait l'existence d'enregistrements inaccessibles par le nombre de résultats.
"""

from __future__ import annotations

import asyncio
import time

import structlog

from tenantrag.app.metrics import (
    RETRIEVAL_ERRORS,
    RETRIEVAL_LATENCY,
    RETRIEVAL_REQUESTS,
    SECURITY_FILTER_VIOLATIONS,
    labelize_tenant,
)
from tenantrag.core.constants import CANDIDATE_MULTIPLIER
from tenantrag.domain.errors import InvalidInput, RetrievalUnavailable
from tenantrag.domain.retrieval_types import RecordFilter, ScoredRecord, SearchResult
from tenantrag.domain.tenancy import PageContext, TenantContext
from tenantrag.infra.vecstores.base import VectorIndex

log = structlog.get_logger(__name__)


def _page_match(scored: ScoredRecord, page: PageContext) -> bool:
    meta = scored.record.metadata
    if meta.source_id != page.id:
        return False
    return page.type is None or meta.source_type == page.type


class PermissionFilteredSearch:
    """Recherche filtrée par permissions au-dessus d'un index vectoriel externe."""

    def __init__(
        self,
        index: VectorIndex,
        page_boost: float = 0.05,
        timeout_s: float = 3.0,
        allowed_tenant_labels: list[str] | None = None,
    ) -> None:
        """
        Initialise la recherche.

        Args:
            index: Index vectoriel externe.
            page_boost: Bonus de score pour les enregistrements de la page courante.
            timeout_s: Timeout de l'appel à l'index.
            allowed_tenant_labels: Liste blanche des labels tenant pour les métriques.
        """
        self.index = index
        self.page_boost = page_boost
        self.timeout_s = timeout_s
        self.allowed_tenant_labels = allowed_tenant_labels or []

    @property
    def dimension(self) -> int:
        return self.index.dimension

    async def search(
        self,
        query_vector: list[float],
        ctx: TenantContext,
        top_k: int,
        score_threshold: float,
    ) -> SearchResult:
        """
        Recherche les passages visibles par `ctx`.

        Raises:
            InvalidInput: `top_k <= 0` ou dimension du vecteur incorrecte.
            RetrievalUnavailable: échec ou timeout de l'index.
        """
        if top_k <= 0:
            raise InvalidInput("top_k must be positive")
        if len(query_vector) != self.dimension:
            raise InvalidInput(
                f"query vector has dimension {len(query_vector)}, index expects {self.dimension}"
            )
        if not ctx.access_levels:
            # no access level can intersect an empty set
            return SearchResult(items=[], top_k=top_k)

        tenant_lbl = labelize_tenant(ctx.tenant_id, self.allowed_tenant_labels)
        record_filter = RecordFilter.for_context(ctx)
        candidate_k = top_k * CANDIDATE_MULTIPLIER if ctx.page_context else top_k

        start = time.perf_counter()
        RETRIEVAL_REQUESTS.labels(tenant=tenant_lbl).inc()
        try:
            raw = await asyncio.wait_for(
                self.index.search(query_vector, record_filter, candidate_k), timeout=self.timeout_s
            )
        except InvalidInput:
            raise
        except TimeoutError as exc:
            RETRIEVAL_ERRORS.labels(code="timeout", tenant=tenant_lbl).inc()
            raise RetrievalUnavailable("vector index timed out") from exc
        except Exception as exc:
            RETRIEVAL_ERRORS.labels(code="backend_error", tenant=tenant_lbl).inc()
            raise RetrievalUnavailable(f"vector index failed: {type(exc).__name__}") from exc
        finally:
            RETRIEVAL_LATENCY.labels(tenant=tenant_lbl).observe(time.perf_counter() - start)

        visible = [s for s in raw if record_filter.matches(s.record.metadata)]
        if len(visible) != len(raw):
            SECURITY_FILTER_VIOLATIONS.labels(tenant=tenant_lbl).inc(len(raw) - len(visible))
            log.error(
                "vector_index_filter_violation",
                tenant=ctx.tenant_id,
                dropped=len(raw) - len(visible),
            )

        relevant = [s for s in visible if s.similarity >= score_threshold]
        ranked = [self._boosted(s, ctx.page_context) for s in relevant]
        ranked.sort(key=lambda s: s.score, reverse=True)
        return SearchResult(items=ranked[:top_k], top_k=top_k)

    def _boosted(self, scored: ScoredRecord, page: PageContext | None) -> ScoredRecord:
        if page is None or not _page_match(scored, page):
            return scored
        return scored.model_copy(update={"score": scored.similarity + self.page_boost})
