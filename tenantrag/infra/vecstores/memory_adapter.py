"""
In-memory multi-tenant vector index.

Implements VectorIndex for development and tests. Records are partitioned per tenant; the
permission filter is applied before cosine scoring, so inaccessible records are never scored.
"""

from __future__ import annotations

import numpy as np
import structlog

from tenantrag.domain.errors import InvalidInput
from tenantrag.domain.retrieval_types import RecordFilter, ScoredRecord, VectorRecord
from tenantrag.infra.vecstores.base import VectorIndex

log = structlog.get_logger(__name__)


class InMemoryVectorIndex(VectorIndex):
    """In-memory index with per-tenant partitions and numpy cosine similarity."""

    def __init__(self, dimension: int) -> None:
        """Initialize an empty index of the given dimensionality."""
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension
        self._records: dict[str, dict[str, VectorRecord]] = {}

    def _check_dim(self, vector: list[float]) -> None:
        if len(vector) != self.dimension:
            raise InvalidInput(
                f"vector dimension {len(vector)} does not match index dimension {self.dimension}"
            )

    async def upsert(self, records: list[VectorRecord]) -> int:
        for record in records:
            self._check_dim(record.embedding)
            self._records.setdefault(record.metadata.tenant_id, {})[record.id] = record
        log.debug("vector_index_upsert", count=len(records))
        return len(records)

    async def search(
        self, vector: list[float], record_filter: RecordFilter, top_k: int
    ) -> list[ScoredRecord]:
        self._check_dim(vector)
        partition = self._records.get(record_filter.tenant_id, {})
        candidates = [r for r in partition.values() if record_filter.matches(r.metadata)]
        if not candidates or top_k <= 0:
            return []

        matrix = np.asarray([r.embedding for r in candidates], dtype="float32")
        query = np.asarray(vector, dtype="float32")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ query / norms, 0.0)

        order = np.argsort(-sims, kind="stable")[:top_k]
        return [
            ScoredRecord(record=candidates[i], similarity=float(sims[i]), score=float(sims[i]))
            for i in order
        ]

    async def delete_source(self, tenant_id: str, source_id: str) -> int:
        partition = self._records.get(tenant_id, {})
        doomed = [rid for rid, r in partition.items() if r.metadata.source_id == source_id]
        for rid in doomed:
            del partition[rid]
        return len(doomed)

    async def purge_tenant(self, tenant_id: str) -> None:
        self._records.pop(tenant_id, None)
        log.info("vector_index_purge", tenant=tenant_id)
