"""Interface de base pour les index vectoriels externes.

Ce module définit l'interface abstraite que doivent implémenter les adaptateurs d'index vectoriel
consommés par la recherche filtrée par permissions. Le filtre de permissions est transmis à l'index
et doit y être appliqué avant le calcul de similarité.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from tenantrag.domain.retrieval_types import RecordFilter, ScoredRecord, VectorRecord


class VectorIndex(ABC):
    """Interface abstraite pour un index vectoriel multi-tenant."""

    dimension: int

    @abstractmethod
    async def search(
        self, vector: list[float], record_filter: RecordFilter, top_k: int
    ) -> list[ScoredRecord]:
        """Recherche les `top_k` enregistrements les plus proches visibles par `record_filter`."""
        raise NotImplementedError

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> int:
        """Insère ou remplace des enregistrements et retourne le nombre écrit."""
        raise NotImplementedError

    @abstractmethod
    async def delete_source(self, tenant_id: str, source_id: str) -> int:
        """Supprime les enregistrements d'une source et retourne le nombre supprimé."""
        raise NotImplementedError

    @abstractmethod
    async def purge_tenant(self, tenant_id: str) -> None:
        """Supprime toutes les données d'un tenant."""
        raise NotImplementedError
