"""
Types de données pour la recherche vectorielle filtrée par permissions.

Ce module définit les modèles Pydantic pour les enregistrements vectoriels, le filtre de permissions
transmis à l'index externe, les résultats de recherche et les citations renvoyées au client.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantrag.domain.tenancy import TenantContext


class RecordMetadata(BaseModel):
    """
    Métadonnées de contrôle d'accès d'un enregistrement vectoriel.

    Le pipeline ne modifie jamais ces métadonnées: elles appartiennent à l'index externe.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    source_type: str
    source_id: str
    access_levels: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("access_levels", mode="before")
    @classmethod
    def _normalize_levels(cls, value):
        if value is None:
            return frozenset()
        return frozenset(str(v).strip().lower() for v in value if str(v).strip())


class VectorRecord(BaseModel):
    """Enregistrement stocké: embedding, texte source et métadonnées."""

    model_config = ConfigDict(frozen=True)

    id: str
    embedding: list[float]
    text: str
    metadata: RecordMetadata


class RecordFilter(BaseModel):
    """
    Prédicat de permissions transmis à l'index.

    Équivalent à `tenant_id == ctx.tenant_id AND access_levels ∩ ctx.access_levels ≠ ∅`.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    access_levels: frozenset[str]

    @classmethod
    def for_context(cls, ctx: TenantContext) -> RecordFilter:
        return cls(tenant_id=ctx.tenant_id, access_levels=ctx.access_levels)

    def matches(self, metadata: RecordMetadata) -> bool:
        """Retourne True si l'enregistrement est visible pour ce filtre."""
        if metadata.tenant_id != self.tenant_id:
            return False
        return not self.access_levels.isdisjoint(metadata.access_levels)


class ScoredRecord(BaseModel):
    """
    Enregistrement avec scores.

    `similarity` est le score brut de l'index; `score` est le score de classement effectif
    (similarité + éventuel boost de page).
    """

    record: VectorRecord
    similarity: float
    score: float


class SearchResult(BaseModel):
    """Résultats triés par score décroissant et tronqués à `top_k`."""

    items: list[ScoredRecord] = Field(default_factory=list)
    top_k: int

    def __len__(self) -> int:
        return len(self.items)

    def records(self) -> list[VectorRecord]:
        return [s.record for s in self.items]


class Citation(BaseModel):
    """Citation exposée au client pour un passage utilisé dans la réponse."""

    record_id: str
    tenant_id: str
    source_type: str
    source_id: str
    # score de classement (similarité + bonus de page), peut dépasser 1
    score: float
    similarity: float | None = None
    snippet: str = ""

    @classmethod
    def from_scored(cls, scored: ScoredRecord, snippet_chars: int = 200) -> Citation:
        meta = scored.record.metadata
        return cls(
            record_id=scored.record.id,
            tenant_id=meta.tenant_id,
            source_type=meta.source_type,
            source_id=meta.source_id,
            score=scored.score,
            similarity=scored.similarity,
            snippet=scored.record.text[:snippet_chars],
        )
