"""Taxonomie des erreurs du pipeline de réponse.

Chaque erreur porte un `code` stable (exposé aux clients et aux métriques) et un drapeau
`retryable` consulté par la politique de retry de l'orchestrateur.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Erreur de base du pipeline."""

    code = "pipeline_error"
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        """Initialise l'erreur avec un message optionnel (code par défaut)."""
        super().__init__(message or self.code)
        self.message = message or self.code


class QuotaExceeded(PipelineError):
    """Quota d'admission dépassé pour un scope (tenant ou utilisateur)."""

    code = "quota_exceeded"

    def __init__(self, scope: str, retry_after: int | None = None) -> None:
        super().__init__(f"quota exceeded for {scope}")
        self.scope = scope
        self.retry_after = retry_after


class InvalidInput(PipelineError):
    """Requête ou vecteur mal formé."""

    code = "invalid_input"


class EmbeddingUnavailable(PipelineError):
    """Le service d'embedding a échoué ou renvoyé un vecteur inutilisable."""

    code = "embedding_unavailable"
    retryable = True


class RetrievalUnavailable(PipelineError):
    """L'index vectoriel externe a échoué ou expiré."""

    code = "retrieval_unavailable"
    retryable = True


class GenerationUnavailable(PipelineError):
    """Le service de génération a échoué ou expiré."""

    code = "generation_unavailable"
    retryable = True


class CacheUnavailable(PipelineError):
    """Le store clé-valeur est indisponible (non fatal: le cache est contourné)."""

    code = "cache_unavailable"


class Degraded(PipelineError):
    """Succès partiel: la réponse est produite sans données récupérées."""

    code = "degraded"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PipelineFailed(PipelineError):
    """Échec terminal du pipeline (génération épuisée, timeout...)."""

    code = "failed"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
