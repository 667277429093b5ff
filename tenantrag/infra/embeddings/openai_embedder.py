"""
Embedder OpenAI pour la génération d'embeddings.

Ce module implémente un embedder asynchrone utilisant l'API OpenAI. Sans clé API configurée,
chaque appel échoue avec `EmbeddingUnavailable` (le pipeline passe alors en mode dégradé).
"""

from __future__ import annotations

import openai
from openai import AsyncOpenAI

from tenantrag.domain.errors import EmbeddingUnavailable
from tenantrag.infra.embeddings.base import Embeddings


class OpenAIEmbedder(Embeddings):
    """
    Embedder OpenAI pour la génération d'embeddings.

    Utilise l'endpoint `embeddings.create` du SDK asynchrone.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        timeout: float = 10.0,
    ) -> None:
        """
        Initialise l'embedder OpenAI avec la clé API.

        Args:
            api_key: Clé API OpenAI (aucun client n'est créé si absente).
            model: Modèle d'embedding à utiliser.
            timeout: Timeout réseau par appel, en secondes.
        """
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout) if api_key else None

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Génère des embeddings vectoriels via l'API OpenAI.

        Args:
            texts: Liste des textes à convertir en embeddings.

        Returns:
            list[list[float]]: Liste des vecteurs d'embedding.

        Raises:
            EmbeddingUnavailable: Client non configuré ou erreur de l'API.
        """
        if self.client is None:
            raise EmbeddingUnavailable("embedding client not configured")
        try:
            resp = await self.client.embeddings.create(model=self.model, input=texts)
        except openai.OpenAIError as exc:
            raise EmbeddingUnavailable(f"openai embeddings failed: {type(exc).__name__}") from exc
        return [list(d.embedding) for d in resp.data]
