"""Définition et chargement des paramètres de configuration du pipeline.

Objectif du module
------------------
- Centraliser les paramètres (env/.env) via Pydantic Settings
- Résoudre le fichier `.env` à utiliser selon la stratégie: ENV_FILE > .env.{APP_ENV} > .env
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _resolve_env_file() -> Path | str:
    """Retourne le fichier .env à charger selon la priorité documentée."""
    env_file = os.getenv("ENV_FILE")
    if env_file:
        return env_file
    cwd = Path.cwd()
    app_env = os.getenv("APP_ENV", "dev")
    candidate_specific = cwd / f".env.{app_env}"
    if candidate_specific.exists():
        return candidate_specific
    return cwd / ".env"


class Settings(BaseSettings):
    """Modèle de configuration chargé depuis l'environnement et .env."""

    model_config = SettingsConfigDict(
        env_file=_resolve_env_file(),
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )
    APP_NAME: str = "tenantrag"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"
    # Rendu JSON (une ligne par événement) pour les environnements hors dev
    LOG_JSON: bool = False

    REDIS_URL: str | None = None
    REQUIRE_REDIS: bool = False
    REDIS_TIMEOUT_MS: int = 200

    # Fournisseurs externes
    OPENAI_API_KEY: str | None = None
    EMBEDDINGS_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIM: int = 1536
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_S: float = 20.0

    # Caches
    EMBEDDING_CACHE_TTL_S: int = 6 * 3600
    RESPONSE_CACHE_NAMESPACE: str = "answers"
    RESPONSE_CACHE_TTL_SHORT_S: int = 300
    RESPONSE_CACHE_TTL_LONG_S: int = 6 * 3600
    STATIC_SOURCE_TYPES: list[str] = ["policy", "handbook", "faq"]

    # Recherche
    SEARCH_TOP_K: int = 6
    SEARCH_SCORE_THRESHOLD: float = 0.2
    SEARCH_TIMEOUT_S: float = 3.0
    PAGE_CONTEXT_BOOST: float = 0.05

    # Contexte
    CONTEXT_TOKEN_BUDGET: int = 3000
    RETRIEVAL_BUDGET_RATIO: float = 0.5
    # Token counting strategy: chars | words | tiktoken
    TOKEN_COUNT_STRATEGY: str = "chars"
    MAX_QUERY_CHARS: int = 2000

    # Admission
    QUOTA_WINDOW_S: int = 60
    QUOTA_TENANT_LIMIT: int = 100
    QUOTA_USER_LIMIT: int = 20
    QUOTA_TENANT_LIMITS_JSON: str = "{}"

    # Retries / timeouts
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_S: float = 0.1
    RETRY_MAX_DELAY_S: float = 2.0
    REQUEST_TIMEOUT_S: float = 30.0

    # Limitation de cardinalité des labels métriques (liste JSON via .env, peut être vide)
    ALLOWED_TENANTS: list[str] = []


def get_settings() -> Settings:
    """Construit et retourne la configuration de l'application."""
    return Settings()
