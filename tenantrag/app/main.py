"""
Application principale FastAPI.

Ce module assemble les composants de l'application: logging, middlewares, routes du pipeline,
santé et métriques.

Responsabilités du module:
- Initialiser le logging structuré
- Construire l'application FastAPI avec son titre/debug
- Ajouter les middlewares (request id, métriques)
- Monter les routers (santé, questions, notifications de documents, métriques)
"""

from __future__ import annotations

from fastapi import FastAPI

from tenantrag.api.routes_documents import router as documents_router
from tenantrag.api.routes_health import router as health_router
from tenantrag.api.routes_query import router as query_router
from tenantrag.app.metrics import PrometheusMiddleware, metrics_router
from tenantrag.core.container import container
from tenantrag.core.logging import setup_logging
from tenantrag.middlewares.request_id import RequestIDMiddleware


def create_app() -> FastAPI:
    """
    Construit et retourne l'application FastAPI prête à l'usage.

    Étapes:
    - Configure le logging structuré (structlog)
    - Lit les paramètres d'exécution
    - Ajoute les middlewares utiles au debug/traçabilité
    - Publie les routes
    """
    settings = container.settings
    setup_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    app = FastAPI(title=settings.APP_NAME, debug=settings.APP_DEBUG)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.include_router(health_router)
    app.include_router(query_router)
    app.include_router(documents_router)
    app.include_router(metrics_router)
    return app


app = create_app()
