"""
Métriques Prometheus pour le pipeline de réponse.

Ce module définit toutes les métriques Prometheus utilisées pour le monitoring du pipeline
(admission, caches, recherche, génération) ainsi que l'exposition `/metrics`.
"""

import time

from fastapi import APIRouter, Request
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

metrics_router = APIRouter()

REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "route", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Latency of HTTP requests", ["route"]
)

# Admission
ADMISSION_DECISIONS = Counter(
    "admission_decisions_total",
    "Admission decisions per scope kind",
    ["scope", "result"],
)
ADMISSION_STORE_ERRORS = Counter(
    "admission_store_errors_total",
    "Quota store errors (fail-open)",
    ["error_type"],
)

# Caches
CACHE_LOOKUPS = Counter(
    "cache_lookups_total",
    "Cache lookups by cache and result",
    ["cache", "result"],
)
CACHE_ERRORS = Counter(
    "cache_errors_total",
    "Cache store errors (bypassed)",
    ["cache", "op"],
)
CACHE_INVALIDATIONS = Counter(
    "cache_invalidations_total",
    "Entries removed by tag invalidation",
    ["cache"],
)
EMBEDDING_CALLS = Counter(
    "embedding_calls_total",
    "Calls to the external embedding capability",
    ["result"],
)
EMBEDDING_COALESCED = Counter(
    "embedding_coalesced_total",
    "Embedding requests served by an in-flight computation",
)

# Retrieval
RETRIEVAL_REQUESTS = Counter(
    "retrieval_requests_total",
    "Total retrieval operations",
    ["tenant"],
)
RETRIEVAL_ERRORS = Counter(
    "retrieval_errors_total",
    "Total retrieval errors",
    ["code", "tenant"],
)
RETRIEVAL_LATENCY = Histogram(
    "retrieval_latency_seconds",
    "Latency of retrieval operations",
    ["tenant"],
)
SECURITY_FILTER_VIOLATIONS = Counter(
    "security_filter_violations_total",
    "Records returned by the index that failed the permission re-check",
    ["tenant"],
)

# Contexte
CONTEXT_TOKENS = Histogram(
    "context_tokens",
    "Estimated tokens of assembled contexts",
    buckets=[64, 128, 256, 512, 1024, 2048, 4096, 8192, 16384],
)
CONTEXT_TURNS_DROPPED = Counter(
    "context_turns_dropped_total",
    "Conversation turns evicted by the context assembler",
)
CONTEXT_TURNS_SUMMARIZED = Counter(
    "context_turns_summarized_total",
    "Conversation turns replaced by their summary",
)

# Pipeline
PIPELINE_REQUESTS = Counter(
    "pipeline_requests_total",
    "Pipeline outcomes",
    ["tenant", "status"],
)
PIPELINE_LATENCY = Histogram(
    "pipeline_latency_seconds",
    "End-to-end pipeline latency",
    ["status"],
)
PIPELINE_RETRY_ATTEMPTS = Counter(
    "pipeline_retry_attempts_total",
    "Retry attempts of external calls",
    ["stage", "result"],
)
LLM_TOKENS_TOTAL = Counter(
    "llm_tokens_total",
    "Tokens reported by the generation capability",
    ["tenant", "model"],
)


def _normalize_allowed(allowed: list[str] | str | None) -> list[str]:
    if allowed is None:
        return []
    if isinstance(allowed, str):
        return [a.strip() for a in allowed.split(",") if a.strip()]
    return [str(a).strip() for a in allowed if str(a).strip()]


def labelize_tenant(tenant: str | None, allowed: list[str] | str | None) -> str:
    """Project tenant label through a whitelist; otherwise 'unknown'."""
    vals = set(_normalize_allowed(allowed))
    if not vals:
        return tenant or "default"
    return (tenant or "").strip() if (tenant or "").strip() in vals else "unknown"


@metrics_router.get("/metrics")
def metrics():
    """
    Expose les métriques Prometheus au format texte.

    Returns:
        Response: Réponse HTTP contenant les métriques au format Prometheus.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware Prometheus pour mesurer les métriques HTTP.

    Collecte les métriques de comptage des requêtes et de latence par route.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response: Response = await call_next(request)
        route = request.scope.get("path", "unknown")
        REQUEST_COUNT.labels(request.method, route, str(response.status_code)).inc()
        REQUEST_LATENCY.labels(route).observe(time.perf_counter() - start)
        return response
