"""
Conteneur d'injection de dépendances du pipeline.

Instancie les composants centraux (settings, stores, capacités externes, caches, recherche,
orchestrateur) et expose un singleton `container` utilisé par l'API.
"""

from __future__ import annotations

import structlog

from tenantrag.apigw.admission import AdmissionController, parse_tenant_limits
from tenantrag.apigw.quota_store import InMemoryQuotaStore, QuotaStore, RedisQuotaStore
from tenantrag.core.settings import Settings, get_settings
from tenantrag.domain.context_assembler import ContextAssembler
from tenantrag.domain.orchestrator import PipelineConfig, PipelineOrchestrator
from tenantrag.domain.retriever import PermissionFilteredSearch
from tenantrag.domain.token_counting import TokenCounter
from tenantrag.infra.embeddings.openai_embedder import OpenAIEmbedder
from tenantrag.infra.kv.base import KeyValueStore
from tenantrag.infra.kv.memory import InMemoryKV
from tenantrag.infra.kv.redis_kv import RedisKV
from tenantrag.infra.llm.openai_client import OpenAILLM
from tenantrag.infra.llm.summarizer import LLMSummarizer
from tenantrag.infra.vecstores.base import VectorIndex
from tenantrag.infra.vecstores.memory_adapter import InMemoryVectorIndex
from tenantrag.services.document_events import DocumentChangeBus, DocumentMaintenance
from tenantrag.services.embedding_cache import EmbeddingCache
from tenantrag.services.response_cache import ResponseCache
from tenantrag.services.retry import RetryPolicy

log = structlog.get_logger(__name__)


class Container:
    """Assemble le pipeline à partir des settings."""

    def __init__(self, settings: Settings | None = None, index: VectorIndex | None = None):
        self.settings = settings or get_settings()
        s = self.settings

        self.kv, self.quota_store, self.storage_backend = self._build_stores(s)

        self.embedder = OpenAIEmbedder(api_key=s.OPENAI_API_KEY, model=s.EMBEDDINGS_MODEL)
        self.llm = OpenAILLM(api_key=s.OPENAI_API_KEY, model=s.LLM_MODEL, timeout=s.LLM_TIMEOUT_S)
        self.index = index or InMemoryVectorIndex(dimension=s.EMBEDDING_DIM)

        self.admission = AdmissionController(
            store=self.quota_store,
            tenant_limit=s.QUOTA_TENANT_LIMIT,
            user_limit=s.QUOTA_USER_LIMIT,
            window_seconds=s.QUOTA_WINDOW_S,
            tenant_limits=parse_tenant_limits(s.QUOTA_TENANT_LIMITS_JSON),
        )
        self.embedding_cache = EmbeddingCache(
            self.embedder, self.kv, ttl_seconds=s.EMBEDDING_CACHE_TTL_S, dimension=s.EMBEDDING_DIM
        )
        self.response_cache = ResponseCache(
            self.kv,
            namespace=s.RESPONSE_CACHE_NAMESPACE,
            short_ttl=s.RESPONSE_CACHE_TTL_SHORT_S,
            long_ttl=s.RESPONSE_CACHE_TTL_LONG_S,
            static_source_types=s.STATIC_SOURCE_TYPES,
        )
        self.search = PermissionFilteredSearch(
            self.index,
            page_boost=s.PAGE_CONTEXT_BOOST,
            timeout_s=s.SEARCH_TIMEOUT_S,
            allowed_tenant_labels=s.ALLOWED_TENANTS,
        )
        self.assembler = ContextAssembler(
            counter=TokenCounter(s.TOKEN_COUNT_STRATEGY),
            summarizer=LLMSummarizer(self.llm),
            retrieval_ratio=s.RETRIEVAL_BUDGET_RATIO,
        )
        self.orchestrator = PipelineOrchestrator(
            admission=self.admission,
            response_cache=self.response_cache,
            embedding_cache=self.embedding_cache,
            search=self.search,
            assembler=self.assembler,
            llm=self.llm,
            config=PipelineConfig(
                top_k=s.SEARCH_TOP_K,
                score_threshold=s.SEARCH_SCORE_THRESHOLD,
                token_budget=s.CONTEXT_TOKEN_BUDGET,
                max_query_chars=s.MAX_QUERY_CHARS,
                request_timeout_s=s.REQUEST_TIMEOUT_S,
                retry_policy=RetryPolicy(
                    max_attempts=s.RETRY_MAX_ATTEMPTS,
                    base_delay=s.RETRY_BASE_DELAY_S,
                    max_delay=s.RETRY_MAX_DELAY_S,
                ),
                allowed_tenant_labels=s.ALLOWED_TENANTS,
            ),
        )

        self.document_changes = DocumentChangeBus()
        self.document_changes.subscribe(self.response_cache.invalidate_tenant)
        self.documents = DocumentMaintenance(self.index, self.document_changes)

    @staticmethod
    def _build_stores(s: Settings) -> tuple[KeyValueStore, QuotaStore, str]:
        if s.REDIS_URL:
            try:
                kv = RedisKV.from_url(
                    s.REDIS_URL,
                    prefix=s.APP_NAME,
                    timeout_ms=s.REDIS_TIMEOUT_MS,
                    tag_ttl_seconds=s.RESPONSE_CACHE_TTL_LONG_S,
                )
                quotas = RedisQuotaStore.from_url(s.REDIS_URL, timeout_ms=s.REDIS_TIMEOUT_MS)
                return kv, quotas, "redis"
            except Exception as err:
                if s.REQUIRE_REDIS:
                    raise RuntimeError("Redis required but unavailable") from err
                log.warning("redis_unavailable_memory_fallback", error=str(err))
                return InMemoryKV(), InMemoryQuotaStore(), "memory-fallback"
        if s.REQUIRE_REDIS:
            raise RuntimeError("Redis required but REDIS_URL not set")
        return InMemoryKV(), InMemoryQuotaStore(), "memory"


container = Container()
