"""Orchestrateur du pipeline de réponse.

Ce module séquence admission, cache de réponses, embedding, recherche filtrée, assemblage du
contexte, génération et stockage en cache. Chaque étape lève une erreur typée que l'orchestrateur
convertit en état terminal (`DONE`, `DEGRADED`, `REJECTED`, `FAILED`) dans un `QueryAnswer`.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from tenantrag.apigw.admission import AdmissionController
from tenantrag.app.metrics import (
    LLM_TOKENS_TOTAL,
    PIPELINE_LATENCY,
    PIPELINE_REQUESTS,
    labelize_tenant,
)
from tenantrag.core.constants import DEFAULT_SYSTEM_PROMPT, NO_DATA_MESSAGE
from tenantrag.domain.context_assembler import ContextAssembler
from tenantrag.domain.conversation import AssembledContext, ConversationTurn
from tenantrag.domain.errors import (
    Degraded,
    EmbeddingUnavailable,
    GenerationUnavailable,
    InvalidInput,
    PipelineFailed,
    QuotaExceeded,
    RetrievalUnavailable,
)
from tenantrag.domain.retrieval_types import Citation, SearchResult
from tenantrag.domain.retriever import PermissionFilteredSearch
from tenantrag.domain.tenancy import TenantContext
from tenantrag.infra.llm.base import LLM
from tenantrag.services.embedding_cache import EmbeddingCache
from tenantrag.services.response_cache import CachedAnswer, ResponseCache
from tenantrag.services.retry import RetryPolicy, retry_async

log = structlog.get_logger(__name__)


class PipelineState(str, Enum):
    """États de la machine à états d'une requête."""

    ADMITTED = "admitted"
    CACHE_CHECK = "cache_check"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    EMBEDDING = "embedding"
    SEARCH = "search"
    ASSEMBLE = "assemble"
    GENERATE = "generate"
    CACHE_STORE = "cache_store"
    DONE = "done"
    DEGRADED = "degraded"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {PipelineState.DONE, PipelineState.DEGRADED, PipelineState.REJECTED, PipelineState.FAILED}
)


class QueryAnswer(BaseModel):
    """Résultat exposé de `answer_query`."""

    status: PipelineState
    answer: str = ""
    citations: list[Citation] = Field(default_factory=list)
    degraded: bool = False
    cached: bool = False
    error_code: str | None = None
    retry_after: int | None = None
    trace: list[PipelineState] = Field(default_factory=list)

    def raise_for_status(self) -> QueryAnswer:
        """Lève l'erreur correspondant à un état REJECTED/FAILED; sinon retourne self."""
        if self.status is PipelineState.REJECTED:
            raise QuotaExceeded("admission", retry_after=self.retry_after)
        if self.status is PipelineState.FAILED:
            if self.error_code == InvalidInput.code:
                raise InvalidInput("invalid input")
            raise PipelineFailed(self.error_code or "failed")
        return self


@dataclass
class PipelineConfig:
    """Paramètres d'exécution du pipeline."""

    top_k: int = 6
    score_threshold: float = 0.2
    token_budget: int = 3000
    max_query_chars: int = 2000
    request_timeout_s: float = 30.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    allowed_tenant_labels: list[str] = field(default_factory=list)


def build_messages(system_prompt: str, context: AssembledContext) -> list[dict[str, str]]:
    """Messages chat: consigne + passages numérotés, puis tours dans l'ordre chronologique."""
    system = system_prompt
    if context.passages:
        numbered = "\n".join(f"[{i}] {p.content}" for i, p in enumerate(context.passages, 1))
        system = f"{system_prompt}\n\nContext passages:\n{numbered}"
    messages = [{"role": "system", "content": system}]
    messages.extend({"role": t.role or "user", "content": t.content} for t in context.turns)
    return messages


@dataclass
class _Progress:
    """Avancement d'une requête, partagé avec `answer_query` pour survivre au timeout."""

    trace: list[PipelineState] = field(default_factory=list)
    generated: QueryAnswer | None = None


class PipelineOrchestrator:
    """Point d'entrée unique: `answer_query(query, tenant_context, history)`."""

    def __init__(
        self,
        admission: AdmissionController,
        response_cache: ResponseCache,
        embedding_cache: EmbeddingCache,
        search: PermissionFilteredSearch,
        assembler: ContextAssembler,
        llm: LLM,
        config: PipelineConfig | None = None,
    ) -> None:
        self.admission = admission
        self.response_cache = response_cache
        self.embedding_cache = embedding_cache
        self.search = search
        self.assembler = assembler
        self.llm = llm
        self.config = config or PipelineConfig()
        self._pending_writes: set[asyncio.Task] = set()

    async def answer_query(
        self,
        query: str,
        ctx: TenantContext,
        history: list[ConversationTurn] | None = None,
    ) -> QueryAnswer:
        """
        Exécute le pipeline complet et retourne toujours un état terminal.

        Un timeout survenu après la génération (pendant l'écriture en cache) retourne la réponse
        générée; l'écriture se termine en arrière-plan.
        """
        start = time.perf_counter()
        progress = _Progress()
        trace = progress.trace
        bound = log.bind(tenant=ctx.tenant_id)
        try:
            result = await asyncio.wait_for(
                self._run(query, ctx, list(history or []), progress),
                timeout=self.config.request_timeout_s,
            )
        except TimeoutError:
            bound.warning("pipeline_timeout", last_state=trace[-1].value if trace else None)
            if progress.generated is not None:
                result = progress.generated
                result.trace.append(PipelineState.DONE)
            else:
                result = self._failed(trace, "timeout")

        tenant_lbl = labelize_tenant(ctx.tenant_id, self.config.allowed_tenant_labels)
        PIPELINE_REQUESTS.labels(tenant=tenant_lbl, status=result.status.value).inc()
        PIPELINE_LATENCY.labels(status=result.status.value).observe(time.perf_counter() - start)
        bound.info(
            "pipeline_finished",
            status=result.status.value,
            cached=result.cached,
            citations=len(result.citations),
        )
        return result

    async def _run(
        self,
        query: str,
        ctx: TenantContext,
        history: list[ConversationTurn],
        progress: _Progress,
    ) -> QueryAnswer:
        trace = progress.trace
        decision = await self.admission.admit(ctx)
        if not decision.allowed:
            trace.append(PipelineState.REJECTED)
            return QueryAnswer(
                status=PipelineState.REJECTED,
                error_code=QuotaExceeded.code,
                retry_after=decision.retry_after,
                trace=trace,
            )
        trace.append(PipelineState.ADMITTED)

        try:
            self._validate(query)
            return await self._answer(query.strip(), ctx, history, progress)
        except InvalidInput as exc:
            log.info("pipeline_invalid_input", reason=exc.message)
            return self._failed(trace, InvalidInput.code)
        except Degraded as exc:
            log.warning("pipeline_degraded", tenant=ctx.tenant_id, reason=exc.reason)
            trace.append(PipelineState.DEGRADED)
            return QueryAnswer(
                status=PipelineState.DEGRADED,
                answer=NO_DATA_MESSAGE,
                degraded=True,
                error_code=exc.reason,
                trace=trace,
            )
        except (GenerationUnavailable, PipelineFailed) as exc:
            log.error("pipeline_failed", tenant=ctx.tenant_id, code=exc.code)
            return self._failed(trace, exc.code)

    def _validate(self, query: str) -> None:
        text = (query or "").strip()
        if not text:
            raise InvalidInput("query must not be empty")
        if len(text) > self.config.max_query_chars:
            raise InvalidInput("query too long")

    async def _answer(
        self,
        query: str,
        ctx: TenantContext,
        history: list[ConversationTurn],
        progress: _Progress,
    ) -> QueryAnswer:
        trace = progress.trace
        trace.append(PipelineState.CACHE_CHECK)
        # an invalidation after this read makes both the key and the later write stale
        generation = await self.response_cache.generation(ctx.tenant_id)
        key = self.response_cache.build_key(ctx, query, history, generation=generation or 0)
        cached = await self.response_cache.get(key, tenant_id=ctx.tenant_id)
        if cached is not None:
            trace.extend([PipelineState.CACHE_HIT, PipelineState.DONE])
            return QueryAnswer(
                status=PipelineState.DONE,
                answer=cached.answer,
                citations=cached.citations,
                cached=True,
                trace=trace,
            )
        trace.append(PipelineState.CACHE_MISS)

        result = await self._retrieve(query, ctx, trace)

        trace.append(PipelineState.ASSEMBLE)
        turns = [*history, ConversationTurn(role="user", content=query)]
        context = await self.assembler.assemble(turns, result.items, self.config.token_budget)
        used = {p.record_id for p in context.passages}
        citations = [Citation.from_scored(s) for s in result.items if s.record.id in used]

        trace.append(PipelineState.GENERATE)
        messages = build_messages(self.config.system_prompt, context)
        text, usage = await retry_async(
            lambda: self.llm.generate(messages, with_usage=True),
            stage="generation",
            policy=self.config.retry_policy,
        )
        if usage.get("total_tokens"):
            LLM_TOKENS_TOTAL.labels(
                tenant=labelize_tenant(ctx.tenant_id, self.config.allowed_tenant_labels),
                model=getattr(self.llm, "model", "unknown"),
            ).inc(usage["total_tokens"])

        trace.append(PipelineState.CACHE_STORE)
        progress.generated = QueryAnswer(
            status=PipelineState.DONE, answer=text, citations=citations, trace=trace
        )
        if generation is not None:
            write = asyncio.ensure_future(
                self.response_cache.set(
                    key,
                    CachedAnswer(tenant_id=ctx.tenant_id, answer=text, citations=citations),
                    generation=generation,
                )
            )
            self._pending_writes.add(write)
            write.add_done_callback(self._write_done)
            await asyncio.shield(write)

        progress.generated.trace.append(PipelineState.DONE)
        return progress.generated

    async def _retrieve(
        self, query: str, ctx: TenantContext, trace: list[PipelineState]
    ) -> SearchResult:
        policy = self.config.retry_policy
        try:
            trace.append(PipelineState.EMBEDDING)
            vector = await retry_async(
                lambda: self.embedding_cache.get_embedding(query), stage="embedding", policy=policy
            )
            trace.append(PipelineState.SEARCH)
            return await retry_async(
                lambda: self.search.search(
                    vector, ctx, self.config.top_k, self.config.score_threshold
                ),
                stage="search",
                policy=policy,
            )
        except (EmbeddingUnavailable, RetrievalUnavailable) as exc:
            raise Degraded(exc.code) from exc

    def _write_done(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("response_cache_write_failed", error=str(task.exception()))

    @staticmethod
    def _failed(trace: list[PipelineState], code: str) -> QueryAnswer:
        trace.append(PipelineState.FAILED)
        return QueryAnswer(status=PipelineState.FAILED, error_code=code, trace=trace)
