"""Route de réponse aux questions (`POST /v1/query/answer`)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from tenantrag.api.deps import get_orchestrator, get_tenant_context
from tenantrag.api.errors import error_response_for
from tenantrag.domain.conversation import ConversationTurn
from tenantrag.domain.orchestrator import PipelineOrchestrator
from tenantrag.domain.retrieval_types import Citation
from tenantrag.domain.tenancy import TenantContext

router = APIRouter(prefix="/v1/query", tags=["query"])
_tenant_dep = Depends(get_tenant_context)
_orchestrator_dep = Depends(get_orchestrator)


class QueryPayload(BaseModel):
    """Payload d'une question avec l'historique de la session."""

    query: str
    history: list[ConversationTurn] = Field(default_factory=list)


class AnswerResponse(BaseModel):
    """Réponse exposée au client."""

    answer: str
    citations: list[Citation]
    degraded: bool
    cached: bool


@router.post("/answer", response_model=AnswerResponse)
async def answer(
    payload: QueryPayload,
    request: Request,
    ctx: TenantContext = _tenant_dep,
    orchestrator: PipelineOrchestrator = _orchestrator_dep,
):
    """Répond à une question avec les seules données visibles par le requérant."""
    result = await orchestrator.answer_query(payload.query, ctx, payload.history)
    error = error_response_for(result, request)
    if error is not None:
        return error
    return AnswerResponse(
        answer=result.answer,
        citations=result.citations,
        degraded=result.degraded,
        cached=result.cached,
    )
