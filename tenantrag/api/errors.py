"""Gestion standardisée des erreurs API avec enveloppes d'erreur.

Ce module fournit une enveloppe d'erreur commune (`code`, `message`, `trace_id`, `details`) et la
correspondance entre états terminaux du pipeline et codes HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from tenantrag.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_SERVICE_UNAVAILABLE,
    HTTP_STATUS_TOO_MANY_REQUESTS,
)
from tenantrag.domain.errors import InvalidInput
from tenantrag.domain.orchestrator import PipelineState, QueryAnswer


@dataclass
class ErrorEnvelope:
    """Standard error envelope for API responses."""

    code: str
    message: str
    trace_id: str | None = None
    details: dict[str, Any] | None = None


def create_error_response(
    status_code: int,
    code: str,
    message: str,
    trace_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Create a standardized error response."""
    envelope = ErrorEnvelope(code=code, message=message, trace_id=trace_id, details=details)
    return JSONResponse(
        status_code=status_code,
        content={
            "code": envelope.code,
            "message": envelope.message,
            "trace_id": envelope.trace_id,
            **({"details": envelope.details} if envelope.details else {}),
        },
    )


def extract_trace_id(request: Request) -> str | None:
    """Extract trace ID from request headers, else the request id bound by the middleware."""
    return (
        request.headers.get("X-Trace-ID")
        or request.headers.get("X-Request-ID")
        or structlog.contextvars.get_contextvars().get("request_id")
    )


def error_response_for(answer: QueryAnswer, request: Request) -> JSONResponse | None:
    """Retourne la réponse d'erreur d'un état REJECTED/FAILED, sinon None."""
    trace_id = extract_trace_id(request)
    if answer.status is PipelineState.REJECTED:
        response = create_error_response(
            status_code=HTTP_STATUS_TOO_MANY_REQUESTS,
            code="RATE_LIMITED",
            message="Rate limit exceeded. Try again later.",
            trace_id=trace_id,
            details={"retry_after": answer.retry_after},
        )
        if answer.retry_after:
            response.headers["Retry-After"] = str(answer.retry_after)
        return response
    if answer.status is PipelineState.FAILED:
        if answer.error_code == InvalidInput.code:
            return create_error_response(
                status_code=HTTP_STATUS_BAD_REQUEST,
                code="INVALID_INPUT",
                message="The query is empty or malformed.",
                trace_id=trace_id,
            )
        return create_error_response(
            status_code=HTTP_STATUS_SERVICE_UNAVAILABLE,
            code="PIPELINE_FAILED",
            message="The answer could not be generated. Try again later.",
            trace_id=trace_id,
            details={"reason": answer.error_code},
        )
    return None
