"""Webhook de notification de changement de documents.

Appelé par le service d'ingestion lorsqu'un tenant ajoute, modifie ou supprime des documents; les
réponses en cache du tenant sont invalidées immédiatement.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tenantrag.api.deps import get_document_bus
from tenantrag.domain.tenancy import normalize_tenant
from tenantrag.services.document_events import DocumentChangeBus

router = APIRouter(prefix="/v1/documents", tags=["documents"])
_bus_dep = Depends(get_document_bus)


class DocumentChangePayload(BaseModel):
    """Notification de changement pour un tenant."""

    tenant_id: str


@router.post("/changed", status_code=202)
async def documents_changed(payload: DocumentChangePayload, bus: DocumentChangeBus = _bus_dep):
    """Diffuse le changement aux abonnés (invalidation du cache de réponses)."""
    tenant = normalize_tenant(payload.tenant_id)
    if tenant is None:
        raise HTTPException(status_code=400, detail="invalid_tenant")
    delivered = await bus.notify(tenant)
    return {"tenant_id": tenant, "delivered": delivered}
