"""Dépendances partagées pour les routes de l'API.

But du module
-------------
- Construire le `TenantContext` à partir des en-têtes posés par le proxy d'authentification
  (X-Tenant-ID, X-User-ID, X-Access-Levels, X-Page-Type, X-Page-Id). Ces en-têtes sont considérés
  de confiance: l'API ne doit être joignable qu'à travers ce proxy.
- Exposer l'orchestrateur et le bus de changements du conteneur (surchargeables en test via
  `app.dependency_overrides`).
"""

from __future__ import annotations

from fastapi import Header, HTTPException

from tenantrag.core.container import container
from tenantrag.domain.orchestrator import PipelineOrchestrator
from tenantrag.domain.tenancy import PageContext, TenantContext, normalize_tenant, parse_access_levels
from tenantrag.services.document_events import DocumentChangeBus


def get_tenant_context(
    x_tenant_id: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_access_levels: str | None = Header(default=None),
    x_page_type: str | None = Header(default=None),
    x_page_id: str | None = Header(default=None),
) -> TenantContext:
    """Construit le contexte tenant à partir des en-têtes de confiance."""
    tenant = normalize_tenant(x_tenant_id)
    if tenant is None:
        raise HTTPException(status_code=401, detail="missing_or_invalid_tenant")
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="missing_user")
    page = PageContext(type=x_page_type or None, id=x_page_id.strip()) if x_page_id else None
    return TenantContext(
        tenant_id=tenant,
        user_id=x_user_id.strip(),
        access_levels=parse_access_levels(x_access_levels),
        page_context=page,
    )


def get_orchestrator() -> PipelineOrchestrator:
    return container.orchestrator


def get_document_bus() -> DocumentChangeBus:
    return container.document_changes
