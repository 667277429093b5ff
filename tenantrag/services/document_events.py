"""Bus de notifications de changement de documents.

Les collaborateurs externes (ingestion, webhook) publient `notify(tenant_id)`; les abonnés (cache de
réponses) invalident alors immédiatement les données dérivées du tenant.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from tenantrag.infra.vecstores.base import VectorIndex

log = structlog.get_logger(__name__)

ChangeHandler = Callable[[str], Awaitable[object]]


class DocumentChangeBus:
    """Diffusion en processus des changements de documents par tenant."""

    def __init__(self) -> None:
        self._handlers: list[ChangeHandler] = []

    def subscribe(self, handler: ChangeHandler) -> None:
        self._handlers.append(handler)

    async def notify(self, tenant_id: str) -> int:
        """Appelle chaque abonné; un abonné en échec n'empêche pas les suivants."""
        delivered = 0
        for handler in self._handlers:
            try:
                await handler(tenant_id)
            except Exception:
                log.exception("document_change_handler_failed", tenant=tenant_id)
                continue
            delivered += 1
        log.info("document_change_notified", tenant=tenant_id, delivered=delivered)
        return delivered


@dataclass
class ChangeReport:
    """Bilan d'une suppression: enregistrements retirés et abonnés notifiés."""

    removed: int | None
    delivered: int


class DocumentMaintenance:
    """
    Suppressions dans l'index suivies d'une notification de changement.

    Toute suppression passe par ici pour que les réponses en cache citant les documents retirés
    soient invalidées dans la foulée.
    """

    def __init__(self, index: VectorIndex, bus: DocumentChangeBus) -> None:
        self.index = index
        self.bus = bus

    async def delete_source(self, tenant_id: str, source_id: str) -> ChangeReport:
        removed = await self.index.delete_source(tenant_id, source_id)
        log.info("document_source_deleted", tenant=tenant_id, source=source_id, removed=removed)
        return ChangeReport(removed=removed, delivered=await self.bus.notify(tenant_id))

    async def purge_tenant(self, tenant_id: str) -> ChangeReport:
        await self.index.purge_tenant(tenant_id)
        return ChangeReport(removed=None, delivered=await self.bus.notify(tenant_id))
