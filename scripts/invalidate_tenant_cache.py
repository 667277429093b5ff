"""
Invalidation manuelle du cache de réponses d'un tenant.

Équivalent en ligne de commande du webhook `POST /v1/documents/changed`: à utiliser après une
réindexation hors bande ou une purge de données. Avec `--source`, les enregistrements de la source
sont d'abord retirés de l'index; avec `--purge`, toutes les données du tenant le sont. Les stores
sont ceux du conteneur (Redis si `REDIS_URL` est défini).
"""

from __future__ import annotations

import argparse
import asyncio

from tenantrag.core.container import Container
from tenantrag.domain.tenancy import normalize_tenant


async def close_stores(c: Container) -> None:
    """Ferme les clients des stores (cache et quotas) qui en exposent un."""
    for store in (c.kv, c.quota_store):
        close = getattr(store, "close", None)
        if close is not None:
            await close()


async def invalidate(
    tenant: str,
    container: Container | None = None,
    source: str | None = None,
    purge: bool = False,
) -> int:
    """Notifie le changement de documents et retourne le nombre d'abonnés servis."""
    c = container or Container()
    try:
        if purge:
            return (await c.documents.purge_tenant(tenant)).delivered
        if source:
            report = await c.documents.delete_source(tenant, source)
            print(f"removed records={report.removed} source={source}")
            return report.delivered
        return await c.document_changes.notify(tenant)
    finally:
        await close_stores(c)


def main(argv: list[str] | None = None) -> int:
    """Point d'entrée principal de l'invalidation."""
    parser = argparse.ArgumentParser()
    parser.add_argument("tenant", help="Tenant identifier whose cached answers are dropped")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--source", help="Delete this source's records from the index first")
    group.add_argument("--purge", action="store_true", help="Delete all tenant records first")
    args = parser.parse_args(argv)

    tenant = normalize_tenant(args.tenant)
    if tenant is None:
        parser.error(f"invalid tenant identifier: {args.tenant!r}")
    delivered = asyncio.run(invalidate(tenant, source=args.source, purge=args.purge))
    print(f"invalidated tenant={tenant} delivered={delivered}")
    return 0


if __name__ == "__main__":  # pragma: no cover - script entry
    raise SystemExit(main())
