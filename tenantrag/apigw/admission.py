"""
Contrôle d'admission par tenant et par utilisateur.

Ce module applique des quotas à fenêtre fixe indépendants pour le scope tenant et le scope
utilisateur, avant tout travail coûteux (cache, embedding, recherche). Un refus est toujours un
résultat explicite (`AdmissionDecision.allowed is False`), jamais un abandon silencieux.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import structlog

from tenantrag.apigw.quota_store import QuotaDecision, QuotaStore
from tenantrag.app.metrics import ADMISSION_DECISIONS
from tenantrag.domain.tenancy import TenantContext

log = structlog.get_logger(__name__)


def tenant_scope(ctx: TenantContext) -> str:
    return f"tenant:{ctx.tenant_id}"


def user_scope(ctx: TenantContext) -> str:
    # user ids are only unique within a tenant
    return f"user:{ctx.tenant_id}:{ctx.user_id}"


def parse_tenant_limits(raw: str | None) -> dict[str, int]:
    """Parse `QUOTA_TENANT_LIMITS_JSON` (ex: '{"acme": 500}'); invalid JSON -> {}."""
    try:
        data = json.loads(raw or "{}")
    except ValueError as exc:
        log.warning("invalid_tenant_limits_json", msg="fallback to {}", error=str(exc))
        return {}
    if not isinstance(data, dict):
        log.warning("invalid_tenant_limits_json", msg="expected an object")
        return {}
    return {str(k): int(v) for k, v in data.items()}


@dataclass
class AdmissionDecision:
    """Résultat de l'admission d'une requête (tenant puis utilisateur)."""

    allowed: bool
    rejected_scope: str | None = None
    retry_after: int | None = None
    decisions: list[QuotaDecision] = field(default_factory=list)


@dataclass
class AdmissionController:
    """
    Gestion des quotas d'admission.

    - `tenant_limit` / `user_limit`: requêtes autorisées par fenêtre (<= 0 = illimité)
    - `tenant_limits`: surcharges par tenant
    - `window_seconds`: longueur de la fenêtre fixe
    """

    store: QuotaStore
    tenant_limit: int = 100
    user_limit: int = 20
    window_seconds: float = 60.0
    tenant_limits: dict[str, int] = field(default_factory=dict)

    def limit_for_tenant(self, tenant_id: str) -> int:
        return int(self.tenant_limits.get(tenant_id, self.tenant_limit))

    async def check_and_record(
        self, scope: str, limit: int, window_seconds: float | None = None
    ) -> QuotaDecision | None:
        """
        Vérifie et enregistre une requête pour un scope.

        Returns:
            QuotaDecision | None: None si le scope n'a pas de limite.
        """
        if limit <= 0:
            return None
        decision = await self.store.check_and_record(
            scope, limit, window_seconds or self.window_seconds
        )
        ADMISSION_DECISIONS.labels(
            scope=scope.split(":", 1)[0], result="allow" if decision.allowed else "block"
        ).inc()
        return decision

    async def admit(self, ctx: TenantContext) -> AdmissionDecision:
        """Admet ou refuse une requête; un refus utilisateur restitue le quota tenant."""
        decisions: list[QuotaDecision] = []

        t_scope = tenant_scope(ctx)
        tenant_decision = await self.check_and_record(t_scope, self.limit_for_tenant(ctx.tenant_id))
        if tenant_decision is not None:
            decisions.append(tenant_decision)
            if not tenant_decision.allowed:
                return self._reject(ctx, tenant_decision, decisions)

        user_decision = await self.check_and_record(user_scope(ctx), self.user_limit)
        if user_decision is not None:
            decisions.append(user_decision)
            if not user_decision.allowed:
                if tenant_decision is not None:
                    await self.store.release(t_scope)
                return self._reject(ctx, user_decision, decisions)

        return AdmissionDecision(allowed=True, decisions=decisions)

    def _reject(
        self, ctx: TenantContext, decision: QuotaDecision, decisions: list[QuotaDecision]
    ) -> AdmissionDecision:
        log.warning(
            "quota_exceeded",
            tenant=ctx.tenant_id,
            scope_kind=decision.scope.split(":", 1)[0],
            limit=decision.limit,
            retry_after=decision.retry_after,
        )
        return AdmissionDecision(
            allowed=False,
            rejected_scope=decision.scope,
            retry_after=decision.retry_after,
            decisions=decisions,
        )
