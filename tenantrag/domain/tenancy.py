"""Tenancy utilities and the per-request tenant context.

`TenantContext` is built by an external auth collaborator (see `tenantrag.api.deps`) and trusted
as-is by the pipeline; it is immutable for the lifetime of a request.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

_SAFE_TENANT_RE = re.compile(r"^[a-z0-9_-]{1,64}$")


def normalize_tenant(value: str | None) -> str | None:
    """Normalize tenant to lowercase trimmed string if it matches the safe regex.

    Returns None if value is falsy or does not match the allowed pattern.
    """
    if not value:
        return None
    t = value.strip().lower()
    if _SAFE_TENANT_RE.match(t):
        return t
    return None


def parse_access_levels(raw: str | None) -> frozenset[str]:
    """Parse a CSV of access level tags (`"finance, hr"`) into a normalized set."""
    if not raw:
        return frozenset()
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


class PageContext(BaseModel):
    """Page currently displayed to the user, used as a soft retrieval hint."""

    model_config = ConfigDict(frozen=True)

    type: str | None = None
    id: str


class TenantContext(BaseModel):
    """Identity and permissions of the requester."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    user_id: str
    access_levels: frozenset[str] = Field(default_factory=frozenset)
    page_context: PageContext | None = None
    attributes: dict[str, str] = Field(default_factory=dict)

    @field_validator("tenant_id", "user_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("access_levels", mode="before")
    @classmethod
    def _normalize_levels(cls, value):
        if value is None:
            return frozenset()
        return frozenset(str(v).strip().lower() for v in value if str(v).strip())

    def sorted_access_levels(self) -> list[str]:
        return sorted(self.access_levels)
