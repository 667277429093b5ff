"""
Types de conversation et de contexte assemblé.

Ce module définit les tours de conversation (ordre d'insertion = ordre chronologique) et le contexte
borné en tokens produit par l'assembleur.
"""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ConversationTurn(BaseModel):
    """Un tour de conversation (utilisateur ou assistant)."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


def history_fingerprint(history: list[ConversationTurn]) -> str:
    """Empreinte stable de l'historique (rôle + contenu, horodatage exclu)."""
    payload = json.dumps(
        [[turn.role, turn.content] for turn in history], ensure_ascii=False, separators=(",", ":")
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ContextItem(BaseModel):
    """Élément du contexte assemblé avec son coût estimé en tokens."""

    kind: Literal["turn", "passage"]
    content: str
    token_cost: int
    role: Literal["user", "assistant"] | None = None
    record_id: str | None = None
    summarized: bool = False
    truncated: bool = False


class AssembledContext(BaseModel):
    """
    Contexte borné transmis à la génération.

    `turns` est dans l'ordre chronologique, `passages` dans l'ordre de pertinence.
    Invariant: `total_tokens <= token_budget`.
    """

    turns: list[ContextItem] = Field(default_factory=list)
    passages: list[ContextItem] = Field(default_factory=list)
    token_budget: int
    dropped_turns: int = 0
    skipped_passages: int = 0

    @property
    def total_tokens(self) -> int:
        return sum(i.token_cost for i in self.turns) + sum(i.token_cost for i in self.passages)

    @model_validator(mode="after")
    def _within_budget(self) -> AssembledContext:
        if self.total_tokens > self.token_budget:
            raise ValueError(
                f"assembled context exceeds budget ({self.total_tokens} > {self.token_budget})"
            )
        return self
