"""Assemblage du contexte borné en tokens.

Algorithme
----------
1. Passages récupérés d'abord, dans l'ordre de pertinence, bornés par un sous-budget réservé
   (`retrieval_ratio * budget`, au plus `budget - 1`); un passage trop long est ignoré.
2. Tours de conversation ensuite, du plus récent au plus ancien, avec le budget restant:
   - inclus tel quel s'il tient;
   - sinon remplacé par son résumé (capacité externe) si le résumé tient;
   - sinon arrêt: ce tour et tous les plus anciens sont écartés.
3. Le tour le plus récent n'est jamais écarté: à défaut, il est tronqué.

Invariant: `AssembledContext.total_tokens <= token_budget`.
"""

from __future__ import annotations

import structlog

from tenantrag.app.metrics import CONTEXT_TOKENS, CONTEXT_TURNS_DROPPED, CONTEXT_TURNS_SUMMARIZED
from tenantrag.domain.conversation import AssembledContext, ContextItem, ConversationTurn
from tenantrag.domain.errors import InvalidInput, PipelineError
from tenantrag.domain.retrieval_types import ScoredRecord
from tenantrag.domain.token_counting import TokenCounter
from tenantrag.infra.llm.summarizer import Summarizer

log = structlog.get_logger(__name__)


class ContextAssembler:
    """Construit un `AssembledContext` à partir de l'historique et des passages."""

    def __init__(
        self,
        counter: TokenCounter | None = None,
        summarizer: Summarizer | None = None,
        retrieval_ratio: float = 0.5,
    ) -> None:
        if not 0.0 <= retrieval_ratio < 1.0:
            raise ValueError("retrieval_ratio must be in [0, 1)")
        self.counter = counter or TokenCounter()
        self.summarizer = summarizer
        self.retrieval_ratio = retrieval_ratio

    def retrieval_budget(self, token_budget: int) -> int:
        return min(int(token_budget * self.retrieval_ratio), token_budget - 1)

    async def assemble(
        self,
        history: list[ConversationTurn],
        passages: list[ScoredRecord],
        token_budget: int,
    ) -> AssembledContext:
        """
        Assemble le contexte pour la génération.

        Args:
            history: Tours de conversation, du plus ancien au plus récent.
            passages: Passages récupérés, du plus pertinent au moins pertinent.
            token_budget: Budget total estimé en tokens.

        Returns:
            AssembledContext: Contexte dont le total ne dépasse jamais `token_budget`.

        Raises:
            InvalidInput: si `token_budget <= 0`.
        """
        if token_budget <= 0:
            raise InvalidInput("token_budget must be positive")

        passage_items, skipped = self._select_passages(passages, self.retrieval_budget(token_budget))
        remaining = token_budget - sum(p.token_cost for p in passage_items)
        turn_items = await self._select_turns(history, remaining)

        ctx = AssembledContext(
            turns=turn_items,
            passages=passage_items,
            token_budget=token_budget,
            dropped_turns=len(history) - len(turn_items),
            skipped_passages=skipped,
        )
        CONTEXT_TOKENS.observe(ctx.total_tokens)
        if ctx.dropped_turns:
            CONTEXT_TURNS_DROPPED.inc(ctx.dropped_turns)
        return ctx

    def _select_passages(
        self, passages: list[ScoredRecord], budget: int
    ) -> tuple[list[ContextItem], int]:
        items: list[ContextItem] = []
        used = skipped = 0
        for scored in passages:
            cost = self.counter.count(scored.record.text)
            if used + cost > budget:
                skipped += 1
                continue
            items.append(
                ContextItem(
                    kind="passage",
                    content=scored.record.text,
                    token_cost=cost,
                    record_id=scored.record.id,
                )
            )
            used += cost
        return items, skipped

    async def _select_turns(
        self, history: list[ConversationTurn], budget: int
    ) -> list[ContextItem]:
        selected: list[ContextItem] = []
        remaining = budget
        for position, turn in enumerate(reversed(history)):
            most_recent = position == 0
            cost = self.counter.count(turn.content)
            if cost <= remaining:
                selected.append(self._turn_item(turn, turn.content, cost))
                remaining -= cost
                continue

            summary = await self._summarize(turn.content, remaining)
            if summary is not None:
                s_cost = self.counter.count(summary)
                selected.append(self._turn_item(turn, summary, s_cost, summarized=True))
                CONTEXT_TURNS_SUMMARIZED.inc()
                remaining -= s_cost
                continue

            if most_recent and remaining > 0:
                truncated = self.counter.truncate(turn.content, remaining)
                t_cost = self.counter.count(truncated)
                selected.append(self._turn_item(turn, truncated, t_cost, truncated=True))
                remaining -= t_cost
                continue
            break
        selected.reverse()
        return selected

    async def _summarize(self, text: str, max_tokens: int) -> str | None:
        """Résumé qui tient dans `max_tokens`, ou None."""
        if self.summarizer is None or max_tokens <= 0:
            return None
        try:
            summary = await self.summarizer.summarize(text, max_tokens)
        except PipelineError as exc:
            log.warning("summarization_failed", code=exc.code)
            return None
        if not summary or self.counter.count(summary) > max_tokens:
            return None
        return summary

    @staticmethod
    def _turn_item(
        turn: ConversationTurn,
        content: str,
        cost: int,
        summarized: bool = False,
        truncated: bool = False,
    ) -> ContextItem:
        return ContextItem(
            kind="turn",
            role=turn.role,
            content=content,
            token_cost=cost,
            summarized=summarized,
            truncated=truncated,
        )
