"""Capacité de résumé consommée par l'assembleur de contexte.

Le résumé lui-même est délégué à un LLM externe; ce module ne fait que formuler la demande.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from tenantrag.infra.llm.base import LLM

SUMMARY_PROMPT = (
    "Summarize the following conversation message in at most {max_tokens} tokens. "
    "Keep names, numbers and identifiers. Reply with the summary only."
)


class Summarizer(ABC):
    """Interface abstraite pour le résumé d'un tour de conversation."""

    @abstractmethod
    async def summarize(self, text: str, max_tokens: int) -> str:
        """Retourne une forme résumée de `text` visant au plus `max_tokens` tokens."""
        ...


class LLMSummarizer(Summarizer):
    """Résumé via le LLM de génération."""

    def __init__(self, llm: LLM) -> None:
        self.llm = llm

    async def summarize(self, text: str, max_tokens: int) -> str:
        messages = [
            {"role": "system", "content": SUMMARY_PROMPT.format(max_tokens=max_tokens)},
            {"role": "user", "content": text},
        ]
        out = await self.llm.generate(messages, max_tokens=max(1, max_tokens))
        return out.strip()
