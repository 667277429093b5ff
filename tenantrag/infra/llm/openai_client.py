"""
Client LLM basé sur l'API OpenAI (SDK asynchrone).

Implémente l'interface LLM via `chat.completions`. Les erreurs du SDK et les réponses vides sont
converties en `GenerationUnavailable` pour être rejouées par la politique de retry.
"""

from __future__ import annotations

from typing import Any, Literal, overload

import openai
from openai import AsyncOpenAI

from tenantrag.domain.errors import GenerationUnavailable
from tenantrag.infra.llm.base import LLM


class OpenAILLM(LLM):
    """LLM basé sur OpenAI chat.completions."""

    def __init__(
        self, api_key: str | None = None, model: str = "gpt-4o-mini", timeout: float = 20.0
    ) -> None:
        """Initialize the OpenAILLM client."""
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout) if api_key else None

    # ---- Overloads pour coller à l'interface de base ----
    @overload
    async def generate(
        self,
        messages: list[dict[str, str]],
        *,
        with_usage: Literal[True],
        **kwargs: Any,
    ) -> tuple[str, dict[str, int]]: ...

    @overload
    async def generate(
        self,
        messages: list[dict[str, str]],
        *,
        with_usage: Literal[False] = False,
        **kwargs: Any,
    ) -> str: ...

    async def generate(
        self,
        messages: list[dict[str, str]],
        *,
        with_usage: bool = False,
        **kwargs: Any,
    ) -> str | tuple[str, dict[str, int]]:
        """
        Génère du texte (et éventuellement les métriques d'usage).

        - with_usage=False (défaut) -> str
        - with_usage=True -> (str, dict[str, int])
        """
        if self.client is None:
            raise GenerationUnavailable("generation client not configured")
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,  # type: ignore[arg-type]
                **kwargs,
            )
        except openai.OpenAIError as exc:
            raise GenerationUnavailable(f"openai generation failed: {type(exc).__name__}") from exc

        choice = resp.choices[0] if resp.choices else None
        content = getattr(getattr(choice, "message", None), "content", None)
        if not content:
            raise GenerationUnavailable("empty completion")
        text = str(content)
        return (text, self._extract_usage_dict(resp)) if with_usage else text

    # -------------------- Helpers internes --------------------

    def _extract_usage_dict(self, resp: Any) -> dict[str, int]:
        """
        Extrait les infos d'usage depuis la réponse OpenAI.

        Toujours un dict.
        """
        usage = getattr(resp, "usage", None)
        if not usage:
            return {}
        return {
            "prompt_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
            "completion_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
            "total_tokens": int(getattr(usage, "total_tokens", 0) or 0),
        }
