"""Token counting strategies and budget-bounded truncation.

All strategies are deterministic and monotonic in the length of the text, which is what the
context assembler relies on for its budget invariant. Never logs text; only counts.
"""

from __future__ import annotations

import functools
import math

import tiktoken

from tenantrag.core.constants import CHARS_PER_TOKEN, DEFAULT_TIKTOKEN_ENCODING

STRATEGIES = ("chars", "words", "tiktoken")


@functools.lru_cache(maxsize=4)
def _encoding(name: str):
    return tiktoken.get_encoding(name)


def _from_chars(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _from_words(text: str) -> int:
    return len(text.split())


def _from_tiktoken(text: str) -> int:
    return len(_encoding(DEFAULT_TIKTOKEN_ENCODING).encode(text))


_COUNTERS = {
    "chars": _from_chars,
    "words": _from_words,
    "tiktoken": _from_tiktoken,
}


def estimate_tokens(text: str | None, strategy: str = "chars") -> int:
    """Estimate tokens of `text` using strategy chars|words|tiktoken."""
    counter = _COUNTERS.get((strategy or "chars").lower())
    if counter is None:
        raise ValueError(f"unknown token count strategy: {strategy}")
    return counter(text or "")


class TokenCounter:
    """Compteur de tokens lié à une stratégie, avec troncature bornée."""

    def __init__(self, strategy: str = "chars") -> None:
        strategy = (strategy or "chars").lower()
        if strategy not in _COUNTERS:
            raise ValueError(f"unknown token count strategy: {strategy}")
        self.strategy = strategy

    def count(self, text: str | None) -> int:
        return estimate_tokens(text, self.strategy)

    def truncate(self, text: str, max_tokens: int) -> str:
        """Return the longest prefix of `text` whose cost fits in `max_tokens`."""
        if max_tokens <= 0:
            return ""
        if self.count(text) <= max_tokens:
            return text
        lo, hi = 0, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.count(text[:mid]) <= max_tokens:
                lo = mid
            else:
                hi = mid - 1
        return text[:lo]
