"""Normalisation de texte utilisée pour les clés de cache."""

from __future__ import annotations

import hashlib
import re
import unicodedata

_WS_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """NFKC, espaces compactés, bords supprimés. La casse est conservée."""
    return _WS_RE.sub(" ", unicodedata.normalize("NFKC", text or "")).strip()


def normalize_query(text: str) -> str:
    """Normalisation de requête pour le cache de réponses (insensible à la casse)."""
    return normalize_text(text).casefold()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
