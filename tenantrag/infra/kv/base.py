"""Abstraction clé-valeur avec TTL et tags, partagée par les deux caches.

Les implémentations lèvent `CacheUnavailable` sur toute erreur du backend; les caches décident
ensuite de contourner le store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable


class KeyValueStore(ABC):
    """Store clé-valeur asynchrone avec expiration et invalidation par tag."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Retourne la valeur non expirée de `key`, sinon None."""
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int, tags: Iterable[str] = ()) -> None:
        """Écrit `value` sous `key` pour `ttl_seconds` et l'associe aux `tags`."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def tags(self) -> set[str]:
        """Retourne les tags connus du store."""
        raise NotImplementedError

    @abstractmethod
    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Supprime toutes les entrées portant l'un des `tags`; retourne le nombre supprimé."""
        raise NotImplementedError

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Incrémente un compteur persistant (sans TTL) et retourne sa nouvelle valeur."""
        raise NotImplementedError
