"""Configuration de logging basée sur structlog.

Objectif du module
------------------
- Fournir une configuration de logs structurés, lisibles en développement et en JSON ailleurs.
- Propager les variables de contexte (request_id) liées par les middlewares.
- Ne jamais journaliser les textes de requête: les événements du pipeline ne portent que des
  identifiants, états et compteurs.
"""

import logging
import sys

import structlog


def build_processors(json_logs: bool = False) -> list:
    """Chaîne de processeurs: contexte, horodatage, niveau, exceptions, puis rendu."""
    renderer = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="ISO", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def resolve_level(level: int | str) -> int:
    """Convertit un niveau (`"info"`, `20`) en entier; niveau inconnu -> INFO."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: int | str = logging.DEBUG, json_logs: bool = False) -> None:
    """Configure structlog pour produire des logs détaillés et filtrables."""
    structlog.configure(
        processors=build_processors(json_logs),
        wrapper_class=structlog.make_filtering_bound_logger(resolve_level(level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
