"""Retry avec backoff pour les appels aux capacités externes.

Les stratégies (exponentielle, linéaire, fixe), le jitter et le plafond de délai suivent la même
politique que la passerelle; seules les erreurs `PipelineError.retryable` sont rejouées.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import structlog

from tenantrag.app.metrics import PIPELINE_RETRY_ATTEMPTS
from tenantrag.domain.errors import PipelineError

log = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryStrategy(Enum):
    """Stratégies de retry disponibles."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass
class RetryPolicy:
    """Politique de retry d'une étape externe."""

    max_attempts: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay: float = 0.1
    max_delay: float = 2.0
    jitter: bool = True


def calculate_retry_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate retry delay (attempt is 0-based) according to configured strategy."""
    if policy.strategy == RetryStrategy.EXPONENTIAL:
        delay = policy.base_delay * (2**attempt)
    elif policy.strategy == RetryStrategy.LINEAR:
        delay = policy.base_delay * (attempt + 1)
    else:  # FIXED
        delay = policy.base_delay

    if policy.jitter:
        delay *= random.uniform(0.5, 1.5)

    return min(delay, policy.max_delay)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    stage: str,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Exécute `fn` avec retries bornés.

    Les erreurs non rejouables (et toute exception hors `PipelineError`) sont propagées
    immédiatement; la dernière erreur rejouable est propagée une fois les tentatives épuisées.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            result = await fn()
        except PipelineError as exc:
            if not exc.retryable:
                raise
            if attempt + 1 >= attempts:
                PIPELINE_RETRY_ATTEMPTS.labels(stage=stage, result="exhausted").inc()
                log.warning("retry_exhausted", stage=stage, attempts=attempts, code=exc.code)
                raise
            delay = calculate_retry_delay(attempt, policy)
            PIPELINE_RETRY_ATTEMPTS.labels(stage=stage, result="retry").inc()
            log.info("retry_scheduled", stage=stage, attempt=attempt + 1, delay_s=round(delay, 3))
            await sleep(delay)
        else:
            if attempt:
                PIPELINE_RETRY_ATTEMPTS.labels(stage=stage, result="recovered").inc()
            return result
    raise AssertionError("unreachable")
