"""Tests pour les stratégies de backoff et le retry borné des étapes externes."""

from __future__ import annotations

import pytest

from tenantrag.domain.errors import (
    EmbeddingUnavailable,
    GenerationUnavailable,
    InvalidInput,
)
from tenantrag.services.retry import (
    RetryPolicy,
    RetryStrategy,
    calculate_retry_delay,
    retry_async,
)

# Constantes pour éviter les erreurs PLR2004 (Magic values)
BASE_DELAY = 0.1
MAX_DELAY = 0.5
THREE_ATTEMPTS = 3


class _Flaky:
    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return "ok"


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestCalculateRetryDelay:
    """Tests pour calculate_retry_delay."""

    def test_exponential(self) -> None:
        policy = RetryPolicy(base_delay=BASE_DELAY, max_delay=MAX_DELAY, jitter=False)
        delays = [calculate_retry_delay(i, policy) for i in range(4)]
        assert delays == pytest.approx([0.1, 0.2, 0.4, MAX_DELAY])

    def test_linear_and_fixed(self) -> None:
        linear = RetryPolicy(strategy=RetryStrategy.LINEAR, base_delay=BASE_DELAY, jitter=False)
        fixed = RetryPolicy(strategy=RetryStrategy.FIXED, base_delay=BASE_DELAY, jitter=False)
        assert calculate_retry_delay(2, linear) == pytest.approx(0.3)
        assert calculate_retry_delay(5, fixed) == pytest.approx(BASE_DELAY)

    def test_jitter_stays_within_bounds(self) -> None:
        policy = RetryPolicy(base_delay=BASE_DELAY, max_delay=10.0, jitter=True)
        for _ in range(50):
            assert 0.05 <= calculate_retry_delay(0, policy) <= 0.15


class TestRetryAsync:
    """Tests pour retry_async."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self) -> None:
        fn = _Flaky(1, GenerationUnavailable("blip"))
        sleep = _SleepRecorder()
        policy = RetryPolicy(max_attempts=THREE_ATTEMPTS, base_delay=BASE_DELAY, jitter=False)

        assert await retry_async(fn, stage="generation", policy=policy, sleep=sleep) == "ok"
        assert fn.calls == 2
        assert sleep.delays == pytest.approx([BASE_DELAY])

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self) -> None:
        fn = _Flaky(10, EmbeddingUnavailable("down"))
        sleep = _SleepRecorder()
        policy = RetryPolicy(max_attempts=THREE_ATTEMPTS, base_delay=BASE_DELAY, jitter=False)

        with pytest.raises(EmbeddingUnavailable):
            await retry_async(fn, stage="embedding", policy=policy, sleep=sleep)
        assert fn.calls == THREE_ATTEMPTS
        assert sleep.delays == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_non_retryable_errors_propagate_immediately(self) -> None:
        fn = _Flaky(1, InvalidInput("bad"))
        with pytest.raises(InvalidInput):
            await retry_async(fn, stage="search", policy=RetryPolicy(), sleep=_SleepRecorder())
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_foreign_exceptions_are_not_retried(self) -> None:
        fn = _Flaky(1, RuntimeError("bug"))
        with pytest.raises(RuntimeError):
            await retry_async(fn, stage="search", policy=RetryPolicy(), sleep=_SleepRecorder())
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_zero_attempts_still_runs_once(self) -> None:
        fn = _Flaky(0, GenerationUnavailable())
        policy = RetryPolicy(max_attempts=0)
        assert await retry_async(fn, stage="generation", policy=policy) == "ok"
        assert fn.calls == 1
