import asyncio

import pytest

from circuit_breaker import (
    BREAKER_MAX_COOLOFF_MS,
    BreakerState,
    CircuitBreakerRegistry,
    TokenBucket,
    breaker_cooloff_ms,
)


@pytest.mark.parametrize("failures", [1, 2, 3, 4, 5, 6, 12, 40])
def test_cooloff_doubles_until_ceiling(failures):
    assert breaker_cooloff_ms(failures) == min(300_000, 15_000 * 2 ** (failures - 1))


def test_consecutive_failures_open_breaker_and_success_resets():
    state = BreakerState()
    now = 1_000_000
    for _ in range(3):
        state.record_failure(RuntimeError("boom"), now)
    assert state.failures == 3
    assert state.open_until_ms == now + 60_000
    assert state.is_open(now + 59_999)
    assert not state.is_open(now + 60_000)

    state.record_success(now + 60_000)
    assert state.failures == 0
    assert not state.is_open(now + 60_000)
    assert state.last_error is None


def test_open_breaker_skips_without_calling_dependency():
    registry = CircuitBreakerRegistry()
    calls = []

    async def failing():
        calls.append(1)
        raise ConnectionError("feed down")

    first = asyncio.run(registry.run_with_breaker("reddit", failing, now=0))
    assert not first.success and not first.skipped
    assert "feed down" in first.error

    second = asyncio.run(registry.run_with_breaker("reddit", failing, now=1_000))
    assert second.skipped
    assert len(calls) == 1

    async def healthy():
        return [{"symbol": "AAPL"}]

    third = asyncio.run(registry.run_with_breaker("reddit", healthy, now=15_000))
    assert third.success
    assert third.processed == 1
    assert registry.get("reddit").failures == 0


def test_registry_round_trips_through_dict():
    registry = CircuitBreakerRegistry()
    registry.get("sec").record_failure("timeout", 10)
    restored = CircuitBreakerRegistry.from_dict(registry.to_dict())
    assert restored.get("sec").failures == 1
    assert restored.is_open("sec", 11)
    assert restored.names() == ["sec"]


def test_token_spend_is_all_or_nothing():
    bucket = TokenBucket(daily_limit=200, capacity=5, tokens=5.0)
    now = 1_000
    assert bucket.try_spend(3, now)
    assert bucket.tokens == pytest.approx(2.0)
    assert bucket.daily_count == 3

    assert not bucket.try_spend(3, now)
    assert bucket.tokens == pytest.approx(2.0)
    assert bucket.daily_count == 3


def test_daily_counter_blocks_even_with_tokens_and_resets_after_a_day():
    bucket = TokenBucket(daily_limit=4, capacity=10, tokens=10.0)
    now = 5_000
    assert bucket.try_spend(4, now)
    assert not bucket.try_spend(1, now)
    assert bucket.daily_remaining() == 0

    later = now + 86_400_000 + 1
    assert bucket.try_spend(1, later)
    assert bucket.daily_count == 1


def test_bucket_refills_at_daily_rate():
    bucket = TokenBucket(daily_limit=86_400, capacity=20, tokens=0.0, last_refill_ms=1_000)
    bucket.refill(6_000)
    assert bucket.tokens == pytest.approx(5.0)
    assert bucket.projected_tokens(1_000_000) == pytest.approx(20.0)


def test_cooloff_ceiling_constant():
    assert breaker_cooloff_ms(100) == BREAKER_MAX_COOLOFF_MS


def test_zero_spend_is_a_free_success():
    bucket = TokenBucket(daily_limit=4, capacity=5, tokens=0.0, last_refill_ms=1_000)
    assert bucket.can_spend(0, 1_000)
    assert bucket.try_spend(0, 1_000)
    assert bucket.try_spend(-2, 1_000)
    assert bucket.tokens == 0.0
    assert bucket.daily_count == 0


def test_fractional_spend_rounds_down_to_at_least_one():
    bucket = TokenBucket(daily_limit=200, capacity=5, tokens=5.0)
    assert bucket.try_spend(0.5, 1_000)
    assert bucket.try_spend(2.9, 1_000)
    assert bucket.daily_count == 3
    assert bucket.tokens == pytest.approx(2.0)
