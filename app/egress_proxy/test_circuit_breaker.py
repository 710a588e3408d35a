from unittest.mock import AsyncMock

import pytest

from app.egress_proxy.circuit_breaker import (
    BREAKER_STATE_TTL_SECONDS,
    CLOSED,
    BreakerSettings,
    BreakerState,
    CircuitBreaker,
)
from app.egress_proxy.state_store import ProxyStateStoreError

SETTINGS = BreakerSettings(error_threshold=3, latency_threshold_ms=1000, cooldown_seconds=60)


@pytest.fixture
def breaker(memory_store, clock):
    return CircuitBreaker(memory_store, SETTINGS, clock=clock.ms)


class TestBreakerSettings:
    @pytest.mark.parametrize(
        "field", ["error_threshold", "latency_threshold_ms", "cooldown_seconds"]
    )
    def test_rejects_non_positive_values(self, field):
        values = {"error_threshold": 1, "latency_threshold_ms": 1, "cooldown_seconds": 1}
        values[field] = 0

        with pytest.raises(ValueError, match=field):
            BreakerSettings(**values)

    def test_cooldown_ms(self):
        assert SETTINGS.cooldown_ms == 60_000


class TestNextState:
    def test_server_error_counts(self, breaker):
        assert breaker.next_state(CLOSED, 500, 10) == BreakerState(errors=1)

    def test_slow_success_counts(self, breaker):
        assert breaker.next_state(CLOSED, 200, 1001) == BreakerState(errors=1)

    def test_latency_at_threshold_is_not_an_error(self, breaker):
        assert breaker.next_state(BreakerState(errors=1), 200, 1000).errors == 0

    def test_client_error_is_a_success(self, breaker):
        assert breaker.next_state(BreakerState(errors=2), 404, 10).errors == 1

    def test_success_floors_at_zero(self, breaker):
        assert breaker.next_state(CLOSED, 200, 10).errors == 0

    def test_trips_at_threshold(self, breaker, clock):
        state = breaker.next_state(BreakerState(errors=2), 503, 10)

        assert state.errors == 3
        assert state.open_since == clock.ms()


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_trips_after_threshold_consecutive_errors(self, breaker, memory_store, clock):
        for _ in range(3):
            decision = await breaker.check("/proxy")
            assert decision.allowed
            await breaker.record("/proxy", decision.baseline, 500, 10)

        decision = await breaker.check("/proxy")

        assert decision.allowed is False
        record = await memory_store.get("breaker:/proxy")
        assert record["errors"] == 3
        assert record["openSince"] == clock.ms()

    @pytest.mark.asyncio
    async def test_open_rejection_does_not_write(self, clock):
        store = AsyncMock()
        store.get.return_value = {"errors": 3, "openSince": clock.ms()}
        breaker = CircuitBreaker(store, SETTINGS, clock=clock.ms)

        decision = await breaker.check("/proxy")

        assert decision.allowed is False
        store.put.assert_not_called()

    @pytest.mark.asyncio
    async def test_cooldown_elapsed_allows_with_closed_baseline(self, breaker, memory_store, clock):
        await memory_store.put("breaker:/proxy", {"errors": 3, "openSince": clock.ms()}, 3600)
        clock.advance(60)

        decision = await breaker.check("/proxy")

        assert decision.allowed is True
        assert decision.baseline == CLOSED
        assert decision.reason == "cooldown_elapsed"

    @pytest.mark.asyncio
    async def test_failed_trial_after_cooldown_starts_count_again(self, breaker, memory_store, clock):
        await memory_store.put("breaker:/proxy", {"errors": 3, "openSince": clock.ms()}, 3600)
        clock.advance(61)

        decision = await breaker.check("/proxy")
        state = await breaker.record("/proxy", decision.baseline, 500, 10)

        assert state == BreakerState(errors=1, open_since=0)

    @pytest.mark.asyncio
    async def test_recovers_via_successes(self, breaker, memory_store):
        await memory_store.put("breaker:/proxy", {"errors": 2, "openSince": 0}, 3600)

        for _ in range(2):
            decision = await breaker.check("/proxy")
            await breaker.record("/proxy", decision.baseline, 200, 10)

        assert (await memory_store.get("breaker:/proxy"))["errors"] == 0

    @pytest.mark.asyncio
    async def test_record_persists_with_ttl(self, clock):
        store = AsyncMock()
        breaker = CircuitBreaker(store, SETTINGS, clock=clock.ms)

        await breaker.record("/proxy", CLOSED, 502, 10)

        store.put.assert_awaited_once_with(
            "breaker:/proxy", {"errors": 1, "openSince": 0}, BREAKER_STATE_TTL_SECONDS
        )

    @pytest.mark.asyncio
    async def test_read_failure_defaults_closed(self, clock):
        store = AsyncMock()
        store.get.side_effect = ProxyStateStoreError("unreachable")
        breaker = CircuitBreaker(store, SETTINGS, clock=clock.ms)

        decision = await breaker.check("/proxy")

        assert decision.allowed is True
        assert decision.baseline == CLOSED

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, clock):
        store = AsyncMock()
        store.put.side_effect = ProxyStateStoreError("unreachable")
        breaker = CircuitBreaker(store, SETTINGS, clock=clock.ms)

        state = await breaker.record("/proxy", CLOSED, 500, 10)

        assert state.errors == 1
