# Ensure tests import modules from this service directory first, so that
# `import app.*` resolves to this repository regardless of the working directory.
import os
import sys

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from app.egress_proxy.circuit_breaker import BreakerSettings, CircuitBreaker  # noqa: E402
from app.egress_proxy.mappings import PrefixMappingTable  # noqa: E402
from app.egress_proxy.rate_limiter import RateLimiter  # noqa: E402
from app.egress_proxy.redirect_client import RedirectFollowingClient  # noqa: E402
from app.egress_proxy.service import ProxyService  # noqa: E402
from app.egress_proxy.state_store import InMemoryProxyStateStore  # noqa: E402


class FakeClock:
    """Settable wall clock shared by the store, limiter, breaker and latency timer."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def ms(self) -> int:
        return int(self.now * 1000)

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingUpstream:
    """httpx.MockTransport handler that records every request it receives."""

    def __init__(self, handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self, max_redirects: int = 5) -> RedirectFollowingClient:
        return RedirectFollowingClient(
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(self), follow_redirects=False
            ),
            max_redirects=max_redirects,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryProxyStateStore(clock=clock)


@pytest.fixture
def make_service(clock, memory_store):
    """Build a ProxyService around an in-memory store and a fake upstream."""

    def _make(
        handler,
        mappings=(("/proxy", "https://upstream.example"),),
        rate_limit=10,
        error_threshold=3,
        latency_ms=5000,
        cooldown_seconds=60,
        store=None,
        max_redirects=5,
    ):
        store = store or memory_store
        upstream = RecordingUpstream(handler)
        service = ProxyService(
            mappings=PrefixMappingTable(mappings),
            rate_limiter=RateLimiter(store, clock=clock),
            breaker=CircuitBreaker(
                store,
                BreakerSettings(
                    error_threshold=error_threshold,
                    latency_threshold_ms=latency_ms,
                    cooldown_seconds=cooldown_seconds,
                ),
                clock=clock.ms,
            ),
            client=upstream.client(max_redirects=max_redirects),
            rate_limit_per_second=rate_limit,
            store=store,
            monotonic=clock,
        )
        return service, upstream

    return _make
