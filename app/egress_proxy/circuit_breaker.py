"""Two-state (closed/open) circuit breaker keyed by mapping prefix.

State lives in the proxy state store so every instance sees the same breaker.
There is no explicit half-open state: once the cooldown has passed, the next
request runs against a fresh ``{errors: 0, open_since: 0}`` baseline and its
outcome is written back like any other call.

Read and write are separate store calls. Concurrent requests for one prefix
can therefore miscount by a few errors.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from app.egress_proxy.state_store import ProxyStateStoreBase, ProxyStateStoreError
from app.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

BREAKER_STATE_TTL_SECONDS = 3600


def _epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BreakerSettings:
    error_threshold: int
    latency_threshold_ms: int
    cooldown_seconds: int

    def __post_init__(self):
        for name in ("error_threshold", "latency_threshold_ms", "cooldown_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    @property
    def cooldown_ms(self) -> int:
        return self.cooldown_seconds * 1000


@dataclass(frozen=True)
class BreakerState:
    errors: int = 0
    open_since: int = 0

    @property
    def is_open(self) -> bool:
        return self.open_since != 0


CLOSED = BreakerState()


@dataclass(frozen=True)
class BreakerDecision:
    allowed: bool
    baseline: BreakerState
    reason: str


class CircuitBreaker:
    def __init__(
        self,
        store: ProxyStateStoreBase,
        settings: BreakerSettings,
        clock: Callable[[], int] = _epoch_ms,
    ):
        self.store = store
        self.settings = settings
        self._clock = clock

    @staticmethod
    def state_key(key: str) -> str:
        return f"breaker:{key}"

    async def load(self, key: str, correlation_id: Optional[str] = None) -> BreakerState:
        try:
            record = await self.store.get(self.state_key(key))
        except ProxyStateStoreError as e:
            log_exception_with_details(
                logger,
                f"[CircuitBreaker] [{correlation_id}] Failed to read breaker state for {key}, default closed;",
                e,
                level=logging.WARNING,
            )
            return CLOSED
        if not record:
            return CLOSED
        return BreakerState(
            errors=int(record.get("errors") or 0),
            open_since=int(record.get("openSince") or 0),
        )

    async def check(self, key: str, correlation_id: Optional[str] = None) -> BreakerDecision:
        """Decide whether a request for ``key`` may go upstream. Never writes."""
        state = await self.load(key, correlation_id)
        if not state.is_open:
            logger.info(
                f"[CircuitBreaker] [{correlation_id}] {key} closed (errors={state.errors}), proceeding"
            )
            return BreakerDecision(True, state, "closed")

        elapsed = self._clock() - state.open_since
        if elapsed < self.settings.cooldown_ms:
            logger.warning(
                f"[CircuitBreaker] [{correlation_id}] {key} open for {elapsed}ms "
                f"(cooldown {self.settings.cooldown_ms}ms), rejecting request"
            )
            return BreakerDecision(False, state, "open")

        logger.info(
            f"[CircuitBreaker] [{correlation_id}] {key} cooldown passed, closing breaker"
        )
        return BreakerDecision(True, CLOSED, "cooldown_elapsed")

    def is_failure(self, status_code: int, latency_ms: float) -> bool:
        return status_code >= 500 or latency_ms > self.settings.latency_threshold_ms

    def next_state(
        self, baseline: BreakerState, status_code: int, latency_ms: float
    ) -> BreakerState:
        errors = baseline.errors
        open_since = baseline.open_since
        if self.is_failure(status_code, latency_ms):
            errors += 1
            if errors >= self.settings.error_threshold:
                open_since = self._clock()
        else:
            errors = max(0, errors - 1)
        return BreakerState(errors=errors, open_since=open_since)

    async def record(
        self,
        key: str,
        baseline: BreakerState,
        status_code: int,
        latency_ms: float,
        correlation_id: Optional[str] = None,
    ) -> BreakerState:
        """Fold one upstream outcome into the breaker and persist it.

        A failed write is logged only; the upstream call has already happened.
        """
        state = self.next_state(baseline, status_code, latency_ms)
        if state.is_open and not baseline.is_open:
            logger.error(
                f"[CircuitBreaker] [{correlation_id}] {key} tripped open after {state.errors} errors"
            )
        logger.info(
            f"[CircuitBreaker] [{correlation_id}] {key} status={status_code} "
            f"latency={latency_ms:.0f}ms errors={state.errors} openSince={state.open_since}"
        )
        try:
            await self.store.put(
                self.state_key(key),
                {"errors": state.errors, "openSince": state.open_since},
                BREAKER_STATE_TTL_SECONDS,
            )
        except ProxyStateStoreError as e:
            log_exception_with_details(
                logger,
                f"[CircuitBreaker] [{correlation_id}] Failed to save breaker state for {key};",
                e,
            )
        return state
