import logging
import time
from typing import Callable, Optional

from app.egress_proxy.state_store import ProxyStateStoreBase, ProxyStateStoreError
from app.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

# Counters only matter for their own second; keep them a minute for inspection
RATE_COUNTER_TTL_SECONDS = 60


class RateLimiter:
    """Fixed one-second window counter per key, checked after incrementing."""

    def __init__(
        self, store: ProxyStateStoreBase, clock: Callable[[], float] = time.time
    ):
        self.store = store
        self._clock = clock

    @staticmethod
    def window_key(key: str, unix_second: int) -> str:
        return f"rate:{key}:{unix_second}"

    async def allow(
        self, key: str, limit_per_second: int, correlation_id: Optional[str] = None
    ) -> bool:
        second = int(self._clock())
        window_key = self.window_key(key, second)
        try:
            count = await self.store.increment(window_key, RATE_COUNTER_TTL_SECONDS)
        except ProxyStateStoreError as e:
            log_exception_with_details(
                logger,
                f"[RateLimiter] [{correlation_id}] Rate-limit check failed for {key}, allowing;",
                e,
                level=logging.WARNING,
            )
            return True

        allowed = count <= limit_per_second
        logger.info(
            f"[RateLimiter] [{correlation_id}] {key} second={second} "
            f"count={count} limit={limit_per_second} allowed={allowed}"
        )
        return allowed
