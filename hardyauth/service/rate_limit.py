from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from hardyauth.logging import get_logger
from hardyauth.service.clock import Clock, SystemClock
from hardyauth.service.errors import RateLimitExceeded
from hardyauth.storage.errors import StorageError
from hardyauth.storage.interfaces import AsyncCounterStore, CounterStore
from hardyauth.storage.models import RateLimitCounter

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    key: str
    limit: int
    count: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit


class RateLimiter:
    """Fixed-window request counter.

    Redis is preferred when configured so limits hold across workers; the
    primary store's counter is used otherwise. Either way the
    increment-or-reset happens atomically inside the store. Any storage
    failure denies the request.
    """

    def __init__(
        self,
        store: CounterStore,
        cache: Optional[AsyncCounterStore] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()

    async def increment(self, key: str, window_seconds: float) -> RateLimitCounter:
        now = self.clock.now()
        if self.cache is not None:
            return await self.cache.increment_counter(key, window_seconds, now)
        return self.store.increment_counter(key, window_seconds, now)

    async def check(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        try:
            counter = await self.increment(key, window_seconds)
        except StorageError as exc:
            logger.error("rate_limit_store_unavailable", key=key, error=str(exc))
            raise RateLimitExceeded(
                "rate limiter unavailable", retry_after=1, reason="rate_limit_unavailable"
            ) from exc
        decision = RateLimitDecision(
            key=key, limit=limit, count=counter.count, reset_at=counter.reset_at
        )
        if not decision.allowed:
            retry_after = max(
                1, math.ceil((counter.reset_at - self.clock.now()).total_seconds())
            )
            logger.warning(
                "rate_limit_exceeded", key=key, count=counter.count, limit=limit
            )
            raise RateLimitExceeded(retry_after=retry_after)
        return decision
