from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from kalibro.storage.kv import KeyValueStore
from kalibro.storage.models import RateLimitState, from_timestamp


def rate_key(purpose: str, identifier: str) -> str:
    return f"rate_limit:{purpose}:{identifier}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after_seconds: int


class RateLimiter:
    """Fixed-window counters per (purpose, identifier).

    ``StoreUnavailable`` propagates: the limiter is a brute-force defense and
    must not silently allow requests through.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        limit: int = 5,
        window_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    async def hit(self, purpose: str, identifier: str) -> RateLimitDecision:
        """Count one request, or refuse it once the window is full."""
        outcome = await self.kv.hit_window(
            rate_key(purpose, identifier), self.limit, self.window_seconds
        )
        return RateLimitDecision(
            allowed=outcome.allowed,
            count=outcome.count,
            retry_after_seconds=0 if outcome.allowed else outcome.reset_in,
        )

    async def peek(self, purpose: str, identifier: str) -> RateLimitState:
        key = rate_key(purpose, identifier)
        raw = await self.kv.get(key)
        if raw is None:
            return RateLimitState(count=0)
        remaining = await self.kv.ttl(key)
        reset_at = from_timestamp(self._clock() + remaining) if remaining is not None else None
        return RateLimitState(count=int(raw), reset_at=reset_at)

    async def is_limited(self, purpose: str, identifier: str) -> RateLimitDecision:
        state = await self.peek(purpose, identifier)
        if state.count < self.limit:
            return RateLimitDecision(allowed=True, count=state.count, retry_after_seconds=0)
        retry_after = 0
        if state.reset_at is not None:
            retry_after = max(0, int(state.reset_at.timestamp() - self._clock()))
        return RateLimitDecision(allowed=False, count=state.count, retry_after_seconds=retry_after)

    async def reset(self, purpose: str, identifier: str) -> None:
        await self.kv.delete(rate_key(purpose, identifier))


__all__ = ["RateLimitDecision", "RateLimiter", "rate_key"]
