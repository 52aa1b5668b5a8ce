from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from portcullis.logging import get_logger
from portcullis.service.errors import RateLimitedError

logger = get_logger(__name__)


class Tier(str, Enum):
    STRICT = "strict"
    MODERATE = "moderate"
    RELAXED = "relaxed"
    UPLOAD = "upload"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class TierPolicy:
    limit: int
    window_seconds: int
    message: str = "Too many requests"
    detail: str = "You have exceeded the rate limit. Please try again later."


TIER_POLICIES: Dict[Tier, TierPolicy] = {
    # auth-sensitive endpoints
    Tier.STRICT: TierPolicy(15, 15 * 60),
    # mutations
    Tier.MODERATE: TierPolicy(100, 15 * 60),
    # reads
    Tier.RELAXED: TierPolicy(300, 15 * 60),
    Tier.UPLOAD: TierPolicy(
        10,
        60 * 60,
        message="Upload limit exceeded",
        detail="You have exceeded the file upload limit. Please try again later.",
    ),
    Tier.WEBHOOK: TierPolicy(1000, 60 * 60),
}

# Sweep elapsed in-process buckets once the table reaches this size
_SWEEP_THRESHOLD = 10_000


def client_key(source_address: Optional[str], principal_id: Optional[str] = None) -> str:
    """Counter identity: the address, joined with the principal once known."""
    address = source_address or "unknown"
    return f"{address}:{principal_id}" if principal_id else address


@dataclass(frozen=True)
class RateLimitDecision:
    tier: Tier
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def retry_after(self, now: float) -> int:
        return max(1, math.ceil(self.reset_at - now))

    def reset_in(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))

    def headers(self, now: float) -> Dict[str, str]:
        """IETF draft RateLimit-* headers; Retry-After only on rejection."""
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_in(now)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers


class RateLimiter:
    """Fixed-window request counters, one bucket per (tier, client key).

    Every checked request counts, whether or not it later succeeds. With a
    cache the counters live in Redis and are incremented by a Lua script;
    otherwise (or when Redis errors) an in-process table guarded by a single
    asyncio.Lock is used.
    """

    def __init__(
        self,
        cache=None,
        *,
        policies: Optional[Dict[Tier, TierPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.policies = dict(policies or TIER_POLICIES)
        self._clock = clock
        # (tier, key) -> (window_start, count)
        self._local_buckets: Dict[Tuple[Tier, str], Tuple[float, int]] = {}
        self._local_lock = asyncio.Lock()
        # table size that triggers the next sweep
        self._sweep_at = _SWEEP_THRESHOLD

    def now(self) -> float:
        return self._clock()

    def policy(self, tier: Tier) -> TierPolicy:
        return self.policies[Tier(tier)]

    async def check(self, tier: Tier, key: str) -> RateLimitDecision:
        tier = Tier(tier)
        policy = self.policies[tier]
        now = self._clock()
        if self.cache is not None:
            try:
                count, ttl_ms = await self.cache.hit_fixed_window(
                    tier.value, key, policy.window_seconds
                )
                return self._decision(tier, policy, count, now + ttl_ms / 1000.0)
            except Exception as exc:
                logger.warning(
                    "rate_limit_backend_unavailable",
                    tier=tier.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        count, reset_at = await self._hit_local(tier, key, policy, now)
        return self._decision(tier, policy, count, reset_at)

    async def enforce(self, tier: Tier, key: str) -> RateLimitDecision:
        """Like ``check`` but raises RateLimitedError when rejected."""
        decision = await self.check(tier, key)
        if not decision.allowed:
            policy = self.policy(tier)
            now = self._clock()
            logger.warning(
                "rate_limit_exceeded",
                tier=decision.tier.value,
                limit=decision.limit,
                retry_after=decision.retry_after(now),
            )
            raise RateLimitedError(
                policy.message,
                retry_after=decision.retry_after(now),
                decision=decision,
                detail={"message": policy.detail, "retry_after": decision.retry_after(now)},
            )
        return decision

    @staticmethod
    def _decision(
        tier: Tier, policy: TierPolicy, count: int, reset_at: float
    ) -> RateLimitDecision:
        return RateLimitDecision(
            tier=tier,
            allowed=count <= policy.limit,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_at=reset_at,
        )

    async def _hit_local(
        self, tier: Tier, key: str, policy: TierPolicy, now: float
    ) -> Tuple[int, float]:
        async with self._local_lock:
            if len(self._local_buckets) >= self._sweep_at:
                self._sweep_locked(now)
                self._sweep_at = max(_SWEEP_THRESHOLD, 2 * len(self._local_buckets))
            bucket_key = (tier, key)
            window_start, count = self._local_buckets.get(bucket_key, (now, 0))
            if now >= window_start + policy.window_seconds:
                window_start, count = now, 0
            count += 1
            self._local_buckets[bucket_key] = (window_start, count)
            return count, window_start + policy.window_seconds

    def _sweep_locked(self, now: float) -> None:
        expired = [
            bucket_key
            for bucket_key, (start, _) in self._local_buckets.items()
            if now >= start + self.policies[bucket_key[0]].window_seconds
        ]
        for bucket_key in expired:
            del self._local_buckets[bucket_key]
        if expired:
            logger.debug("rate_limit_buckets_swept", removed=len(expired))

    @property
    def local_bucket_count(self) -> int:
        return len(self._local_buckets)
