"""
Rate limiting service
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from lessonchat.core.config import settings
from lessonchat.deps.kv_store import KeyValueStore, get_kv_store

logger = logging.getLogger(__name__)

SCOPES = ("learner", "tenant")

# Retry hint sent when the counter store cannot be reached
STORE_UNAVAILABLE_RETRY_AFTER = 60


@dataclass(frozen=True)
class RateWindow:
    scope: str  # "learner" or "tenant"
    name: str  # "minute", "hour", "day"
    seconds: int
    limit: int


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    scope: Optional[str] = None
    window: Optional[str] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reason: Optional[str] = None
    counted: Tuple[str, ...] = ()

    def headers(self) -> Dict[str, str]:
        """Rate limit headers for the HTTP response"""
        headers = {}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
        if self.remaining is not None:
            headers["X-RateLimit-Remaining"] = str(self.remaining)
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """
    Dual-layer fixed-window rate limiter.

    Learner windows are checked before the tenant's daily window and the
    first violated window is reported. Counters live in the shared
    key-value store; every increment is atomic server-side, and the
    increments made for a denied request are rolled back so only admitted
    requests are counted.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, prefix: Optional[str] = None):
        self._store = store
        self.prefix = prefix if prefix is not None else settings.kv_prefix

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = get_kv_store()
        return self._store

    def windows_for(self, tier: str) -> List[RateWindow]:
        daily = settings.tenant_daily_limits
        tenant_limit = daily.get(tier, daily.get("basic", 500))
        return [
            RateWindow("learner", "minute", 60, settings.learner_requests_per_minute),
            RateWindow("learner", "hour", 3600, settings.learner_requests_per_hour),
            RateWindow("tenant", "day", 86400, tenant_limit),
        ]

    def counter_key(self, window: RateWindow, actor_id) -> str:
        return f"{self.prefix}ratelimit:{window.scope}:{window.name}:{actor_id}"

    def _checks(self, learner_id, tenant_id, tier: str) -> List[Tuple[RateWindow, str]]:
        actors = {"learner": learner_id, "tenant": tenant_id}
        return [(window, self.counter_key(window, actors[window.scope])) for window in self.windows_for(tier)]

    async def admit(self, learner_id, tenant_id, tier: str = "basic") -> RateLimitDecision:
        """
        Count one request against every window of the learner and tenant.

        Returns:
            RateLimitDecision; when denied, ``retry_after`` is the remaining
            lifetime of the violated window, at least one second
        """
        if not settings.rate_limit_enabled:
            return RateLimitDecision(allowed=True)

        incremented: List[str] = []
        tightest: Optional[Tuple[int, RateWindow]] = None

        try:
            for window, key in self._checks(learner_id, tenant_id, tier):
                count, ttl = await self.store.increment(key, window.seconds)
                incremented.append(key)

                if count > window.limit:
                    await self._rollback(incremented)
                    logger.warning(
                        f"Rate limit exceeded for {window.scope} "
                        f"{learner_id if window.scope == 'learner' else tenant_id} ({window.name} window, limit {window.limit})"
                    )
                    return RateLimitDecision(
                        allowed=False,
                        retry_after=max(1, ttl if ttl > 0 else window.seconds),
                        scope=window.scope,
                        window=window.name,
                        limit=window.limit,
                        remaining=0,
                        reason="limit_exceeded",
                    )

                remaining = window.limit - count
                if tightest is None or remaining < tightest[0]:
                    tightest = (remaining, window)

        except Exception as e:
            logger.error(f"Rate limit store unavailable, denying request: {e}")
            await self._rollback(incremented)
            return RateLimitDecision(
                allowed=False,
                retry_after=STORE_UNAVAILABLE_RETRY_AFTER,
                scope="learner",
                reason="store_unavailable",
            )

        remaining, window = tightest
        return RateLimitDecision(allowed=True, limit=window.limit, remaining=remaining, counted=tuple(incremented))

    async def release(self, decision: RateLimitDecision) -> None:
        """Give back the counts of an admitted request that was refused further down"""
        if decision.counted:
            await self._rollback(list(decision.counted))

    async def _rollback(self, keys: List[str]) -> None:
        for key in keys:
            try:
                await self.store.decrement(key)
            except Exception as e:
                logger.error(f"Failed to roll back rate counter {key}: {e}")

    async def status(self, learner_id, tenant_id, tier: str = "basic") -> List[Dict[str, object]]:
        """Read the current counters without counting a request"""
        results = []
        for window, key in self._checks(learner_id, tenant_id, tier):
            raw = await self.store.get(key)
            used = int(raw) if raw else 0
            ttl = await self.store.ttl(key) if raw else 0
            results.append({
                "scope": window.scope,
                "window": window.name,
                "limit": window.limit,
                "used": used,
                "remaining": max(0, window.limit - used),
                "resets_in": max(0, ttl),
            })
        return results

    async def reset(self, scope: str, actor_id) -> int:
        """
        Clear every counter of ``scope`` for one actor. Safe to call repeatedly.

        Returns:
            Number of counters deleted
        """
        if scope not in SCOPES:
            raise ValueError(f"Unknown rate limit scope: {scope}")

        # Window names do not depend on tier, so any tier lists every key
        keys = [self.counter_key(window, actor_id) for window in self.windows_for("basic") if window.scope == scope]
        deleted = await self.store.delete(*keys)
        logger.info(f"Rate limiter reset for {scope} {actor_id} ({deleted} counters cleared)")
        return deleted


# Global rate limiter instance
rate_limiter = RateLimiter()
