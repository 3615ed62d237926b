"""
Per-provider quota bookkeeping.

The QuotaTracker is the only mutable state shared between concurrently
syncing sports. Every read-modify-write happens under one asyncio.Lock.
One tracker is created per process (or per test) and injected into each
ProviderClient; there is no module-level instance.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_QUOTA_REMAINING
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


class ProviderQuota:
    """Counters for one provider."""

    def __init__(self) -> None:
        self.requests_total = 0
        self.requests_this_cycle = 0
        self.used: Optional[int] = None
        self.remaining: Optional[int] = None
        self.exhausted = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "requests_total": self.requests_total,
            "requests_this_cycle": self.requests_this_cycle,
            "used": self.used,
            "remaining": self.remaining,
            "exhausted": self.exhausted,
        }


class QuotaTracker:
    """Atomic quota counters plus the once-per-cycle log gate."""

    def __init__(self, redis: RedisManager | None = None) -> None:
        self._redis = redis
        self._quotas: dict[str, ProviderQuota] = {}
        self._logged: set[tuple[str, str]] = set()
        self._cycle = 0
        self._lock = asyncio.Lock()

    @property
    def cycle(self) -> int:
        return self._cycle

    def _quota(self, provider: str) -> ProviderQuota:
        quota = self._quotas.get(provider)
        if quota is None:
            quota = self._quotas[provider] = ProviderQuota()
        return quota

    async def begin_cycle(self) -> int:
        """Start a new sync cycle: exhausted providers get another chance, log gates reset."""
        async with self._lock:
            self._cycle += 1
            self._logged.clear()
            for quota in self._quotas.values():
                quota.exhausted = False
                quota.requests_this_cycle = 0
            return self._cycle

    async def record_request(self, provider: str) -> int:
        async with self._lock:
            quota = self._quota(provider)
            quota.requests_total += 1
            quota.requests_this_cycle += 1
            return quota.requests_this_cycle

    async def record_usage(
        self, provider: str, used: Optional[int], remaining: Optional[int]
    ) -> None:
        """Apply counters reported by the provider itself."""
        async with self._lock:
            quota = self._quota(provider)
            if used is not None:
                quota.used = used
            if remaining is not None:
                quota.remaining = remaining
                if remaining <= 0:
                    quota.exhausted = True
            state = quota.as_dict()

        if remaining is not None:
            PROVIDER_QUOTA_REMAINING.labels(provider=provider).set(remaining)
        if self._redis is not None:
            try:
                await self._redis.publish_quota(provider, state)
            except Exception as exc:
                logger.warning("quota_mirror_failed", provider=provider, error=str(exc))

    async def mark_exhausted(self, provider: str) -> bool:
        """Flag a provider as out of quota. Returns True if it was not already flagged."""
        async with self._lock:
            quota = self._quota(provider)
            newly = not quota.exhausted
            quota.exhausted = True
            return newly

    async def is_exhausted(self, provider: str) -> bool:
        async with self._lock:
            quota = self._quotas.get(provider)
            return bool(quota and quota.exhausted)

    async def should_log(self, provider: str, kind: str) -> bool:
        """True the first time (provider, kind) is seen in the current cycle."""
        async with self._lock:
            key = (provider, kind)
            if key in self._logged:
                return False
            self._logged.add(key)
            return True

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: q.as_dict() for name, q in sorted(self._quotas.items())}
