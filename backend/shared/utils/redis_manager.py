"""
Redis connection manager for GameLine.
Provides the async connection pool, the provider response cache,
a quota mirror for operators, and leader election for the sync loop.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
LEADER_KEY = "leader:{role}"
QUOTA_KEY = "quota:provider:{provider}"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    """Manages async Redis connection pool and provides typed helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected")

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Response cache ──────────────────────────────────────────────────
    async def set_snapshot(self, key: str, data: str, ttl_s: int = 300) -> None:
        """Store a JSON snapshot with TTL."""
        await self.client.set(key, data, ex=ttl_s)

    async def get_snapshot(self, key: str) -> Optional[str]:
        """Retrieve a JSON snapshot."""
        return await self.client.get(key)

    # ── Quota mirror ────────────────────────────────────────────────────
    async def publish_quota(self, provider: str, state: dict[str, Any], ttl_s: int = 86400) -> None:
        """Mirror a provider's quota counters so every instance and the API can read them."""
        key = _fmt(QUOTA_KEY, provider=provider)
        await self.client.set(key, json.dumps(state), ex=ttl_s)

    async def get_quota(self, provider: str) -> Optional[dict[str, Any]]:
        raw = await self.client.get(_fmt(QUOTA_KEY, provider=provider))
        return json.loads(raw) if raw else None

    # ── Leader election ─────────────────────────────────────────────────

    # Lua script: atomically renew TTL only if we hold the lock
    _RENEW_LEADER_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("expire", KEYS[1], ARGV[2])
    return 1
end
return 0
"""

    # Lua script: atomically delete only if we hold the lock
    _RELEASE_LEADER_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("del", KEYS[1])
    return 1
end
return 0
"""

    async def try_acquire_leader(self, role: str, instance_id: str, ttl_s: int = 30) -> bool:
        """Attempt to acquire leadership using SET NX."""
        key = _fmt(LEADER_KEY, role=role)
        return bool(await self.client.set(key, instance_id, nx=True, ex=ttl_s))

    async def renew_leader(self, role: str, instance_id: str, ttl_s: int = 30) -> bool:
        """Atomically renew leadership if still the current leader."""
        key = _fmt(LEADER_KEY, role=role)
        result = await self.client.eval(self._RENEW_LEADER_SCRIPT, 1, key, instance_id, str(ttl_s))
        return bool(result)

    async def release_leader(self, role: str, instance_id: str) -> bool:
        """Atomically release leadership only if we hold it."""
        key = _fmt(LEADER_KEY, role=role)
        result = await self.client.eval(self._RELEASE_LEADER_SCRIPT, 1, key, instance_id)
        return bool(result)
