"""
Dependency injection for the API service.
Provides the game store and the optional Redis connection to route handlers.
"""
from __future__ import annotations

from typing import Optional

from shared.utils.redis_manager import RedisManager

from reconciler.store import GameStore

# Module-level singletons, initialized at startup
_store: GameStore | None = None
_redis: RedisManager | None = None


def init_dependencies(store: GameStore, redis: Optional[RedisManager] = None) -> None:
    """Initialize module-level singletons. Called once at startup."""
    global _store, _redis
    _store = store
    _redis = redis


def get_store() -> GameStore:
    """FastAPI dependency: returns the shared GameStore."""
    if _store is None:
        raise RuntimeError("GameStore not initialized, call init_dependencies first")
    return _store


def get_redis() -> Optional[RedisManager]:
    """FastAPI dependency: the shared RedisManager, or None when running without Redis."""
    return _redis
