"""
Reconciler service entrypoint.

Runs the sync loop: one instance holds the Redis leadership key and drives
sync cycles across the configured sports; the others stand by. The cycle
interval is short while any game is live and long otherwise, with jitter so
replicas and providers are not hit in lockstep.
"""
from __future__ import annotations

import asyncio
import random
import signal
import sys
import uuid
from pathlib import Path
from typing import Any, Optional

# Ensure backend root is on path when run as python -m reconciler.main
_backend = Path(__file__).resolve().parent.parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))

from shared.config import Settings, get_settings
from shared.models.domain import SyncReport
from shared.models.enums import Sport
from shared.utils.database import DatabaseManager
from shared.utils.health_server import start_health_server
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager
from shared.utils.retry import connect_with_retry

from ingest.providers.quota import QuotaTracker
from ingest.providers.registry import ProviderRegistry, build_provider_registry
from reconciler.cascade import OddsCascade
from reconciler.config import ReconcilerSettings, get_reconciler_settings
from reconciler.dedupe import DeduplicationResolver
from reconciler.engine import Reconciler
from reconciler.matching import IdentityMatcher
from reconciler.store import GameStore, SqlGameStore

logger = get_logger(__name__)

LEADER_ROLE = "reconciler"


def build_reconciler(
    registry: ProviderRegistry,
    store: GameStore,
    tracker: QuotaTracker,
    settings: ReconcilerSettings | None = None,
) -> Reconciler:
    """Wire the cascade, matcher and dedupe around a registry and a store."""
    settings = settings or get_reconciler_settings()
    matcher = IdentityMatcher(settings)
    return Reconciler(
        registry=registry,
        cascade=OddsCascade(registry.odds_clients),
        matcher=matcher,
        deduper=DeduplicationResolver(matcher),
        store=store,
        tracker=tracker,
        settings=settings,
    )


def next_interval(reports: list[SyncReport], settings: Settings) -> float:
    """Live interval while any game is live, idle interval otherwise, jittered."""
    live = any(r.live_games for r in reports)
    base = settings.sync_live_interval_s if live else settings.sync_idle_interval_s
    jitter = base * settings.sync_jitter_factor * (2 * random.random() - 1)
    return max(1.0, base + jitter)


class SyncService:
    """Leader-elected loop around Reconciler.sync_all."""

    def __init__(
        self,
        reconciler: Reconciler,
        redis: Optional[RedisManager],
        settings: Settings | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._redis = redis
        self._settings = settings or get_settings()
        self._instance_id = self._settings.instance_id or uuid.uuid4().hex[:12]
        self._is_leader = False
        self._shutdown = asyncio.Event()
        self._cycles = 0
        self._last_reports: list[SyncReport] = []

    @property
    def sports(self) -> list[Sport]:
        out = []
        for name in self._settings.sports:
            try:
                out.append(Sport(name))
            except ValueError:
                logger.warning("sport_unknown", sport=name)
        return out

    async def _acquire_leadership(self) -> bool:
        if self._redis is None:
            return True
        ttl = self._settings.sync_leader_ttl_s
        if self._is_leader:
            if await self._redis.renew_leader(LEADER_ROLE, self._instance_id, ttl):
                return True
            logger.warning("leadership_lost", instance_id=self._instance_id)
            self._is_leader = False

        if await self._redis.try_acquire_leader(LEADER_ROLE, self._instance_id, ttl):
            self._is_leader = True
            logger.info("leadership_acquired", instance_id=self._instance_id)
        return self._is_leader

    async def run_once(self) -> list[SyncReport]:
        reports = await self._reconciler.sync_all(self.sports)
        self._cycles += 1
        self._last_reports = reports
        return reports

    def status(self) -> dict[str, Any]:
        """Loop state for the worker health endpoint."""
        return {
            "instance_id": self._instance_id,
            "leader": self._is_leader or self._redis is None,
            "cycles": self._cycles,
            "games_written": sum(r.games_written for r in self._last_reports),
            "issues": sum(len(r.issues) for r in self._last_reports),
        }

    async def run(self) -> None:
        """Sync until shutdown is requested."""
        while not self._shutdown.is_set():
            delay = self._settings.sync_idle_interval_s
            try:
                if not await self._acquire_leadership():
                    delay = self._settings.sync_leader_ttl_s / 2
                else:
                    reports = await self.run_once()
                    delay = next_interval(reports, self._settings)
                    logger.info(
                        "sync_cycle_complete",
                        sports=len(reports),
                        written=sum(r.games_written for r in reports),
                        live=sum(r.live_games for r in reports),
                        next_in_s=round(delay, 1),
                    )
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("sync_loop_error", error=str(exc), exc_info=True)
                delay = 30.0

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        if self._redis is not None and self._is_leader:
            await self._redis.release_leader(LEADER_ROLE, self._instance_id)

    def request_shutdown(self) -> None:
        self._shutdown.set()


async def main() -> None:
    settings = get_settings()
    setup_logging("reconciler")
    start_metrics_server()

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    await connect_with_retry(redis.connect, "Redis")
    await connect_with_retry(db.connect, "Database")
    await db.create_schema()

    tracker = QuotaTracker(redis)
    registry = build_provider_registry(tracker, redis=redis, settings=settings)
    await registry.start()

    reconciler = build_reconciler(registry, SqlGameStore(db), tracker)
    service = SyncService(reconciler, redis, settings)
    start_health_server("reconciler", service.status)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_shutdown)
        except NotImplementedError:
            pass

    logger.info(
        "reconciler_service_started",
        instance_id=settings.instance_id,
        sports=settings.sports,
        odds_order=[c.name for c in registry.odds_clients],
    )
    try:
        await service.run()
    finally:
        await registry.close()
        await db.disconnect()
        await redis.disconnect()
        logger.info("reconciler_service_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
