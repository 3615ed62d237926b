"""
Unit tests for the reconciler sync loop: interval choice and leader election.

Run: pytest backend/tests/test_sync_service.py -v
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.config import Settings
from shared.models.domain import SyncReport
from shared.models.enums import Sport
from shared.utils.health_server import health_body, start_health_server

from reconciler.main import LEADER_ROLE, SyncService, next_interval


@pytest.fixture
def settings() -> Settings:
    return Settings(sports=["nfl", "cricket", "nba"], instance_id="node-1", sync_jitter_factor=0.0)


@pytest.fixture
def mock_redis() -> MagicMock:
    r = MagicMock()
    r.try_acquire_leader = AsyncMock(return_value=True)
    r.renew_leader = AsyncMock(return_value=True)
    r.release_leader = AsyncMock(return_value=True)
    return r


# ── next_interval ───────────────────────────────────────────────────────

def test_live_games_use_live_interval(settings: Settings) -> None:
    reports = [SyncReport(sport=Sport.NFL), SyncReport(sport=Sport.NBA, live_games=2)]
    assert next_interval(reports, settings) == settings.sync_live_interval_s


def test_idle_interval_without_live_games(settings: Settings) -> None:
    assert next_interval([SyncReport(sport=Sport.NFL)], settings) == settings.sync_idle_interval_s


def test_jitter_stays_within_factor() -> None:
    settings = Settings(sync_idle_interval_s=100.0, sync_jitter_factor=0.2)
    for _ in range(50):
        assert 80.0 <= next_interval([], settings) <= 120.0


# ── SyncService ─────────────────────────────────────────────────────────

def test_unknown_sports_are_dropped(settings: Settings) -> None:
    service = SyncService(MagicMock(), None, settings)
    assert service.sports == [Sport.NFL, Sport.NBA]


@pytest.mark.asyncio
async def test_leader_runs_cycle_and_releases(settings: Settings, mock_redis: MagicMock) -> None:
    reconciler = MagicMock()
    service = SyncService(reconciler, mock_redis, settings)

    async def sync_all(sports: list[Sport]) -> list[SyncReport]:
        service.request_shutdown()
        return [SyncReport(sport=s) for s in sports]

    reconciler.sync_all = AsyncMock(side_effect=sync_all)
    await service.run()

    reconciler.sync_all.assert_awaited_once_with([Sport.NFL, Sport.NBA])
    mock_redis.try_acquire_leader.assert_awaited_once_with(LEADER_ROLE, "node-1", settings.sync_leader_ttl_s)
    mock_redis.release_leader.assert_awaited_once_with(LEADER_ROLE, "node-1")


@pytest.mark.asyncio
async def test_follower_does_not_sync(settings: Settings, mock_redis: MagicMock) -> None:
    reconciler = MagicMock()
    reconciler.sync_all = AsyncMock(return_value=[])
    service = SyncService(reconciler, mock_redis, settings)

    async def contested(*args: object) -> bool:
        service.request_shutdown()
        return False

    mock_redis.try_acquire_leader = AsyncMock(side_effect=contested)
    await service.run()

    reconciler.sync_all.assert_not_awaited()
    mock_redis.release_leader.assert_not_awaited()


@pytest.mark.asyncio
async def test_lost_leadership_is_reacquired(settings: Settings, mock_redis: MagicMock) -> None:
    service = SyncService(MagicMock(), mock_redis, settings)
    assert await service._acquire_leadership() is True

    mock_redis.renew_leader.return_value = False
    mock_redis.try_acquire_leader.return_value = False
    assert await service._acquire_leadership() is False
    mock_redis.renew_leader.assert_awaited_once()


@pytest.mark.asyncio
async def test_loop_survives_cycle_error(settings: Settings) -> None:
    reconciler = MagicMock()
    service = SyncService(reconciler, None, settings)

    async def broken(sports: list[Sport]) -> list[SyncReport]:
        service.request_shutdown()
        raise RuntimeError("store unavailable")

    reconciler.sync_all = AsyncMock(side_effect=broken)
    await service.run()
    reconciler.sync_all.assert_awaited_once()


# ── Health ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_status_reflects_last_cycle(settings: Settings) -> None:
    reconciler = MagicMock()
    reconciler.sync_all = AsyncMock(return_value=[
        SyncReport(sport=Sport.NFL, games_written=3),
        SyncReport(sport=Sport.NBA, games_written=2),
    ])
    service = SyncService(reconciler, None, settings)
    await service.run_once()

    status = service.status()
    assert status == {
        "instance_id": "node-1",
        "leader": True,
        "cycles": 1,
        "games_written": 5,
        "issues": 0,
    }


def test_health_body_merges_status() -> None:
    body = json.loads(health_body("reconciler", lambda: {"cycles": 4}))
    assert body == {"status": "ok", "service": "reconciler", "cycles": 4}


def test_health_server_is_noop_without_port(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PORT", raising=False)
    assert start_health_server("reconciler") is None
