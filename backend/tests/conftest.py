"""Shared fixtures and record builders for GameLine tests."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from shared.models.domain import (
    GameIdentifiers,
    OddsEvent,
    RawOddsQuote,
    ScheduleGame,
    TeamSide,
)
from shared.models.enums import GameStatus, Market, ProviderRole, QuoteSide, Sport

from ingest.providers.base import FetchResult, ProviderClient, TimeWindow
from ingest.providers.quota import QuotaTracker
from reconciler.config import ReconcilerSettings
from reconciler.matching import AliasTable, IdentityMatcher

KICKOFF = datetime(2026, 10, 18, 17, 0, tzinfo=timezone.utc)
OBSERVED = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
WINDOW = TimeWindow.around(KICKOFF)


def quote(
    provider: str,
    market: Market,
    side: QuoteSide,
    line: Optional[float] = None,
    price: Optional[float] = None,
    book: str = "draftkings",
    game_id: str = "g1",
    observed_at: datetime = OBSERVED,
) -> RawOddsQuote:
    return RawOddsQuote(
        provider=provider,
        book=book,
        provider_game_id=game_id,
        market=market,
        side=side,
        line=line,
        price=price,
        observed_at=observed_at,
    )


def schedule_game(
    game_id: str,
    home: str,
    away: str,
    when: datetime = KICKOFF,
    provider: str = "espn",
    status: GameStatus = GameStatus.SCHEDULED,
    sport: Sport = Sport.NFL,
    updated_at: Optional[datetime] = None,
    **extra: Any,
) -> ScheduleGame:
    return ScheduleGame(
        identifiers=GameIdentifiers(
            home_team=home, away_team=away, scheduled_at=when, provider_ids={provider: game_id}
        ),
        provider=provider,
        sport=sport,
        status=status,
        home=TeamSide(name=home),
        away=TeamSide(name=away),
        updated_at=updated_at,
        **extra,
    )


def odds_event(
    game_id: str,
    home: str,
    away: str,
    quotes: list[RawOddsQuote],
    provider: str,
    when: datetime = KICKOFF,
    sport: Sport = Sport.NFL,
    updated_at: Optional[datetime] = None,
) -> OddsEvent:
    return OddsEvent(
        identifiers=GameIdentifiers(
            home_team=home, away_team=away, scheduled_at=when, provider_ids={provider: game_id}
        ),
        provider=provider,
        sport=sport,
        quotes=quotes,
        updated_at=updated_at,
    )


class FakeProvider(ProviderClient):
    """In-memory provider: returns canned records or raises a canned error."""

    def __init__(
        self,
        name: str,
        tracker: QuotaTracker,
        records: Optional[list[Any]] = None,
        error: Optional[Exception] = None,
        role: ProviderRole = ProviderRole.ODDS,
        game_fetch: bool = False,
    ) -> None:
        super().__init__(tracker, timeout_s=5.0)
        self.name = name
        self.role = role
        self.supports_game_fetch = game_fetch
        self.records = list(records or [])
        self.error = error
        self.calls = 0

    async def _fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return FetchResult(provider=self.name, records=list(self.records))

    async def _fetch_game(self, sport: Sport, identifiers: GameIdentifiers) -> FetchResult:
        return await self._fetch(sport, WINDOW)


@pytest.fixture
def tracker() -> QuotaTracker:
    return QuotaTracker()


@pytest.fixture
def reconciler_settings() -> ReconcilerSettings:
    return ReconcilerSettings()


@pytest.fixture
def aliases() -> AliasTable:
    return AliasTable.load()


@pytest.fixture
def matcher(reconciler_settings: ReconcilerSettings, aliases: AliasTable) -> IdentityMatcher:
    return IdentityMatcher(reconciler_settings, aliases)
