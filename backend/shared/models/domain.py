"""
Pydantic v2 domain models shared across GameLine services.
These are the canonical wire/internal representations, NOT ORM models.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.models.enums import (
    GameStatus,
    IssueKind,
    Market,
    MatchRule,
    OddsState,
    QuoteSide,
    Sport,
    SyncStage,
)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _sorted_ids(pairs: Iterable[tuple[str, str]]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted({(str(p), str(i)) for p, i in pairs if p and i}))


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Identity ────────────────────────────────────────────────────────────
class GameIdentifiers(DomainModel):
    """
    Matching key bundle captured from a single provider response.

    Frozen: instances are merged into new ones, never mutated in place.
    provider_ids is a sorted tuple of (provider, provider_game_id) pairs.
    """

    model_config = ConfigDict(frozen=True)

    home_team: str
    away_team: str
    scheduled_at: datetime
    provider_ids: tuple[tuple[str, str], ...] = ()

    @field_validator("scheduled_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_validator("provider_ids", mode="before")
    @classmethod
    def _normalize_ids(cls, v: Any) -> tuple[tuple[str, str], ...]:
        if isinstance(v, dict):
            v = v.items()
        return _sorted_ids(v or ())

    def id_for(self, provider: str) -> Optional[str]:
        for p, pid in self.provider_ids:
            if p == provider:
                return pid
        return None

    def merged(self, other: GameIdentifiers) -> GameIdentifiers:
        """Return a new bundle carrying the union of both ID sets."""
        return self.model_copy(
            update={"provider_ids": _sorted_ids((*self.provider_ids, *other.provider_ids))}
        )

    def with_ids(self, pairs: Iterable[tuple[str, str]]) -> GameIdentifiers:
        return self.model_copy(
            update={"provider_ids": _sorted_ids((*self.provider_ids, *pairs))}
        )


# ── Provider-native records (post translation) ──────────────────────────
class RawOddsQuote(DomainModel):
    """One provider's view of one market side at one book. Append-only."""

    model_config = ConfigDict(frozen=True)

    provider: str
    book: str
    provider_game_id: str
    market: Market
    side: QuoteSide
    line: Optional[float] = None
    price: Optional[float] = None
    observed_at: datetime

    @field_validator("observed_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @property
    def source_key(self) -> tuple[str, str]:
        return (self.provider, self.book)

    @property
    def slot(self) -> tuple[str, str, str, str]:
        return (self.provider, self.book, self.market.value, self.side.value)

    def is_usable(self) -> bool:
        if self.market == Market.MONEYLINE:
            return self.price is not None
        return self.line is not None


class TeamSide(DomainModel):
    name: str
    abbreviation: Optional[str] = None
    score: Optional[int] = None
    record: Optional[str] = None


class Weather(DomainModel):
    temperature: Optional[float] = None
    condition: Optional[str] = None


class BettingSplits(DomainModel):
    """Public betting percentages; carried through untouched."""
    spread_home_bet_pct: Optional[float] = None
    spread_home_money_pct: Optional[float] = None
    moneyline_home_bet_pct: Optional[float] = None
    moneyline_home_money_pct: Optional[float] = None
    total_over_bet_pct: Optional[float] = None
    total_over_money_pct: Optional[float] = None
    reverse_line_movement: Optional[bool] = None


class ScheduleGame(DomainModel):
    """A schedule provider's record for one game."""
    identifiers: GameIdentifiers
    provider: str
    sport: Sport
    status: GameStatus = GameStatus.SCHEDULED
    home: TeamSide
    away: TeamSide
    venue: Optional[str] = None
    broadcast: Optional[str] = None
    weather: Optional[Weather] = None
    period: Optional[int] = None
    clock: Optional[str] = None
    updated_at: Optional[datetime] = None
    embedded_quotes: list[RawOddsQuote] = Field(default_factory=list)
    # The ID this record was issued under. Kept when identifiers absorb aliases.
    provider_id: str = ""

    @model_validator(mode="after")
    def _native_id(self) -> "ScheduleGame":
        if not self.provider_id:
            self.provider_id = self.identifiers.id_for(self.provider) or ""
        return self

    def optional_field_count(self) -> int:
        fields = (
            self.venue, self.broadcast, self.weather, self.period, self.clock,
            self.home.abbreviation, self.away.abbreviation,
            self.home.record, self.away.record,
        )
        return sum(1 for f in fields if f not in (None, ""))


class OddsEvent(DomainModel):
    """An odds provider's record for one game."""
    identifiers: GameIdentifiers
    provider: str
    sport: Sport
    quotes: list[RawOddsQuote] = Field(default_factory=list)
    betting: Optional[BettingSplits] = None
    updated_at: Optional[datetime] = None
    provider_id: str = ""

    @model_validator(mode="after")
    def _native_id(self) -> "OddsEvent":
        if not self.provider_id:
            self.provider_id = self.identifiers.id_for(self.provider) or ""
        return self

    def usable_quotes(self) -> list[RawOddsQuote]:
        return [q for q in self.quotes if q.is_usable()]

    def optional_field_count(self) -> int:
        markets = {q.market for q in self.usable_quotes()}
        return len(markets) + (1 if self.betting is not None else 0)


# ── Unified output ──────────────────────────────────────────────────────
class OddsBlock(DomainModel):
    """The single best/consensus quote shown as "the line"."""
    provider: str
    book: str
    spread: Optional[float] = None
    spread_price: Optional[float] = None
    total: Optional[float] = None
    over_price: Optional[float] = None
    under_price: Optional[float] = None
    home_ml: Optional[float] = None
    away_ml: Optional[float] = None


class ConsensusBlock(DomainModel):
    spread: Optional[float] = None
    total: Optional[float] = None
    home_ml: Optional[float] = None
    away_ml: Optional[float] = None
    home_win_prob: Optional[float] = None
    away_win_prob: Optional[float] = None
    bookmaker_count: int = 0


class BestLine(DomainModel):
    provider: str
    book: str
    price: Optional[float] = None
    point: Optional[float] = None


class BestOdds(DomainModel):
    home_ml: Optional[BestLine] = None
    away_ml: Optional[BestLine] = None
    home_spread: Optional[BestLine] = None
    away_spread: Optional[BestLine] = None
    over: Optional[BestLine] = None
    under: Optional[BestLine] = None


class SourceInfo(DomainModel):
    primary: Optional[str] = None
    backup: Optional[str] = None
    schedule_provider: Optional[str] = None
    confidence: int = Field(default=100, ge=0, le=100)
    fallback_used: bool = False
    odds_state: OddsState = OddsState.NONE_OFFERED


class UnifiedGame(DomainModel):
    """Canonical merged record: exactly one canonical ID per real-world game."""
    canonical_id: str
    sport: Sport
    provider_ids: list[tuple[str, str]] = Field(default_factory=list)
    status: GameStatus = GameStatus.SCHEDULED
    scheduled_at: datetime
    home: TeamSide
    away: TeamSide
    venue: Optional[str] = None
    broadcast: Optional[str] = None
    weather: Optional[Weather] = None
    period: Optional[int] = None
    clock: Optional[str] = None
    odds: Optional[OddsBlock] = None
    consensus: Optional[ConsensusBlock] = None
    best_odds: Optional[BestOdds] = None
    betting: Optional[BettingSplits] = None
    source_info: SourceInfo = Field(default_factory=SourceInfo)
    last_updated: Optional[datetime] = None

    @field_validator("scheduled_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_validator("provider_ids", mode="before")
    @classmethod
    def _normalize_ids(cls, v: Any) -> list[tuple[str, str]]:
        if isinstance(v, dict):
            v = v.items()
        return list(_sorted_ids(tuple(p) for p in (v or ())))

    @property
    def identifiers(self) -> GameIdentifiers:
        return GameIdentifiers(
            home_team=self.home.name,
            away_team=self.away.name,
            scheduled_at=self.scheduled_at,
            provider_ids=self.provider_ids,
        )


class MatchConfidence(DomainModel):
    """Outcome of comparing two identifier bundles; a score, not a verdict."""
    score: int = Field(ge=0, le=100)
    rule: MatchRule = MatchRule.NONE
    swapped: bool = False
    time_delta_s: Optional[float] = None
    # Shared provider ID or stored cross-reference: a match whatever the score.
    linked: bool = False

    def is_match(self, cutoff: int) -> bool:
        return self.linked or self.score >= cutoff


# ── Cycle reporting ─────────────────────────────────────────────────────
class SyncIssue(DomainModel):
    """A non-fatal problem surfaced by a stage."""
    stage: SyncStage
    kind: IssueKind
    provider: Optional[str] = None
    detail: str = ""
    ref: Optional[str] = None


class SyncReport(DomainModel):
    sport: Sport
    games_written: int = 0
    games_skipped_terminal: int = 0
    live_games: int = 0
    odds_provider: Optional[str] = None
    fallback_used: bool = False
    odds_state: OddsState = OddsState.NONE_OFFERED
    issues: list[SyncIssue] = Field(default_factory=list)
