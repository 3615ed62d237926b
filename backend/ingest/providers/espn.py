"""
ESPN provider connectors.

ESPN's public scoreboard is the schedule source of record. The same payload
carries the featured book's line for each game, so a second client exposes
those embedded odds to the cascade as a free odds source.
"""
from __future__ import annotations

from typing import Any, Optional

from shared.models.domain import OddsEvent, RawOddsQuote, ScheduleGame, TeamSide, Weather
from shared.models.enums import GameStatus, Market, ProviderName, ProviderRole, QuoteSide, Sport, SyncStage
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger

from ingest.providers.base import (
    FetchResult,
    ParseContext,
    ProviderClient,
    TimeWindow,
    parse_datetime,
    safe_float,
    safe_int,
)

logger = get_logger(__name__)

ESPN_BASE_URL = "https://site.api.espn.com/apis/site/v2/sports"

# sport -> (sport_slug, league_slug)
_LEAGUE_PATHS: dict[Sport, tuple[str, str]] = {
    Sport.NFL: ("football", "nfl"),
    Sport.NCAAF: ("football", "college-football"),
    Sport.NBA: ("basketball", "nba"),
    Sport.WNBA: ("basketball", "wnba"),
    Sport.NCAAB: ("basketball", "mens-college-basketball"),
    Sport.NHL: ("hockey", "nhl"),
    Sport.MLB: ("baseball", "mlb"),
}

# Division I groups; without them ESPN returns only ranked college games.
_COLLEGE_GROUPS: dict[Sport, str] = {Sport.NCAAF: "80", Sport.NCAAB: "50"}

ESPN_BOOK = "espn_bet"


def parse_status(status: dict[str, Any]) -> GameStatus:
    """Map an ESPN competition status block to GameStatus."""
    stype = status.get("type") or {}
    name = str(stype.get("name") or "").upper()
    if "POSTPONED" in name:
        return GameStatus.POSTPONED
    if "CANCELED" in name or "CANCELLED" in name:
        return GameStatus.CANCELLED
    if stype.get("completed") or stype.get("state") == "post":
        return GameStatus.FINAL
    if stype.get("state") == "in":
        return GameStatus.LIVE
    return GameStatus.SCHEDULED


def _total_record(competitor: dict[str, Any]) -> Optional[str]:
    for rec in competitor.get("records") or []:
        if rec.get("type") == "total" or rec.get("name") == "overall":
            return rec.get("summary")
    return None


def _broadcast(comp: dict[str, Any]) -> Optional[str]:
    names: list[str] = []
    for b in comp.get("broadcasts") or []:
        names.extend(str(n) for n in b.get("names") or [])
    return ", ".join(names) or None


def _weather(event: dict[str, Any]) -> Optional[Weather]:
    w = event.get("weather")
    if not w:
        return None
    return Weather(temperature=safe_float(w.get("temperature")), condition=w.get("displayValue"))


def _team_side(competitor: dict[str, Any], status: GameStatus, ctx: ParseContext, ref: str) -> TeamSide:
    team = competitor.get("team") or {}
    score = None
    if status != GameStatus.SCHEDULED:
        score = ctx.field("score", safe_int, competitor.get("score"), ref=ref)
    return TeamSide(
        name=team.get("displayName") or team.get("name") or "",
        abbreviation=team.get("abbreviation"),
        score=score,
        record=ctx.field("record", _total_record, competitor, ref=ref),
    )


def _embedded_quotes(
    comp: dict[str, Any], event_id: str, ctx: ParseContext
) -> list[RawOddsQuote]:
    """Translate ESPN's odds[0] block into quotes."""
    odds_list = comp.get("odds") or []
    if not odds_list:
        return []
    odds = odds_list[0]
    book = ((odds.get("provider") or {}).get("name") or ESPN_BOOK).lower().replace(" ", "_")
    home_odds = odds.get("homeTeamOdds") or {}
    away_odds = odds.get("awayTeamOdds") or {}

    spread = ctx.field("odds.spread", safe_float, odds.get("spread"), ref=event_id)
    total = ctx.field("odds.overUnder", safe_float, odds.get("overUnder"), ref=event_id)
    rows: list[tuple[Market, QuoteSide, Optional[float], Optional[float]]] = [
        (Market.SPREAD, QuoteSide.HOME, spread,
         ctx.field("odds.homeSpreadOdds", safe_float, home_odds.get("spreadOdds"), ref=event_id)),
        (Market.SPREAD, QuoteSide.AWAY, -spread if spread is not None else None,
         ctx.field("odds.awaySpreadOdds", safe_float, away_odds.get("spreadOdds"), ref=event_id)),
        (Market.TOTAL, QuoteSide.OVER, total,
         ctx.field("odds.overOdds", safe_float, odds.get("overOdds"), ref=event_id)),
        (Market.TOTAL, QuoteSide.UNDER, total,
         ctx.field("odds.underOdds", safe_float, odds.get("underOdds"), ref=event_id)),
        (Market.MONEYLINE, QuoteSide.HOME, None,
         ctx.field("odds.homeMoneyLine", safe_float, home_odds.get("moneyLine"), ref=event_id)),
        (Market.MONEYLINE, QuoteSide.AWAY, None,
         ctx.field("odds.awayMoneyLine", safe_float, away_odds.get("moneyLine"), ref=event_id)),
    ]
    quotes = [
        RawOddsQuote(
            provider=ProviderName.ESPN.value,
            book=book,
            provider_game_id=event_id,
            market=market,
            side=side,
            line=line,
            price=price,
            observed_at=ctx.fetched_at,
        )
        for market, side, line, price in rows
    ]
    return [q for q in quotes if q.is_usable()]


def parse_scoreboard_event(
    event: dict[str, Any], sport: Sport, ctx: ParseContext
) -> Optional[ScheduleGame]:
    """
    Parse one ESPN scoreboard event.

    Identity fields (id, both team names, start time) are required; anything
    else that fails to parse is dropped on its own and reported as drift.
    """
    event_id = str(event.get("id") or "")
    comp = (event.get("competitions") or [{}])[0]
    competitors = comp.get("competitors") or []
    home = next((c for c in competitors if c.get("homeAway") == "home"), None)
    away = next((c for c in competitors if c.get("homeAway") == "away"), None)
    if not event_id or home is None or away is None:
        ctx.drift("event missing id or competitors", ref=event_id or None)
        return None

    start = ctx.field("date", parse_datetime, event.get("date") or comp.get("date"), ref=event_id)
    if start is None:
        return None

    status_block = comp.get("status") or event.get("status") or {}
    status = ctx.field("status", parse_status, status_block, ref=event_id, default=GameStatus.SCHEDULED)
    home_side = _team_side(home, status, ctx, event_id)
    away_side = _team_side(away, status, ctx, event_id)
    if not home_side.name or not away_side.name:
        ctx.drift("event missing team names", ref=event_id)
        return None

    live = status == GameStatus.LIVE
    return ScheduleGame(
        identifiers={
            "home_team": home_side.name,
            "away_team": away_side.name,
            "scheduled_at": start,
            "provider_ids": [(ProviderName.ESPN.value, event_id)],
        },
        provider=ProviderName.ESPN.value,
        sport=sport,
        status=status,
        home=home_side,
        away=away_side,
        venue=ctx.field("venue", lambda: (comp.get("venue") or {}).get("fullName"), ref=event_id),
        broadcast=ctx.field("broadcasts", _broadcast, comp, ref=event_id),
        weather=ctx.field("weather", _weather, event, ref=event_id),
        period=ctx.field("period", safe_int, status_block.get("period"), ref=event_id) if live else None,
        clock=status_block.get("displayClock") if live else None,
        embedded_quotes=ctx.field("odds", _embedded_quotes, comp, event_id, ctx, ref=event_id, default=[]),
    )


class _ESPNScoreboardClient(ProviderClient):
    """Shared scoreboard loading for the ESPN schedule and odds clients."""

    name = ProviderName.ESPN.value
    supported_sports = frozenset(_LEAGUE_PATHS)

    @classmethod
    def build_http(cls, **kwargs: Any) -> ProviderHTTPClient:
        return ProviderHTTPClient(provider_name=cls.name, base_url=ESPN_BASE_URL, **kwargs)

    async def _load_scoreboard(
        self, sport: Sport, window: TimeWindow, ctx: ParseContext
    ) -> list[ScheduleGame]:
        sport_slug, league_slug = _LEAGUE_PATHS[sport]
        days = window.dates()
        params: dict[str, Any] = {
            "dates": f"{days[0]:%Y%m%d}-{days[-1]:%Y%m%d}" if len(days) > 1 else f"{days[0]:%Y%m%d}",
            "limit": 300,
        }
        if sport in _COLLEGE_GROUPS:
            params["groups"] = _COLLEGE_GROUPS[sport]

        data = await self._http.get_json(
            f"/{sport_slug}/{league_slug}/scoreboard", params=params, cache_ttl_s=self._cache_ttl_s
        )
        games: list[ScheduleGame] = []
        for event in data.get("events") or []:
            game = parse_scoreboard_event(event, sport, ctx)
            if game is not None and window.contains(game.identifiers.scheduled_at):
                games.append(game)
        return games


class ESPNScheduleClient(_ESPNScoreboardClient):
    """Schedule, status and score source."""

    role = ProviderRole.SCHEDULE

    async def _fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        ctx = ParseContext(self.name, SyncStage.FETCH_SCHEDULE)
        games = await self._load_scoreboard(sport, window, ctx)
        return FetchResult(provider=self.name, records=games, issues=ctx.issues)


class ESPNOddsClient(_ESPNScoreboardClient):
    """The featured line embedded in ESPN's scoreboard, offered as a free odds source."""

    role = ProviderRole.ODDS

    async def _fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        ctx = ParseContext(self.name, SyncStage.FETCH_ODDS_CASCADE)
        games = await self._load_scoreboard(sport, window, ctx)
        events = [
            OddsEvent(
                identifiers=g.identifiers,
                provider=self.name,
                sport=sport,
                quotes=g.embedded_quotes,
            )
            for g in games
            if g.embedded_quotes
        ]
        return FetchResult(provider=self.name, records=events, issues=ctx.issues)
