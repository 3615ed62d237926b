"""
The Odds API connector (https://the-odds-api.com, v4).

Metered: every call spends credits and the remaining balance comes back in
the x-requests-remaining header, which the base class hands to the
QuotaTracker. Supports a per-event endpoint for targeted refresh.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from shared.models.domain import GameIdentifiers, OddsEvent, RawOddsQuote
from shared.models.enums import Market, ProviderName, ProviderRole, QuoteSide, Sport, SyncStage
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger

from ingest.providers.base import (
    FetchResult,
    ParseContext,
    ProviderClient,
    TimeWindow,
    parse_datetime,
    safe_float,
)

logger = get_logger(__name__)

THE_ODDS_API_BASE_URL = "https://api.the-odds-api.com/v4"

SPORT_KEYS: dict[Sport, str] = {
    Sport.NFL: "americanfootball_nfl",
    Sport.NCAAF: "americanfootball_ncaaf",
    Sport.NBA: "basketball_nba",
    Sport.NCAAB: "basketball_ncaab",
    Sport.WNBA: "basketball_wnba",
    Sport.NHL: "icehockey_nhl",
    Sport.MLB: "baseball_mlb",
}

_MARKET_KEYS: dict[str, Market] = {
    "h2h": Market.MONEYLINE,
    "spreads": Market.SPREAD,
    "totals": Market.TOTAL,
}


def _iso_z(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def _maybe_datetime(value: Any) -> Optional[datetime]:
    return None if value in (None, "") else parse_datetime(value)


def _side(name: str, home: str, away: str, market: Market) -> Optional[QuoteSide]:
    if market == Market.TOTAL:
        lowered = name.lower()
        if lowered in ("over", "under"):
            return QuoteSide(lowered)
        return None
    if name == home:
        return QuoteSide.HOME
    if name == away:
        return QuoteSide.AWAY
    return None


def parse_event(game: dict[str, Any], sport: Sport, ctx: ParseContext) -> Optional[OddsEvent]:
    """Translate one event with its bookmakers into an OddsEvent."""
    event_id = str(game.get("id") or "")
    home = game.get("home_team") or ""
    away = game.get("away_team") or ""
    start = ctx.field("commence_time", parse_datetime, game.get("commence_time"), ref=event_id or None)
    if not event_id or not home or not away or start is None:
        ctx.drift("event missing id, teams or commence_time", ref=event_id or None)
        return None

    quotes: list[RawOddsQuote] = []
    latest: Optional[datetime] = None
    for bookmaker in game.get("bookmakers") or []:
        book = bookmaker.get("key") or "unknown"
        book_ts = ctx.field(f"{book}.last_update", _maybe_datetime, bookmaker.get("last_update"), ref=event_id)
        if book_ts is not None and (latest is None or book_ts > latest):
            latest = book_ts
        for market in bookmaker.get("markets") or []:
            kind = _MARKET_KEYS.get(market.get("key"))
            if kind is None:
                continue
            observed = ctx.field(
                f"{book}.{market.get('key')}.last_update",
                _maybe_datetime, market.get("last_update"),
                ref=event_id,
                default=book_ts or ctx.fetched_at,
            )
            for outcome in market.get("outcomes") or []:
                side = _side(str(outcome.get("name") or ""), home, away, kind)
                if side is None:
                    continue
                price = ctx.field(f"{book}.{market.get('key')}.price", safe_float, outcome.get("price"), ref=event_id)
                point = None
                if kind != Market.MONEYLINE:
                    point = ctx.field(f"{book}.{market.get('key')}.point", safe_float, outcome.get("point"), ref=event_id)
                quote = RawOddsQuote(
                    provider=ProviderName.THE_ODDS_API.value,
                    book=book,
                    provider_game_id=event_id,
                    market=kind,
                    side=side,
                    line=point,
                    price=price,
                    observed_at=observed,
                )
                if quote.is_usable():
                    quotes.append(quote)

    return OddsEvent(
        identifiers={
            "home_team": home,
            "away_team": away,
            "scheduled_at": start,
            "provider_ids": [(ProviderName.THE_ODDS_API.value, event_id)],
        },
        provider=ProviderName.THE_ODDS_API.value,
        sport=sport,
        quotes=quotes,
        updated_at=latest,
    )


class TheOddsApiClient(ProviderClient):
    """Paid odds from 40+ books; last in the default cascade order."""

    name = ProviderName.THE_ODDS_API.value
    role = ProviderRole.ODDS
    metered = True
    requires_key = True
    supports_game_fetch = True
    supported_sports = frozenset(SPORT_KEYS)

    @classmethod
    def build_http(cls, **kwargs: Any) -> ProviderHTTPClient:
        return ProviderHTTPClient(provider_name=cls.name, base_url=THE_ODDS_API_BASE_URL, **kwargs)

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {
            "apiKey": self._api_key,
            "regions": "us",
            "markets": ",".join(_MARKET_KEYS),
            "oddsFormat": "american",
            "dateFormat": "iso",
            **extra,
        }

    async def _fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        ctx = ParseContext(self.name, SyncStage.FETCH_ODDS_CASCADE)
        data = await self._http.get_json(
            f"/sports/{SPORT_KEYS[sport]}/odds",
            params=self._params(
                commenceTimeFrom=_iso_z(window.start),
                commenceTimeTo=_iso_z(window.end),
            ),
            cache_ttl_s=self._cache_ttl_s,
        )
        events = [e for e in (parse_event(g, sport, ctx) for g in data or []) if e is not None]
        return FetchResult(provider=self.name, records=events, issues=ctx.issues)

    async def _fetch_game(self, sport: Sport, identifiers: GameIdentifiers) -> FetchResult:
        event_id = identifiers.id_for(self.name)
        if not event_id:
            # Not linked to an event on this provider yet; a sport-wide fetch will pick it up.
            return FetchResult(provider=self.name)
        ctx = ParseContext(self.name, SyncStage.FETCH_ODDS_CASCADE)
        data = await self._http.get_json(
            f"/sports/{SPORT_KEYS[sport]}/events/{event_id}/odds",
            params=self._params(),
        )
        event = parse_event(data or {}, sport, ctx)
        return FetchResult(provider=self.name, records=[event] if event else [], issues=ctx.issues)
