"""
Action Network connector.

Free, unauthenticated scoreboard that lists every game with per-book markets
and public betting percentages. Book 15 is Action Network's own consensus line.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from shared.models.domain import BettingSplits, OddsEvent, RawOddsQuote
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

ACTION_NETWORK_BASE_URL = "https://api.actionnetwork.com/web/v2"

_SLUGS: dict[Sport, str] = {
    Sport.NFL: "nfl",
    Sport.NBA: "nba",
    Sport.NHL: "nhl",
    Sport.MLB: "mlb",
    Sport.NCAAF: "ncaaf",
    Sport.NCAAB: "ncaab",
    Sport.WNBA: "wnba",
}

CONSENSUS_BOOK_ID = "15"
_BOOK_NAMES: dict[str, str] = {CONSENSUS_BOOK_ID: "consensus"}

_MARKETS: dict[str, Market] = {
    "spread": Market.SPREAD,
    "total": Market.TOTAL,
    "moneyline": Market.MONEYLINE,
}


def book_name(book_id: str) -> str:
    return _BOOK_NAMES.get(book_id, f"book_{book_id}")


def _team_name(teams: dict[Any, dict[str, Any]], team_id: Any) -> str:
    team = teams.get(team_id) or {}
    return team.get("full_name") or team.get("display_name") or ""


def _pct(outcome: Optional[dict[str, Any]], kind: str) -> Optional[float]:
    if not outcome:
        return None
    return safe_float(((outcome.get("bet_info") or {}).get(kind) or {}).get("percent"))


def _betting_splits(event_markets: dict[str, Any]) -> Optional[BettingSplits]:
    def side(market: str, wanted: str) -> Optional[dict[str, Any]]:
        return next((o for o in event_markets.get(market) or [] if o.get("side") == wanted), None)

    splits = BettingSplits(
        spread_home_bet_pct=_pct(side("spread", "home"), "tickets"),
        spread_home_money_pct=_pct(side("spread", "home"), "money"),
        moneyline_home_bet_pct=_pct(side("moneyline", "home"), "tickets"),
        moneyline_home_money_pct=_pct(side("moneyline", "home"), "money"),
        total_over_bet_pct=_pct(side("total", "over"), "tickets"),
        total_over_money_pct=_pct(side("total", "over"), "money"),
    )
    if all(v is None for v in splits.model_dump().values()):
        return None
    return splits


def parse_game(game: dict[str, Any], sport: Sport, ctx: ParseContext) -> Optional[OddsEvent]:
    """Translate one Action Network game into an OddsEvent."""
    game_id = str(game.get("id") or "")
    teams = {t.get("id"): t for t in game.get("teams") or []}
    home = _team_name(teams, game.get("home_team_id"))
    away = _team_name(teams, game.get("away_team_id"))
    start = ctx.field("start_time", parse_datetime, game.get("start_time"), ref=game_id or None)
    if not game_id or not home or not away or start is None:
        ctx.drift("game missing id, teams or start_time", ref=game_id or None)
        return None

    quotes: list[RawOddsQuote] = []
    betting: Optional[BettingSplits] = None
    for book_id, market_block in sorted((game.get("markets") or {}).items()):
        event_markets = (market_block or {}).get("event") or {}
        book = book_name(str(book_id))
        for market_key, market in _MARKETS.items():
            for outcome in event_markets.get(market_key) or []:
                quote = ctx.field(
                    f"markets.{book_id}.{market_key}",
                    _quote, outcome, market, book, game_id, ctx.fetched_at,
                    ref=game_id,
                )
                if quote is not None and quote.is_usable():
                    quotes.append(quote)
        if str(book_id) == CONSENSUS_BOOK_ID:
            betting = ctx.field("bet_info", _betting_splits, event_markets, ref=game_id)

    return OddsEvent(
        identifiers={
            "home_team": home,
            "away_team": away,
            "scheduled_at": start,
            "provider_ids": [(ProviderName.ACTION_NETWORK.value, game_id)],
        },
        provider=ProviderName.ACTION_NETWORK.value,
        sport=sport,
        quotes=quotes,
        betting=betting,
    )


def _quote(
    outcome: dict[str, Any], market: Market, book: str, game_id: str, observed_at: datetime
) -> Optional[RawOddsQuote]:
    side = outcome.get("side")
    if side not in ("home", "away", "over", "under"):
        return None
    return RawOddsQuote(
        provider=ProviderName.ACTION_NETWORK.value,
        book=book,
        provider_game_id=game_id,
        market=market,
        side=QuoteSide(side),
        line=None if market == Market.MONEYLINE else safe_float(outcome.get("value")),
        price=safe_float(outcome.get("odds")),
        observed_at=observed_at,
    )


class ActionNetworkClient(ProviderClient):
    """Action Network scoreboard odds, one request per calendar day in the window."""

    name = ProviderName.ACTION_NETWORK.value
    role = ProviderRole.ODDS
    supported_sports = frozenset(_SLUGS)

    @classmethod
    def build_http(cls, **kwargs: Any) -> ProviderHTTPClient:
        return ProviderHTTPClient(provider_name=cls.name, base_url=ACTION_NETWORK_BASE_URL, **kwargs)

    async def _fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        ctx = ParseContext(self.name, SyncStage.FETCH_ODDS_CASCADE)
        events: dict[str, OddsEvent] = {}
        for day in window.dates():
            data = await self._http.get_json(
                f"/scoreboard/{_SLUGS[sport]}",
                params={"date": f"{day:%Y%m%d}", "periods": "event"},
                cache_ttl_s=self._cache_ttl_s,
            )
            for game in data.get("games") or []:
                event = parse_game(game, sport, ctx)
                if event is not None and window.contains(event.identifiers.scheduled_at):
                    events[event.provider_id] = event
        return FetchResult(
            provider=self.name,
            records=[events[k] for k in sorted(events)],
            issues=ctx.issues,
        )
