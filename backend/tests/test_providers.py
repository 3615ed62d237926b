"""
Unit tests for provider parsers, the HTTP error mapping and the fetch guard.

Run: pytest backend/tests/test_providers.py -v
"""
from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from shared.config import Settings
from shared.models.enums import (
    FailureKind,
    GameStatus,
    IssueKind,
    Market,
    QuoteSide,
    Sport,
    SyncStage,
)
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.http_client import (
    ProviderHTTPClient,
    QuotaExhaustedError,
    TransientProviderError,
)

from conftest import KICKOFF, OBSERVED, WINDOW, FakeProvider, odds_event
from ingest.providers import base as provider_base
from ingest.providers.action_network import parse_game
from ingest.providers.base import FetchResult, ParseContext, TimeWindow, safe_float
from ingest.providers.espn import parse_scoreboard_event, parse_status
from ingest.providers.quota import QuotaTracker
from ingest.providers.registry import build_provider_registry
from ingest.providers.the_odds_api import TheOddsApiClient, parse_event


def _ctx(provider: str = "espn") -> ParseContext:
    return ParseContext(provider, SyncStage.FETCH_SCHEDULE, fetched_at=OBSERVED)


def _mock_http(
    handler: Any, provider: str = "test", cache: Any = None
) -> ProviderHTTPClient:
    return ProviderHTTPClient(
        provider_name=provider,
        base_url="https://provider.test",
        max_retries=1,
        cache=cache,
        transport=httpx.MockTransport(handler),
    )


# ── Value helpers ───────────────────────────────────────────────────────

class TestValueHelpers:
    def test_safe_float_handles_book_strings(self) -> None:
        assert safe_float("+150") == 150.0
        assert safe_float("-3.5") == -3.5
        assert safe_float("EVEN") == 100.0
        assert safe_float("PK") == 0.0
        assert safe_float("") is None
        assert safe_float(None) is None

    def test_safe_float_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            safe_float("n/a")

    def test_time_window_dates_are_inclusive(self) -> None:
        window = TimeWindow.around(KICKOFF, days_back=1, days_ahead=1)
        assert [d.day for d in window.dates()] == [17, 18, 19]
        assert window.contains(KICKOFF)


# ── ESPN ────────────────────────────────────────────────────────────────

def _espn_event(**overrides: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        "id": "401547",
        "date": "2026-10-18T17:00Z",
        "competitions": [{
            "competitors": [
                {
                    "homeAway": "home",
                    "team": {"displayName": "Kansas City Chiefs", "abbreviation": "KC"},
                    "score": "0",
                    "records": [{"type": "total", "summary": "5-1"}],
                },
                {
                    "homeAway": "away",
                    "team": {"displayName": "Buffalo Bills", "abbreviation": "BUF"},
                    "score": "0",
                },
            ],
            "status": {"type": {"name": "STATUS_SCHEDULED", "state": "pre", "completed": False}},
            "venue": {"fullName": "GEHA Field at Arrowhead Stadium"},
            "broadcasts": [{"names": ["CBS"]}],
            "odds": [{
                "provider": {"name": "ESPN BET"},
                "spread": -2.5,
                "overUnder": 47.5,
                "overOdds": -110,
                "underOdds": -110,
                "homeTeamOdds": {"spreadOdds": -110, "moneyLine": -135},
                "awayTeamOdds": {"spreadOdds": -110, "moneyLine": 115},
            }],
        }],
    }
    event.update(overrides)
    return event


class TestESPNParsing:
    def test_status_mapping(self) -> None:
        assert parse_status({"type": {"name": "STATUS_FINAL", "state": "post", "completed": True}}) == GameStatus.FINAL
        assert parse_status({"type": {"name": "STATUS_IN_PROGRESS", "state": "in"}}) == GameStatus.LIVE
        assert parse_status({"type": {"name": "STATUS_POSTPONED", "state": "post"}}) == GameStatus.POSTPONED
        assert parse_status({"type": {"name": "STATUS_CANCELED", "state": "post"}}) == GameStatus.CANCELLED
        assert parse_status({}) == GameStatus.SCHEDULED

    def test_scheduled_event(self) -> None:
        ctx = _ctx()
        game = parse_scoreboard_event(_espn_event(), Sport.NFL, ctx)

        assert game is not None
        assert game.provider_id == "401547"
        assert game.identifiers.scheduled_at == KICKOFF
        assert (game.home.name, game.away.name) == ("Kansas City Chiefs", "Buffalo Bills")
        assert game.home.record == "5-1"
        assert game.home.score is None
        assert game.venue == "GEHA Field at Arrowhead Stadium"
        assert game.broadcast == "CBS"
        assert game.period is None
        assert ctx.issues == []

    def test_embedded_odds_become_quotes(self) -> None:
        game = parse_scoreboard_event(_espn_event(), Sport.NFL, _ctx())
        quotes = {(q.market, q.side): q for q in game.embedded_quotes}

        assert len(quotes) == 6
        assert quotes[(Market.SPREAD, QuoteSide.HOME)].line == -2.5
        assert quotes[(Market.SPREAD, QuoteSide.AWAY)].line == 2.5
        assert quotes[(Market.MONEYLINE, QuoteSide.AWAY)].price == 115
        assert {q.book for q in game.embedded_quotes} == {"espn_bet"}
        assert all(q.observed_at == OBSERVED for q in game.embedded_quotes)

    def test_live_event_carries_score_period_and_clock(self) -> None:
        event = _espn_event()
        comp = event["competitions"][0]
        comp["competitors"][0]["score"] = "17"
        comp["competitors"][1]["score"] = "10"
        comp["status"] = {"type": {"name": "STATUS_IN_PROGRESS", "state": "in"}, "period": 3, "displayClock": "7:12"}
        game = parse_scoreboard_event(event, Sport.NFL, _ctx())

        assert game.status == GameStatus.LIVE
        assert (game.home.score, game.away.score) == (17, 10)
        assert (game.period, game.clock) == (3, "7:12")

    def test_bad_optional_field_is_drift_not_loss(self) -> None:
        event = _espn_event()
        event["competitions"][0]["odds"][0]["spread"] = "not-a-number"
        ctx = _ctx()
        game = parse_scoreboard_event(event, Sport.NFL, ctx)

        assert game is not None
        markets = {q.market for q in game.embedded_quotes}
        assert Market.SPREAD not in markets
        assert Market.MONEYLINE in markets
        assert [i.kind for i in ctx.issues] == [IssueKind.SHAPE_DRIFT]
        assert ctx.issues[0].ref == "401547"

    def test_missing_identity_drops_record(self) -> None:
        ctx = _ctx()
        assert parse_scoreboard_event(_espn_event(date="garbage"), Sport.NFL, ctx) is None
        assert ctx.issues and ctx.issues[0].kind == IssueKind.SHAPE_DRIFT

        ctx = _ctx()
        event = _espn_event()
        event["competitions"][0]["competitors"] = []
        assert parse_scoreboard_event(event, Sport.NFL, ctx) is None
        assert len(ctx.issues) == 1


# ── Action Network ──────────────────────────────────────────────────────

def _action_game() -> dict[str, Any]:
    return {
        "id": 221344,
        "start_time": "2026-10-18T17:00:00.000Z",
        "home_team_id": 1,
        "away_team_id": 2,
        "teams": [
            {"id": 1, "full_name": "Kansas City Chiefs"},
            {"id": 2, "full_name": "Buffalo Bills"},
        ],
        "markets": {
            "15": {"event": {
                "spread": [
                    {"side": "home", "value": -2.5, "odds": -110,
                     "bet_info": {"tickets": {"percent": 62}, "money": {"percent": 70}}},
                    {"side": "away", "value": 2.5, "odds": -110},
                ],
                "moneyline": [
                    {"side": "home", "odds": -135},
                    {"side": "away", "odds": 115},
                ],
                "total": [
                    {"side": "over", "value": 47.5, "odds": -110, "bet_info": {"tickets": {"percent": 55}}},
                    {"side": "under", "value": 47.5, "odds": -110},
                ],
            }},
            "30": {"event": {"spread": [{"side": "home", "value": -3, "odds": -105}]}},
        },
    }


class TestActionNetworkParsing:
    def test_parse_game(self) -> None:
        event = parse_game(_action_game(), Sport.NFL, _ctx("action_network"))

        assert event is not None
        assert event.provider_id == "221344"
        assert event.identifiers.home_team == "Kansas City Chiefs"
        assert event.identifiers.scheduled_at == KICKOFF
        assert len(event.quotes) == 7
        assert {q.book for q in event.quotes} == {"consensus", "book_30"}

    def test_moneyline_has_no_line(self) -> None:
        event = parse_game(_action_game(), Sport.NFL, _ctx("action_network"))
        ml = [q for q in event.quotes if q.market == Market.MONEYLINE]
        assert ml and all(q.line is None for q in ml)

    def test_betting_splits_from_consensus_book(self) -> None:
        event = parse_game(_action_game(), Sport.NFL, _ctx("action_network"))
        assert event.betting is not None
        assert event.betting.spread_home_bet_pct == 62.0
        assert event.betting.spread_home_money_pct == 70.0
        assert event.betting.total_over_bet_pct == 55.0
        assert event.betting.moneyline_home_bet_pct is None

    def test_game_without_teams_is_drift(self) -> None:
        game = _action_game()
        game["teams"] = []
        ctx = _ctx("action_network")
        assert parse_game(game, Sport.NFL, ctx) is None
        assert ctx.issues[0].kind == IssueKind.SHAPE_DRIFT


# ── The Odds API ────────────────────────────────────────────────────────

def _odds_api_event() -> dict[str, Any]:
    return {
        "id": "e912",
        "commence_time": "2026-10-18T17:00:00Z",
        "home_team": "Kansas City Chiefs",
        "away_team": "Buffalo Bills",
        "bookmakers": [{
            "key": "draftkings",
            "last_update": "2026-10-18T11:55:00Z",
            "markets": [
                {"key": "h2h", "last_update": "2026-10-18T11:50:00Z", "outcomes": [
                    {"name": "Kansas City Chiefs", "price": -135},
                    {"name": "Buffalo Bills", "price": 115},
                ]},
                {"key": "spreads", "outcomes": [
                    {"name": "Kansas City Chiefs", "price": -110, "point": -2.5},
                    {"name": "Buffalo Bills", "price": -110, "point": 2.5},
                ]},
                {"key": "totals", "outcomes": [
                    {"name": "Over", "price": -110, "point": 47.5},
                    {"name": "Under", "price": -110, "point": 47.5},
                ]},
                {"key": "player_props", "outcomes": [{"name": "Someone", "price": 200}]},
            ],
        }],
    }


class TestTheOddsApiParsing:
    def test_parse_event(self) -> None:
        ctx = _ctx("the_odds_api")
        event = parse_event(_odds_api_event(), Sport.NFL, ctx)

        assert event is not None
        assert len(event.quotes) == 6
        assert event.updated_at == OBSERVED.replace(minute=55, hour=11)
        assert ctx.issues == []

    def test_market_timestamp_falls_back_to_bookmaker(self) -> None:
        event = parse_event(_odds_api_event(), Sport.NFL, _ctx("the_odds_api"))
        by_market = {q.market: q.observed_at for q in event.quotes}
        assert by_market[Market.MONEYLINE].minute == 50
        assert by_market[Market.SPREAD].minute == 55

    def test_sides_follow_team_names(self) -> None:
        event = parse_event(_odds_api_event(), Sport.NFL, _ctx("the_odds_api"))
        spread = {q.side: q.line for q in event.quotes if q.market == Market.SPREAD}
        assert spread == {QuoteSide.HOME: -2.5, QuoteSide.AWAY: 2.5}

    @pytest.mark.asyncio
    async def test_metered_fetch_records_remaining_quota(self, tracker: QuotaTracker) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[_odds_api_event()],
                headers={"x-requests-used": "500", "x-requests-remaining": "0"},
            )

        client = TheOddsApiClient(
            tracker,
            http=TheOddsApiClient.build_http(max_retries=1, transport=httpx.MockTransport(handler)),
            api_key="secret",
        )
        await client.start()
        try:
            result = await client.fetch(Sport.NFL, WINDOW)
        finally:
            await client.close()

        assert result.ok
        assert len(result.records) == 1
        assert seen[0].url.path == "/v4/sports/americanfootball_nfl/odds"
        assert seen[0].url.params["apiKey"] == "secret"
        assert await tracker.is_exhausted("the_odds_api")
        assert tracker.snapshot()["the_odds_api"]["used"] == 500

    @pytest.mark.asyncio
    async def test_old_quota_headers_are_not_replayed_next_cycle(self, tracker: QuotaTracker) -> None:
        responses = iter([
            httpx.Response(200, json=[], headers={"x-requests-used": "500", "x-requests-remaining": "0"}),
            None,
        ])

        def handler(request: httpx.Request) -> httpx.Response:
            response = next(responses)
            if response is None:
                raise httpx.ConnectError("connection refused", request=request)
            return response

        client = TheOddsApiClient(
            tracker,
            http=TheOddsApiClient.build_http(max_retries=1, transport=httpx.MockTransport(handler)),
            api_key="secret",
        )
        await client.start()
        try:
            await client.fetch(Sport.NFL, WINDOW)
            assert await tracker.is_exhausted("the_odds_api")

            await tracker.begin_cycle()
            result = await client.fetch(Sport.NFL, WINDOW)
        finally:
            await client.close()

        assert result.failure == FailureKind.TRANSIENT
        assert not await tracker.is_exhausted("the_odds_api")

    @pytest.mark.asyncio
    async def test_fetch_game_without_linked_event_makes_no_call(self, tracker: QuotaTracker) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("unexpected request")

        client = TheOddsApiClient(
            tracker,
            http=TheOddsApiClient.build_http(max_retries=1, transport=httpx.MockTransport(handler)),
            api_key="secret",
        )
        await client.start()
        ids = odds_event("401547", "Kansas City Chiefs", "Buffalo Bills", [], "espn").identifiers
        result = await client.fetch_game(Sport.NFL, ids)
        await client.close()

        assert result.ok
        assert result.records == []


# ── HTTP client error mapping ───────────────────────────────────────────

class TestProviderHTTPClient:
    @pytest.mark.asyncio
    async def test_429_is_quota_exhausted(self) -> None:
        http = _mock_http(lambda r: httpx.Response(429))
        await http.start()
        with pytest.raises(QuotaExhaustedError):
            await http.get_json("/odds")
        await http.close()

    @pytest.mark.asyncio
    async def test_quota_marker_in_body_is_quota_exhausted(self) -> None:
        http = _mock_http(lambda r: httpx.Response(401, json={"error_code": "OUT_OF_USAGE_CREDITS"}))
        await http.start()
        with pytest.raises(QuotaExhaustedError):
            await http.get_json("/odds")
        await http.close()

    @pytest.mark.asyncio
    async def test_client_error_mentioning_quota_is_transient(self) -> None:
        http = _mock_http(lambda r: httpx.Response(400, json={"message": "Invalid markets for quota plan"}))
        await http.start()
        with pytest.raises(TransientProviderError, match="client error 400"):
            await http.get_json("/odds")
        await http.close()

    @pytest.mark.asyncio
    async def test_5xx_is_transient(self) -> None:
        http = _mock_http(lambda r: httpx.Response(503))
        await http.start()
        with pytest.raises(TransientProviderError, match="server error 503"):
            await http.get_json("/odds")
        await http.close()

    @pytest.mark.asyncio
    async def test_client_error_is_transient(self) -> None:
        http = _mock_http(lambda r: httpx.Response(404, text="no such league"))
        await http.start()
        with pytest.raises(TransientProviderError, match="client error 404"):
            await http.get_json("/odds")
        await http.close()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        http = _mock_http(handler)
        await http.start()
        with pytest.raises(TransientProviderError, match="timeout"):
            await http.get_json("/odds")
        await http.close()

    @pytest.mark.asyncio
    async def test_malformed_body_is_transient(self) -> None:
        http = _mock_http(lambda r: httpx.Response(200, text="<html>maintenance</html>"))
        await http.start()
        with pytest.raises(TransientProviderError, match="malformed"):
            await http.get_json("/odds")
        await http.close()

    @pytest.mark.asyncio
    async def test_get_before_start_raises(self) -> None:
        http = _mock_http(lambda r: httpx.Response(200, json={}))
        with pytest.raises(RuntimeError):
            await http.get("/odds")

    @pytest.mark.asyncio
    async def test_response_cache_skips_second_request(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"games": []})

        store: dict[str, str] = {}
        cache = MagicMock()
        cache.get_snapshot = AsyncMock(side_effect=lambda key: store.get(key))
        cache.set_snapshot = AsyncMock(side_effect=lambda key, body, ttl_s: store.__setitem__(key, body))

        http = _mock_http(handler, cache=cache)
        await http.start()
        first = await http.get_json("/scoreboard", params={"apiKey": "s3cret", "date": "20261018"}, cache_ttl_s=60)
        second = await http.get_json("/scoreboard", params={"apiKey": "s3cret", "date": "20261018"}, cache_ttl_s=60)
        await http.close()

        assert first == second == {"games": []}
        assert calls == 1
        assert all("s3cret" not in key for key in store)
        assert json.loads(next(iter(store.values()))) == {"games": []}


# ── Fetch guard ─────────────────────────────────────────────────────────

class _SlowProvider(FakeProvider):
    async def _fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        self.calls += 1
        await asyncio.sleep(1.0)
        return FetchResult(provider=self.name)


class TestFetchGuard:
    @pytest.mark.asyncio
    async def test_timeout_becomes_transient_failure(self, tracker: QuotaTracker) -> None:
        provider = _SlowProvider("slow", tracker)
        provider._timeout_s = 0.05
        result = await provider.fetch(Sport.NFL, WINDOW)

        assert result.failure == FailureKind.TRANSIENT
        assert "timed out" in (result.error or "")
        assert result.issues[0].kind == IssueKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_unexpected_error_never_escapes(self, tracker: QuotaTracker) -> None:
        provider = FakeProvider("buggy", tracker, error=KeyError("competitions"))
        result = await provider.fetch(Sport.NFL, WINDOW)
        assert result.failure == FailureKind.TRANSIENT
        assert "unexpected" in (result.error or "")

    @pytest.mark.asyncio
    async def test_exhausted_provider_is_skipped_without_a_call(self, tracker: QuotaTracker) -> None:
        await tracker.record_usage("metered", used=500, remaining=0)
        provider = FakeProvider("metered", tracker, records=[])
        result = await provider.fetch(Sport.NFL, WINDOW)

        assert result.failure == FailureKind.QUOTA_EXHAUSTED
        assert result.skipped is True
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_keyless_provider_is_skipped(self, tracker: QuotaTracker) -> None:
        provider = FakeProvider("paid", tracker, records=[])
        provider.requires_key = True
        result = await provider.fetch(Sport.NFL, WINDOW)
        assert result.skipped is True
        assert result.ok
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_failure_warning_logged_once_per_cycle(
        self, tracker: QuotaTracker, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        fake_logger = MagicMock()
        monkeypatch.setattr(provider_base, "logger", fake_logger)
        provider = FakeProvider("flaky", tracker, error=TransientProviderError("flaky", "HTTP 502"))

        def warnings() -> int:
            return sum(
                1 for c in fake_logger.warning.call_args_list if c.args[0] == "provider_transient_failure"
            )

        await provider.fetch(Sport.NFL, WINDOW)
        await provider.fetch(Sport.NBA, WINDOW)
        assert warnings() == 1

        await tracker.begin_cycle()
        await provider.fetch(Sport.NFL, WINDOW)
        assert warnings() == 2

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, tracker: QuotaTracker) -> None:
        breaker = CircuitBreaker(
            "flaky", failure_threshold=2, recovery_timeout_s=600,
            failure_types=(TransientProviderError, TimeoutError),
        )
        provider = FakeProvider("flaky", tracker, error=TransientProviderError("flaky", "HTTP 502"))
        provider._breaker = breaker

        for _ in range(3):
            result = await provider.fetch(Sport.NFL, WINDOW)

        assert provider.calls == 2
        assert result.skipped is True
        assert result.failure == FailureKind.TRANSIENT


# ── Registry ────────────────────────────────────────────────────────────

class TestRegistry:
    def test_metered_provider_left_out_without_key(self, tracker: QuotaTracker) -> None:
        registry = build_provider_registry(tracker, settings=Settings(the_odds_api_key=""))
        assert registry.schedule_client is not None
        assert registry.schedule_client.name == "espn"
        assert [c.name for c in registry.odds_clients] == ["action_network", "espn"]

    def test_order_comes_from_settings(self, tracker: QuotaTracker) -> None:
        settings = Settings(
            the_odds_api_key="k",
            odds_provider_order=["the_odds_api", "bogus", "action_network"],
        )
        registry = build_provider_registry(tracker, settings=settings)
        assert [c.name for c in registry.odds_clients] == ["the_odds_api", "action_network"]
        assert registry.odds_clients[0].enabled

    def test_configured_key_enables_metered_provider(self, tracker: QuotaTracker) -> None:
        settings = Settings(the_odds_api_key="real-key", action_network_api_key="an-key")
        assert settings.api_key_for("the_odds_api") == "real-key"
        assert settings.api_key_for("action_network") == "an-key"

        registry = build_provider_registry(tracker, settings=settings)
        assert [c.name for c in registry.odds_clients] == ["action_network", "espn", "the_odds_api"]
        assert registry.odds_clients[-1].enabled

    def test_clients_share_one_breaker_per_provider(self, tracker: QuotaTracker) -> None:
        registry = build_provider_registry(tracker, settings=Settings())
        espn_schedule = registry.schedule_client
        espn_odds = next(c for c in registry.odds_clients if c.name == "espn")
        assert espn_schedule.breaker is espn_odds.breaker
