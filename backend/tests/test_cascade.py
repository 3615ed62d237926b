"""
Unit tests for the ordered odds cascade.

Run: pytest backend/tests/test_cascade.py -v
"""
from __future__ import annotations

import pytest

from shared.models.enums import FailureKind, Market, OddsState, QuoteSide, Sport
from shared.utils.http_client import QuotaExhaustedError, TransientProviderError

from conftest import WINDOW, FakeProvider, odds_event, quote
from ingest.providers.quota import QuotaTracker
from reconciler.cascade import OddsCascade


def _event(provider: str, line: float = -2.5):
    return odds_event(
        "g1", "Kansas City Chiefs", "Buffalo Bills",
        [quote(provider, Market.SPREAD, QuoteSide.HOME, line=line)],
        provider=provider,
    )


@pytest.mark.asyncio
async def test_first_provider_satisfies(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, records=[_event("providerA")])
    b = FakeProvider("providerB", tracker, records=[_event("providerB")])
    result = await OddsCascade([a, b]).resolve(Sport.NFL, WINDOW)

    assert result.primary == "providerA"
    assert result.backup == "providerB"
    assert result.fallback_used is False
    assert result.odds_state == OddsState.AVAILABLE
    assert result.attempted == ["providerA"]
    assert b.calls == 0


@pytest.mark.asyncio
async def test_empty_first_provider_falls_through(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, records=[])
    b = FakeProvider("providerB", tracker, records=[_event("providerB")])
    result = await OddsCascade([a, b]).resolve(Sport.NFL, WINDOW)

    assert result.primary == "providerB"
    assert result.fallback_used is True
    assert result.backup == "providerB"
    assert result.attempted == ["providerA", "providerB"]
    assert len(result.quotes) == 1


@pytest.mark.asyncio
async def test_event_without_usable_quotes_does_not_satisfy(tracker: QuotaTracker) -> None:
    empty_quotes = odds_event("g1", "Chiefs", "Bills", [quote("providerA", Market.MONEYLINE, QuoteSide.HOME)], "providerA")
    a = FakeProvider("providerA", tracker, records=[empty_quotes])
    b = FakeProvider("providerB", tracker, records=[_event("providerB")])
    result = await OddsCascade([a, b]).resolve(Sport.NFL, WINDOW)
    assert result.primary == "providerB"


@pytest.mark.asyncio
async def test_transient_failure_is_recorded_and_skipped(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, error=TransientProviderError("providerA", "HTTP 503"))
    b = FakeProvider("providerB", tracker, records=[_event("providerB")])
    result = await OddsCascade([a, b]).resolve(Sport.NFL, WINDOW)

    assert result.primary == "providerB"
    assert result.failures == {"providerA": FailureKind.TRANSIENT}
    assert [i.provider for i in result.issues] == ["providerA"]


@pytest.mark.asyncio
async def test_all_failures_is_fetch_failed_and_never_raises(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, error=TransientProviderError("providerA", "boom"))
    b = FakeProvider("providerB", tracker, error=RuntimeError("parser bug"))
    result = await OddsCascade([a, b]).resolve(Sport.NFL, WINDOW)

    assert result.primary is None
    assert result.events == []
    assert result.odds_state == OddsState.FETCH_FAILED
    assert set(result.failures) == {"providerA", "providerB"}


@pytest.mark.asyncio
async def test_all_empty_is_none_offered(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, records=[])
    b = FakeProvider("providerB", tracker, error=TransientProviderError("providerB", "boom"))
    result = await OddsCascade([a, b]).resolve(Sport.NFL, WINDOW)
    assert result.odds_state == OddsState.NONE_OFFERED


@pytest.mark.asyncio
async def test_quota_exhaustion_skips_provider_for_rest_of_cycle(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, error=QuotaExhaustedError("providerA", "HTTP 429"))
    b = FakeProvider("providerB", tracker, records=[_event("providerB")])
    cascade = OddsCascade([a, b])

    first = await cascade.resolve(Sport.NFL, WINDOW)
    assert first.failures["providerA"] == FailureKind.QUOTA_EXHAUSTED
    assert a.calls == 1

    second = await cascade.resolve(Sport.NBA, WINDOW)
    assert second.failures["providerA"] == FailureKind.QUOTA_EXHAUSTED
    assert a.calls == 1  # no network call once exhausted
    assert second.primary == "providerB"

    await tracker.begin_cycle()
    await cascade.resolve(Sport.NFL, WINDOW)
    assert a.calls == 2


@pytest.mark.asyncio
async def test_unsupported_sport_is_not_attempted(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, records=[_event("providerA")])
    a.supported_sports = frozenset({Sport.NBA})
    b = FakeProvider("providerB", tracker, records=[_event("providerB")])
    result = await OddsCascade([a, b]).resolve(Sport.NFL, WINDOW)
    assert result.attempted == ["providerB"]
    assert result.primary == "providerB"
    assert result.fallback_used is False


@pytest.mark.asyncio
async def test_resolve_game_uses_only_per_game_providers(tracker: QuotaTracker) -> None:
    a = FakeProvider("providerA", tracker, records=[_event("providerA")])
    b = FakeProvider("providerB", tracker, records=[_event("providerB")], game_fetch=True)
    result = await OddsCascade([a, b]).resolve_game(Sport.NFL, _event("x").identifiers)
    assert result.primary == "providerB"
    assert result.fallback_used is False
    assert a.calls == 0


@pytest.mark.asyncio
async def test_no_providers_is_none_offered(tracker: QuotaTracker) -> None:
    result = await OddsCascade([]).resolve(Sport.NFL, WINDOW)
    assert result.odds_state == OddsState.NONE_OFFERED
    assert result.attempted == []
