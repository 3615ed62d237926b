"""
Unit tests for in-feed duplicate collapsing.

Run: pytest backend/tests/test_dedupe.py -v
"""
from __future__ import annotations

from datetime import timedelta

from shared.models.enums import Sport

from conftest import KICKOFF, OBSERVED, schedule_game
from reconciler.dedupe import DeduplicationResolver
from reconciler.matching import IdentityMatcher


def test_newer_record_survives_and_aliases_older(matcher: IdentityMatcher) -> None:
    old = schedule_game("100", "Kansas City Chiefs", "Buffalo Bills", updated_at=OBSERVED)
    new = schedule_game("200", "Chiefs", "Bills", updated_at=OBSERVED + timedelta(minutes=5))
    result = DeduplicationResolver(matcher).resolve([old, new], Sport.NFL)

    assert [s.provider_id for s in result.survivors] == ["200"]
    assert result.aliases == {"200": ["100"]}
    assert set(result.survivors[0].identifiers.provider_ids) == {("espn", "100"), ("espn", "200")}
    assert result.removed == 1


def test_result_does_not_depend_on_input_order(matcher: IdentityMatcher) -> None:
    records = [
        schedule_game("1", "Chiefs", "Bills"),
        schedule_game("2", "Kansas City Chiefs", "Buffalo Bills", venue="Arrowhead"),
        schedule_game("3", "Jets", "Patriots"),
    ]
    resolver = DeduplicationResolver(matcher)
    forward = resolver.resolve(records, Sport.NFL)
    backward = resolver.resolve(list(reversed(records)), Sport.NFL)

    assert [s.model_dump_json() for s in forward.survivors] == [s.model_dump_json() for s in backward.survivors]
    assert forward.aliases == backward.aliases == {"2": ["1"]}


def test_tie_breaks_on_smallest_provider_id(matcher: IdentityMatcher) -> None:
    result = DeduplicationResolver(matcher).resolve(
        [schedule_game("b", "Chiefs", "Bills"), schedule_game("a", "Chiefs", "Bills")], Sport.NFL
    )
    assert result.aliases == {"a": ["b"]}


def test_same_provider_id_collapses(matcher: IdentityMatcher) -> None:
    result = DeduplicationResolver(matcher).resolve(
        [
            schedule_game("7", "Chiefs", "Bills", updated_at=OBSERVED),
            schedule_game("7", "Chiefs", "Bills", updated_at=OBSERVED + timedelta(seconds=30)),
        ],
        Sport.NFL,
    )
    assert len(result.survivors) == 1
    assert result.survivors[0].updated_at == OBSERVED + timedelta(seconds=30)
    assert result.aliases == {}


def test_doubleheader_is_not_a_duplicate(matcher: IdentityMatcher) -> None:
    result = DeduplicationResolver(matcher).resolve(
        [
            schedule_game("g1", "Yankees", "Red Sox", sport=Sport.MLB),
            schedule_game("g2", "Yankees", "Red Sox", when=KICKOFF + timedelta(hours=5), sport=Sport.MLB),
        ],
        Sport.MLB,
    )
    assert [s.provider_id for s in result.survivors] == ["g1", "g2"]
    assert result.aliases == {}


def test_survivor_keeps_its_issued_id_after_absorbing_smaller_id(matcher: IdentityMatcher) -> None:
    old = schedule_game("100", "Kansas City Chiefs", "Buffalo Bills", updated_at=OBSERVED)
    new = schedule_game("200", "Kansas City Chiefs", "Buffalo Bills", updated_at=OBSERVED + timedelta(hours=1))
    survivor = DeduplicationResolver(matcher).resolve([new, old], Sport.NFL).survivors[0]

    # "100" sorts before "200" in the merged bundle; the issued ID must not follow it.
    assert survivor.identifiers.id_for("espn") == "100"
    assert survivor.provider_id == "200"
    assert survivor.updated_at == OBSERVED + timedelta(hours=1)
