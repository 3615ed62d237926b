"""
Collapse duplicate records inside a single provider's feed.

Providers occasionally list the same game twice (re-issued IDs, a stale
copy next to a fresh one). Two records are duplicates when they share a
provider ID or the IdentityMatcher scores them at or above the cutoff.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, TypeVar, Union

from shared.models.domain import OddsEvent, ScheduleGame
from shared.models.enums import Sport
from shared.utils.logging import get_logger

from reconciler.matching import IdentityMatcher

logger = get_logger(__name__)

Record = Union[ScheduleGame, OddsEvent]
R = TypeVar("R", ScheduleGame, OddsEvent)


@dataclass
class DedupeResult:
    survivors: list = field(default_factory=list)
    # survivor provider ID -> provider IDs it absorbed
    aliases: dict[str, list[str]] = field(default_factory=dict)

    @property
    def removed(self) -> int:
        return sum(len(v) for v in self.aliases.values())


def _rank(record: Record) -> tuple:
    """Sort key: best survivor first. Fully ordered so input order never matters."""
    ts = record.updated_at.timestamp() if record.updated_at else float("-inf")
    return (-ts, -record.optional_field_count(), record.provider_id, record.model_dump_json())


class DeduplicationResolver:
    def __init__(self, matcher: IdentityMatcher) -> None:
        self._matcher = matcher

    def resolve(self, records: Sequence[R], sport: Optional[Sport] = None) -> DedupeResult:
        clusters: list[list[R]] = []
        for record in sorted(records, key=_rank):
            for cluster in clusters:
                if self._duplicates(cluster[0], record, sport):
                    cluster.append(record)
                    break
            else:
                clusters.append([record])

        result = DedupeResult()
        for cluster in clusters:
            survivor, losers = cluster[0], cluster[1:]
            if losers:
                survivor_id = survivor.provider_id
                ids = survivor.identifiers
                for loser in losers:
                    ids = ids.merged(loser.identifiers)
                survivor = survivor.model_copy(update={"identifiers": ids})
                absorbed = sorted({l.provider_id for l in losers} - {survivor_id})
                if absorbed:
                    result.aliases[survivor_id] = absorbed
                logger.debug(
                    "duplicates_collapsed",
                    provider=survivor.provider,
                    survivor=survivor_id,
                    absorbed=absorbed,
                )
            result.survivors.append(survivor)

        result.survivors.sort(key=lambda r: (r.identifiers.scheduled_at, r.provider_id))
        return result

    def _duplicates(self, keep: Record, other: Record, sport: Optional[Sport]) -> bool:
        if keep.provider_id and keep.provider_id == other.provider_id:
            return True
        return self._matcher.is_match(self._matcher.match(keep.identifiers, other.identifiers, sport))
