"""
Field precedence for unified games.

FIELD_POLICY names the authoritative side for every merged field. The owner
wins whenever it has a value; the other side only fills gaps. When a stored
game is updated, an empty incoming value never erases a stored one.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from shared.models.domain import UnifiedGame


class Owner(str, Enum):
    SCHEDULE = "schedule"
    ODDS = "odds"


FIELD_POLICY: dict[str, Owner] = {
    "status": Owner.SCHEDULE,
    "scheduled_at": Owner.SCHEDULE,
    "home": Owner.SCHEDULE,
    "away": Owner.SCHEDULE,
    "venue": Owner.SCHEDULE,
    "broadcast": Owner.SCHEDULE,
    "weather": Owner.SCHEDULE,
    "period": Owner.SCHEDULE,
    "clock": Owner.SCHEDULE,
    "odds": Owner.ODDS,
    "consensus": Owner.ODDS,
    "best_odds": Owner.ODDS,
    "betting": Owner.ODDS,
}

# Whole snapshots from one provider and cycle; never mixed field by field.
ATOMIC_FIELDS = frozenset({"odds", "consensus", "best_odds", "betting"})

# Never carried over from the stored copy; always recomputed per cycle.
_REPLACED = frozenset({"canonical_id", "sport", "provider_ids", "source_info", "last_updated"})


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _prefer(primary: Any, fallback: Any) -> Any:
    if isinstance(primary, BaseModel) and isinstance(fallback, BaseModel) and type(primary) is type(fallback):
        return _merge_model(primary, fallback)
    return fallback if is_empty(primary) else primary


def _merge_model(primary: BaseModel, fallback: BaseModel) -> BaseModel:
    update = {
        name: _prefer(getattr(primary, name), getattr(fallback, name))
        for name in type(primary).model_fields
    }
    return primary.model_copy(update=update)


def _pick(name: str, primary: Any, fallback: Any) -> Any:
    if name in ATOMIC_FIELDS:
        return fallback if primary is None else primary
    return _prefer(primary, fallback)


def merge_fields(
    schedule_part: Optional[Mapping[str, Any]],
    odds_part: Optional[Mapping[str, Any]],
) -> dict[str, Any]:
    """Combine per-field values from the schedule and odds sides by FIELD_POLICY."""
    schedule_part = schedule_part or {}
    odds_part = odds_part or {}
    merged: dict[str, Any] = {}
    for name, owner in FIELD_POLICY.items():
        mine, theirs = (
            (schedule_part.get(name), odds_part.get(name))
            if owner == Owner.SCHEDULE
            else (odds_part.get(name), schedule_part.get(name))
        )
        value = _pick(name, mine, theirs)
        if not is_empty(value):
            merged[name] = value
    return merged


def merge_games(existing: UnifiedGame, incoming: UnifiedGame) -> UnifiedGame:
    """
    Fold a freshly reconciled game into its stored copy.

    Incoming values win when present; betting blocks are replaced whole, not
    patched. Provider IDs are unioned and last_updated never moves backwards.
    """
    update: dict[str, Any] = {}
    for name in UnifiedGame.model_fields:
        if name in _REPLACED:
            continue
        update[name] = _pick(name, getattr(incoming, name), getattr(existing, name))

    update["provider_ids"] = sorted({*existing.provider_ids, *incoming.provider_ids})
    update["source_info"] = incoming.source_info
    stamps = [t for t in (existing.last_updated, incoming.last_updated) if t is not None]
    update["last_updated"] = max(stamps) if stamps else None
    return UnifiedGame.model_validate({**incoming.model_dump(), **update})
