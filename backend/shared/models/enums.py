"""Domain enumerations for GameLine."""
from __future__ import annotations

from enum import Enum


class Sport(str, Enum):
    NFL = "nfl"
    NBA = "nba"
    NHL = "nhl"
    MLB = "mlb"
    NCAAF = "ncaaf"
    NCAAB = "ncaab"
    WNBA = "wnba"


class GameStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    FINAL = "final"
    POSTPONED = "postponed"
    CANCELLED = "cancelled"

    @property
    def is_live(self) -> bool:
        return self == GameStatus.LIVE

    @property
    def is_terminal(self) -> bool:
        # Postponed games get rescheduled and stay writable.
        return self in (GameStatus.FINAL, GameStatus.CANCELLED)


class ProviderName(str, Enum):
    ESPN = "espn"
    ACTION_NETWORK = "action_network"
    THE_ODDS_API = "the_odds_api"


class ProviderRole(str, Enum):
    SCHEDULE = "schedule"
    ODDS = "odds"


class Market(str, Enum):
    SPREAD = "spread"
    TOTAL = "total"
    MONEYLINE = "moneyline"


class QuoteSide(str, Enum):
    HOME = "home"
    AWAY = "away"
    OVER = "over"
    UNDER = "under"


class FailureKind(str, Enum):
    """Why a provider call produced nothing usable."""
    TRANSIENT = "transient"
    QUOTA_EXHAUSTED = "quota_exhausted"


class OddsState(str, Enum):
    AVAILABLE = "available"
    NONE_OFFERED = "none_offered"
    FETCH_FAILED = "fetch_failed"


class SyncStage(str, Enum):
    FETCH_SCHEDULE = "fetch_schedule"
    FETCH_ODDS_CASCADE = "fetch_odds_cascade"
    MATCH = "match"
    DEDUPE = "dedupe"
    MERGE_FIELDS = "merge_fields"
    COMPUTE_CONSENSUS = "compute_consensus"
    ATTACH_PROVENANCE = "attach_provenance"
    UPSERT = "upsert"


class IssueKind(str, Enum):
    TRANSIENT = "transient"
    QUOTA_EXHAUSTED = "quota_exhausted"
    MATCH_AMBIGUITY = "match_ambiguity"
    SHAPE_DRIFT = "shape_drift"
    STAGE_ERROR = "stage_error"
    STORE_ERROR = "store_error"


class MatchRule(str, Enum):
    CROSS_REFERENCE = "cross_reference"
    EXACT = "exact"
    CONTAINMENT = "containment"
    ALIAS = "alias"
    NONE = "none"
