"""
Reconciler configuration.
Uses the GL_RECONCILER_ prefix; Redis/DB/provider settings come from get_settings().
"""
from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReconcilerSettings(BaseSettings):
    """Matching, consensus and output knobs for the reconciliation engine."""

    model_config = SettingsConfigDict(
        env_prefix="GL_RECONCILER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Identity matching
    match_confidence_cutoff: int = Field(default=85, ge=1, le=100, description="Merge only at or above this score")
    match_time_exact_window_s: float = Field(default=900.0, description="Kickoff difference with no penalty")
    match_time_tolerance_s: float = Field(
        default=5400.0, description="Beyond this kickoff difference a pair can never reach the cutoff"
    )
    match_time_penalty_max: int = Field(default=10, description="Largest penalty inside the tolerance window")
    swapped_orientation_penalty: int = Field(default=10, description="Penalty when home/away are reversed")
    ambiguity_floor: int = Field(default=50, description="Below-cutoff pairs at or above this are reported")
    team_aliases_path: Optional[str] = Field(default=None, description="Override for the packaged alias table")

    # Consensus
    consensus_staleness_s: float = Field(
        default=3600.0, description="Quotes older than this (vs. the newest quote) are left out"
    )
    preferred_books: list[str] = Field(
        default=["consensus", "draftkings", "fanduel", "betmgm", "caesars", "espn_bet"],
        description="Book order for the single odds block",
    )

    # Output
    surface_unmatched_odds: bool = Field(
        default=True, description="Odds events with no schedule match become their own games"
    )
    lookbehind_days: int = 0
    lookahead_days: int = 1


def get_reconciler_settings() -> ReconcilerSettings:
    """Load reconciler settings."""
    return ReconcilerSettings()
