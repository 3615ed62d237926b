"""
Cross-provider game identity resolution.

Two GameIdentifiers describe the same real-world game when:
  1. they share a provider ID, or a stored cross reference links them (certain, 100), or
  2. BOTH the home and the away names match under the first applicable rule
     (exact 100, token-aligned containment 90, alias table 85), after which a
     kickoff-time penalty is applied.

The result is a 0-100 score. Callers merge only at or above the configured
cutoff; anything below is kept apart, since a false split costs less than a
false merge.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from shared.models.domain import GameIdentifiers, MatchConfidence
from shared.models.enums import MatchRule, Sport
from shared.utils.logging import get_logger

from reconciler.config import ReconcilerSettings, get_reconciler_settings

logger = get_logger(__name__)

DEFAULT_ALIAS_PATH = Path(__file__).resolve().parent / "data" / "team_aliases.json"

SUFFIX_TOKENS = frozenset({"the", "city", "state", "st", "university", "univ", "u", "college", "fc"})
_TOKEN_RE = re.compile(r"[a-z0-9]+")

EXACT_SCORE = 100
CONTAINMENT_SCORE = 90
ALIAS_SCORE = 85
MIN_CONTAINMENT_LEN = 3


# ── Normalization ───────────────────────────────────────────────────────
def name_tokens(name: str) -> tuple[str, ...]:
    """Lowercase alphanumeric tokens with common suffix words removed."""
    return tuple(t for t in _TOKEN_RE.findall((name or "").lower()) if t not in SUFFIX_TOKENS)


def normalize_team_name(name: str) -> str:
    return "".join(name_tokens(name))


def aligned_substring(needle: Sequence[str], haystack: Sequence[str]) -> bool:
    """
    True when the joined needle occurs in the joined haystack starting and
    ending on token boundaries. "nets" is not found in "charlotte hornets".
    """
    small, big = "".join(needle), "".join(haystack)
    if not small or len(small) > len(big):
        return False
    bounds = {0}
    offset = 0
    for token in haystack:
        offset += len(token)
        bounds.add(offset)
    start = big.find(small)
    while start != -1:
        if start in bounds and start + len(small) in bounds:
            return True
        start = big.find(small, start + 1)
    return False


# ── Alias table ─────────────────────────────────────────────────────────
@dataclass(frozen=True)
class _AliasEntry:
    key: str
    nickname: tuple[str, ...]
    terms: tuple[tuple[str, ...], ...]


class AliasTable:
    """
    Franchise nickname <-> city/abbreviation terms, per sport.

    Loaded from versioned JSON so renames are a data change. A name resolves
    to the nicknames it spells out; only when it names none does it fall back
    to nicknames whose city or abbreviation terms it mentions.
    """

    def __init__(self, version: str, sports: Mapping[str, Mapping[str, Iterable[str]]]) -> None:
        self.version = version
        self._entries: dict[str, list[_AliasEntry]] = {}
        for sport, table in sports.items():
            entries = []
            for nickname, terms in table.items():
                nick = name_tokens(nickname)
                if not nick:
                    continue
                entries.append(_AliasEntry(
                    key=f"{sport}:{''.join(nick)}",
                    nickname=nick,
                    terms=tuple(t for t in (name_tokens(term) for term in terms) if t),
                ))
            self._entries[sport] = entries

    @classmethod
    def load(cls, path: str | Path | None = None) -> "AliasTable":
        source = Path(path) if path else DEFAULT_ALIAS_PATH
        with source.open(encoding="utf-8") as fh:
            raw = json.load(fh)
        table = cls(version=str(raw.get("version", "unversioned")), sports=raw.get("sports") or {})
        logger.info("team_aliases_loaded", version=table.version, path=str(source))
        return table

    @classmethod
    def empty(cls) -> "AliasTable":
        return cls(version="empty", sports={})

    def _for(self, sport: Optional[Sport]) -> list[_AliasEntry]:
        if sport is not None:
            return self._entries.get(sport.value, [])
        return [e for entries in self._entries.values() for e in entries]

    def candidates(self, tokens: Sequence[str], sport: Optional[Sport] = None) -> frozenset[str]:
        entries = self._for(sport)
        explicit = frozenset(e.key for e in entries if aligned_substring(e.nickname, tokens))
        if explicit:
            return explicit
        return frozenset(
            e.key for e in entries if any(aligned_substring(term, tokens) for term in e.terms)
        )


def team_similarity(
    a: str, b: str, aliases: AliasTable, sport: Optional[Sport] = None
) -> tuple[int, MatchRule]:
    """Score two team names; the first matching rule wins."""
    ta, tb = name_tokens(a), name_tokens(b)
    na, nb = "".join(ta), "".join(tb)
    if not na or not nb:
        return 0, MatchRule.NONE
    if na == nb:
        return EXACT_SCORE, MatchRule.EXACT
    short, long_ = (ta, tb) if len(na) <= len(nb) else (tb, ta)
    if len("".join(short)) >= MIN_CONTAINMENT_LEN and aligned_substring(short, long_):
        return CONTAINMENT_SCORE, MatchRule.CONTAINMENT
    if aliases.candidates(ta, sport) & aliases.candidates(tb, sport):
        return ALIAS_SCORE, MatchRule.ALIAS
    return 0, MatchRule.NONE


def _preference(conf: MatchConfidence) -> tuple:
    return (conf.linked, conf.score, -(conf.time_delta_s or 0.0))


# ── Matcher ─────────────────────────────────────────────────────────────
@dataclass
class MatchPlan:
    """One-to-one assignment of right-hand records onto left-hand records."""
    pairs: list[tuple[int, int, MatchConfidence]] = field(default_factory=list)
    unmatched_right: list[int] = field(default_factory=list)
    ambiguous: list[tuple[int, int, MatchConfidence]] = field(default_factory=list)


class IdentityMatcher:
    """Scores whether two identifier bundles describe the same game."""

    def __init__(
        self,
        settings: ReconcilerSettings | None = None,
        aliases: AliasTable | None = None,
        cross_references: Mapping[tuple[str, str], str] | None = None,
    ) -> None:
        self._settings = settings or get_reconciler_settings()
        self._aliases = aliases if aliases is not None else AliasTable.load(self._settings.team_aliases_path)
        self._cross_refs: dict[tuple[str, str], str] = dict(cross_references or {})

    @property
    def cutoff(self) -> int:
        return self._settings.match_confidence_cutoff

    @property
    def aliases(self) -> AliasTable:
        return self._aliases

    def with_cross_references(self, refs: Mapping[tuple[str, str], str]) -> "IdentityMatcher":
        """A matcher sharing settings and aliases but with its own cross-reference map."""
        return IdentityMatcher(self._settings, self._aliases, refs)

    def is_match(self, confidence: MatchConfidence) -> bool:
        return confidence.is_match(self.cutoff)

    def match(
        self, a: GameIdentifiers, b: GameIdentifiers, sport: Optional[Sport] = None
    ) -> MatchConfidence:
        delta = abs((a.scheduled_at - b.scheduled_at).total_seconds())
        linked = self._cross_referenced(a, b)

        score, rule = self._orientation(a.home_team, b.home_team, a.away_team, b.away_team, sport)
        swapped = False
        alt_score, alt_rule = self._orientation(a.home_team, b.away_team, a.away_team, b.home_team, sport)
        alt_score = max(0, alt_score - self._settings.swapped_orientation_penalty) if alt_score else 0
        if alt_score > score:
            score, rule, swapped = alt_score, alt_rule, True

        # A link decides the match; names and kickoff still decide the score and
        # orientation so they read the same before and after aliases are stored.
        if score == 0:
            if linked:
                return MatchConfidence(
                    score=100, rule=MatchRule.CROSS_REFERENCE, time_delta_s=delta, linked=True
                )
            return MatchConfidence(score=0, rule=MatchRule.NONE, time_delta_s=delta)
        return MatchConfidence(
            score=self._time_adjusted(score, delta),
            rule=rule,
            swapped=swapped,
            time_delta_s=delta,
            linked=linked,
        )

    def best_match(
        self,
        candidate: GameIdentifiers,
        pool: Sequence[GameIdentifiers],
        sport: Optional[Sport] = None,
    ) -> tuple[Optional[int], MatchConfidence]:
        """
        Index of the best partner in ``pool`` and its confidence.

        The index is None when nothing reaches the cutoff; the confidence is
        still the best seen so callers can report near misses.
        """
        best_idx: Optional[int] = None
        best = MatchConfidence(score=0)
        for idx, other in enumerate(pool):
            conf = self.match(other, candidate, sport)
            if conf.score == 0 and not conf.linked:
                continue
            if best_idx is None or _preference(conf) > _preference(best):
                best, best_idx = conf, idx
        if best_idx is not None and not self.is_match(best):
            best_idx = None
        return best_idx, best

    def assign(
        self,
        left: Sequence[GameIdentifiers],
        right: Sequence[GameIdentifiers],
        sport: Optional[Sport] = None,
    ) -> MatchPlan:
        """
        Greedy one-to-one assignment: linked pairs first, then highest score, then
        smallest kickoff gap.
        Right-hand records left without a partner are reported as unmatched; those
        whose best candidate scored between the ambiguity floor and the cutoff are
        also reported as ambiguous.
        """
        scored: list[tuple[bool, int, float, int, int, MatchConfidence]] = []
        best_below: dict[int, tuple[int, MatchConfidence]] = {}
        for ri, r in enumerate(right):
            for li, l in enumerate(left):
                conf = self.match(l, r, sport)
                if self.is_match(conf):
                    scored.append((not conf.linked, -conf.score, conf.time_delta_s or 0.0, li, ri, conf))
                elif conf.score >= self._settings.ambiguity_floor:
                    prev = best_below.get(ri)
                    if prev is None or conf.score > prev[1].score:
                        best_below[ri] = (li, conf)

        plan = MatchPlan()
        used_left: set[int] = set()
        used_right: set[int] = set()
        for *_, li, ri, conf in sorted(scored, key=lambda s: s[:5]):
            if li in used_left or ri in used_right:
                continue
            used_left.add(li)
            used_right.add(ri)
            plan.pairs.append((li, ri, conf))

        for ri in range(len(right)):
            if ri in used_right:
                continue
            plan.unmatched_right.append(ri)
            if ri in best_below:
                li, conf = best_below[ri]
                plan.ambiguous.append((li, ri, conf))
        return plan

    # ── Internals ───────────────────────────────────────────────────────
    def _cross_referenced(self, a: GameIdentifiers, b: GameIdentifiers) -> bool:
        if set(a.provider_ids) & set(b.provider_ids):
            return True
        if not self._cross_refs:
            return False
        ca = {self._cross_refs[p] for p in a.provider_ids if p in self._cross_refs}
        cb = {self._cross_refs[p] for p in b.provider_ids if p in self._cross_refs}
        return bool(ca & cb)

    def _orientation(
        self, home_a: str, home_b: str, away_a: str, away_b: str, sport: Optional[Sport]
    ) -> tuple[int, MatchRule]:
        home_score, home_rule = team_similarity(home_a, home_b, self._aliases, sport)
        if home_score == 0:
            return 0, MatchRule.NONE
        away_score, away_rule = team_similarity(away_a, away_b, self._aliases, sport)
        if away_score == 0:
            return 0, MatchRule.NONE
        if home_score <= away_score:
            return home_score, home_rule
        return away_score, away_rule

    def _time_adjusted(self, score: int, delta_s: float) -> int:
        exact = self._settings.match_time_exact_window_s
        tolerance = max(self._settings.match_time_tolerance_s, exact)
        if delta_s <= exact:
            return score
        if delta_s <= tolerance:
            frac = (delta_s - exact) / max(tolerance - exact, 1.0)
            return max(0, score - round(frac * self._settings.match_time_penalty_max))
        # Outside the window: never mergeable, and less plausible the further apart.
        overflow_h = (delta_s - tolerance) / 3600.0
        return max(0, min(score, self.cutoff - 1) - math.ceil(overflow_h))
