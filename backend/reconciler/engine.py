"""
Reconciliation engine.

One sync cycle for a sport runs these stages in order:

    FETCH_SCHEDULE -> FETCH_ODDS_CASCADE -> DEDUPE -> MATCH -> MERGE_FIELDS
    -> COMPUTE_CONSENSUS -> ATTACH_PROVENANCE -> UPSERT

Every stage reports its problems as SyncIssues instead of raising, so a
failing odds cascade still yields schedule-only games and a store error on
one game does not stop the others. The produced UnifiedGame carries no
wall-clock time, so re-running a cycle on unchanged provider data writes an
identical record.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from shared.models.domain import (
    BettingSplits,
    GameIdentifiers,
    MatchConfidence,
    OddsEvent,
    RawOddsQuote,
    ScheduleGame,
    SourceInfo,
    SyncIssue,
    SyncReport,
    TeamSide,
    UnifiedGame,
)
from shared.models.enums import IssueKind, OddsState, QuoteSide, Sport, SyncStage
from shared.utils.logging import get_logger
from shared.utils.metrics import (
    GAMES_UPSERTED,
    LIVE_GAMES,
    MATCH_DECISIONS,
    SYNC_DURATION,
    SYNC_ISSUES,
)

from ingest.providers.base import FetchResult, TimeWindow
from ingest.providers.quota import QuotaTracker
from ingest.providers.registry import ProviderRegistry
from reconciler.cascade import CascadeResult, OddsCascade
from reconciler.config import ReconcilerSettings, get_reconciler_settings
from reconciler.consensus import ConsensusCalculator
from reconciler.dedupe import DeduplicationResolver
from reconciler.matching import IdentityMatcher
from reconciler.merge import merge_fields
from reconciler.store import AliasMap, GameStore

logger = get_logger(__name__)

_SCHEDULE_FIELDS = (
    "status", "scheduled_at", "home", "away", "venue", "broadcast", "weather", "period", "clock",
)
_FLIPPED_SIDE = {QuoteSide.HOME: QuoteSide.AWAY, QuoteSide.AWAY: QuoteSide.HOME}


def mint_canonical_id(provider: str, provider_game_id: str) -> str:
    """Deterministic canonical ID for a game first seen as (provider, id)."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"gameline:{provider}:{provider_game_id}"))


def _flip_pct(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(100.0 - value, 2)


def orient_event(event: OddsEvent) -> OddsEvent:
    """Swap home and away on an odds event whose provider lists them reversed."""
    ids = event.identifiers
    quotes = [
        q.model_copy(update={"side": _FLIPPED_SIDE.get(q.side, q.side)}) for q in event.quotes
    ]
    betting = event.betting
    if betting is not None:
        flip = _flip_pct
        betting = BettingSplits(
            spread_home_bet_pct=flip(betting.spread_home_bet_pct),
            spread_home_money_pct=flip(betting.spread_home_money_pct),
            moneyline_home_bet_pct=flip(betting.moneyline_home_bet_pct),
            moneyline_home_money_pct=flip(betting.moneyline_home_money_pct),
            total_over_bet_pct=betting.total_over_bet_pct,
            total_over_money_pct=betting.total_over_money_pct,
            reverse_line_movement=betting.reverse_line_movement,
        )
    return event.model_copy(update={
        "identifiers": ids.model_copy(update={"home_team": ids.away_team, "away_team": ids.home_team}),
        "quotes": quotes,
        "betting": betting,
    })


def _schedule_fields(source: ScheduleGame | UnifiedGame) -> dict[str, Any]:
    fields = {name: getattr(source, name) for name in _SCHEDULE_FIELDS if name != "scheduled_at"}
    fields["scheduled_at"] = (
        source.identifiers.scheduled_at if isinstance(source, ScheduleGame) else source.scheduled_at
    )
    return fields


def _odds_fields(event: OddsEvent) -> dict[str, Any]:
    ids = event.identifiers
    return {
        "scheduled_at": ids.scheduled_at,
        "home": TeamSide(name=ids.home_team),
        "away": TeamSide(name=ids.away_team),
        "betting": event.betting,
    }


def _latest(*stamps: Optional[datetime]) -> Optional[datetime]:
    present = [s for s in stamps if s is not None]
    return max(present) if present else None


@dataclass
class _Pairing:
    """One game to build: a schedule side, an odds side, or both."""
    schedule: Optional[ScheduleGame | UnifiedGame]
    event: Optional[OddsEvent]
    confidence: Optional[MatchConfidence]


class Reconciler:
    def __init__(
        self,
        registry: ProviderRegistry,
        cascade: OddsCascade,
        matcher: IdentityMatcher,
        deduper: DeduplicationResolver,
        store: GameStore,
        tracker: QuotaTracker,
        settings: ReconcilerSettings | None = None,
        consensus: ConsensusCalculator | None = None,
    ) -> None:
        self._registry = registry
        self._cascade = cascade
        self._matcher = matcher
        self._deduper = deduper
        self._store = store
        self._tracker = tracker
        self._settings = settings or get_reconciler_settings()
        self._consensus = consensus or ConsensusCalculator(
            staleness_s=self._settings.consensus_staleness_s,
            preferred_books=self._settings.preferred_books,
        )

    @property
    def store(self) -> GameStore:
        return self._store

    # ── Entry points ────────────────────────────────────────────────────
    async def sync_all(self, sports: Sequence[Sport]) -> list[SyncReport]:
        """One cycle across sports. A failure in one sport never affects another."""
        await self._tracker.begin_cycle()
        return list(await asyncio.gather(*(self._sync_isolated(s) for s in sports)))

    async def sync_sport(self, sport: Sport, window: TimeWindow | None = None) -> SyncReport:
        started = time.perf_counter()
        window = window or TimeWindow.around(
            datetime.now(timezone.utc),
            days_back=self._settings.lookbehind_days,
            days_ahead=self._settings.lookahead_days,
        )
        report = SyncReport(sport=sport)
        issues: list[SyncIssue] = []

        # FETCH_SCHEDULE and FETCH_ODDS_CASCADE are independent network work.
        fetched, cascade = await asyncio.gather(
            self._fetch_schedule(sport, window), self._cascade.resolve(sport, window)
        )
        issues.extend(fetched.issues)
        issues.extend(cascade.issues)
        schedule_games = [r for r in fetched.records if isinstance(r, ScheduleGame)]
        report.odds_provider = cascade.primary
        report.fallback_used = cascade.fallback_used
        report.odds_state = cascade.odds_state

        known = await self._load_aliases(sport, issues)
        matcher = self._matcher.with_cross_references(known)

        # DEDUPE
        events: list[OddsEvent] = list(cascade.events)
        try:
            schedule_games = self._deduper.resolve(schedule_games, sport).survivors
            events = self._deduper.resolve(events, sport).survivors
        except Exception as exc:
            issues.append(self._stage_error(SyncStage.DEDUPE, exc, sport))

        # MATCH
        pairings = self._pair(matcher, sport, schedule_games, events, issues)

        # MERGE_FIELDS, COMPUTE_CONSENSUS, ATTACH_PROVENANCE, UPSERT
        for pairing in pairings:
            game = await self._compose(sport, pairing, cascade, known, issues)
            if game is None:
                continue
            outcome = await self._write(game, pairing, issues)
            if outcome is None:
                continue
            if outcome == "skipped":
                report.games_skipped_terminal += 1
            else:
                report.games_written += 1
                if outcome.status.is_live:
                    report.live_games += 1

        report.issues = issues
        for issue in issues:
            SYNC_ISSUES.labels(sport=sport.value, stage=issue.stage.value, kind=issue.kind.value).inc()
        LIVE_GAMES.labels(sport=sport.value).set(report.live_games)
        SYNC_DURATION.labels(sport=sport.value).observe(time.perf_counter() - started)
        logger.info(
            "sync_sport_complete",
            sport=sport.value,
            written=report.games_written,
            skipped_terminal=report.games_skipped_terminal,
            live=report.live_games,
            odds_provider=report.odds_provider,
            fallback_used=report.fallback_used,
            odds_state=report.odds_state.value,
            issues=len(issues),
        )
        return report

    async def refresh_game(self, sport: Sport, canonical_id: str) -> Optional[UnifiedGame]:
        """Re-fetch odds for one stored game through per-game endpoints."""
        stored = await self._store.get(canonical_id)
        if stored is None:
            return None
        if stored.status.is_terminal:
            return stored

        issues: list[SyncIssue] = []
        cascade = await self._cascade.resolve_game(sport, stored.identifiers)
        known = await self._load_aliases(sport, issues)
        matcher = self._matcher.with_cross_references(known)

        idx, conf = matcher.best_match(stored.identifiers, [e.identifiers for e in cascade.events], sport)
        if idx is None:
            logger.info(
                "refresh_game_no_odds",
                sport=sport.value,
                canonical_id=canonical_id,
                odds_state=cascade.odds_state.value,
            )
            return stored

        event = cascade.events[idx]
        pairing = _Pairing(
            schedule=stored,
            event=orient_event(event) if conf.swapped else event,
            confidence=conf,
        )
        game = await self._compose(sport, pairing, cascade, known, issues, canonical_id=canonical_id)
        if game is None:
            return stored
        outcome = await self._write(game, pairing, issues)
        for issue in issues:
            logger.warning(
                "refresh_game_issue",
                canonical_id=canonical_id,
                stage=issue.stage.value,
                kind=issue.kind.value,
                detail=issue.detail,
            )
        return outcome if isinstance(outcome, UnifiedGame) else stored

    # ── Stages ──────────────────────────────────────────────────────────
    async def _sync_isolated(self, sport: Sport) -> SyncReport:
        try:
            return await self.sync_sport(sport)
        except Exception as exc:
            logger.error("sync_sport_failed", sport=sport.value, error=str(exc), exc_info=True)
            return SyncReport(sport=sport, issues=[SyncIssue(
                stage=SyncStage.UPSERT, kind=IssueKind.STAGE_ERROR, detail=f"{type(exc).__name__}: {exc}",
            )])

    async def _fetch_schedule(self, sport: Sport, window: TimeWindow) -> FetchResult:
        client = self._registry.schedule_client
        if client is None:
            return FetchResult(provider="none", skipped=True)
        return await client.fetch(sport, window)

    async def _load_aliases(self, sport: Sport, issues: list[SyncIssue]) -> AliasMap:
        try:
            return await self._store.load_aliases(sport)
        except Exception as exc:
            issues.append(SyncIssue(
                stage=SyncStage.MATCH, kind=IssueKind.STORE_ERROR, detail=f"load_aliases: {exc}",
            ))
            return {}

    def _pair(
        self,
        matcher: IdentityMatcher,
        sport: Sport,
        schedule_games: list[ScheduleGame],
        events: list[OddsEvent],
        issues: list[SyncIssue],
    ) -> list[_Pairing]:
        try:
            plan = matcher.assign(
                [g.identifiers for g in schedule_games], [e.identifiers for e in events], sport
            )
        except Exception as exc:
            issues.append(self._stage_error(SyncStage.MATCH, exc, sport))
            return [_Pairing(schedule=g, event=None, confidence=None) for g in schedule_games]

        by_schedule: dict[int, tuple[OddsEvent, MatchConfidence]] = {}
        for si, ei, conf in plan.pairs:
            event = events[ei]
            by_schedule[si] = (orient_event(event) if conf.swapped else event, conf)
        MATCH_DECISIONS.labels(sport=sport.value, outcome="matched").inc(len(plan.pairs))

        for si, ei, conf in plan.ambiguous:
            issues.append(SyncIssue(
                stage=SyncStage.MATCH,
                kind=IssueKind.MATCH_AMBIGUITY,
                provider=events[ei].provider,
                detail=(
                    f"score {conf.score} ({conf.rule.value}) below cutoff {matcher.cutoff} "
                    f"vs {schedule_games[si].provider}:{schedule_games[si].provider_id}"
                ),
                ref=events[ei].provider_id,
            ))
        MATCH_DECISIONS.labels(sport=sport.value, outcome="ambiguous").inc(len(plan.ambiguous))
        MATCH_DECISIONS.labels(sport=sport.value, outcome="unmatched").inc(len(plan.unmatched_right))

        pairings: list[_Pairing] = []
        for si, game in enumerate(schedule_games):
            event, conf = by_schedule.get(si, (None, None))
            pairings.append(_Pairing(schedule=game, event=event, confidence=conf))
        if self._settings.surface_unmatched_odds:
            pairings.extend(
                _Pairing(schedule=None, event=events[ei], confidence=None) for ei in plan.unmatched_right
            )
        return pairings

    def _canonical_id(self, provider_ids: Iterable[tuple[str, str]], pairing: _Pairing, known: AliasMap) -> str:
        if isinstance(pairing.schedule, UnifiedGame):
            return pairing.schedule.canonical_id
        ids = sorted(provider_ids)
        hits = sorted({known[p] for p in ids if p in known})
        if len(hits) > 1:
            logger.warning("canonical_id_conflict", provider_ids=ids, canonical_ids=hits)
        if hits:
            return hits[0]
        source = pairing.schedule if pairing.schedule is not None else pairing.event
        return mint_canonical_id(source.provider, source.provider_id)

    async def _compose(
        self,
        sport: Sport,
        pairing: _Pairing,
        cascade: CascadeResult,
        known: AliasMap,
        issues: list[SyncIssue],
        canonical_id: str | None = None,
    ) -> Optional[UnifiedGame]:
        schedule, event = pairing.schedule, pairing.event
        ids: set[tuple[str, str]] = set()
        if schedule is not None:
            ids.update(tuple(p) for p in (schedule.identifiers.provider_ids))
        if event is not None:
            ids.update(event.identifiers.provider_ids)
        cid = canonical_id or self._canonical_id(ids, pairing, known)
        ref = cid

        if schedule is None:
            # Odds-only this cycle: a stored copy keeps owning the schedule fields.
            try:
                schedule = await self._store.get(cid)
            except Exception as exc:
                issues.append(SyncIssue(
                    stage=SyncStage.MERGE_FIELDS, kind=IssueKind.STORE_ERROR, detail=f"get: {exc}", ref=ref,
                ))
            if schedule is not None:
                ids.update(tuple(p) for p in schedule.provider_ids)

        # MERGE_FIELDS
        try:
            fields = merge_fields(
                _schedule_fields(schedule) if schedule is not None else None,
                _odds_fields(event) if event is not None else None,
            )
        except Exception as exc:
            issues.append(self._stage_error(SyncStage.MERGE_FIELDS, exc, sport, ref=ref))
            return None

        # COMPUTE_CONSENSUS
        cycle_quotes = event.usable_quotes() if event is not None else []
        odds_block = consensus = best = None
        try:
            history = await self._store.recent_quotes(cid)
        except Exception as exc:
            issues.append(SyncIssue(
                stage=SyncStage.COMPUTE_CONSENSUS, kind=IssueKind.STORE_ERROR,
                detail=f"recent_quotes: {exc}", ref=ref,
            ))
            history = []
        all_quotes = [*history, *cycle_quotes]
        try:
            if all_quotes:
                consensus = self._consensus.consensus(all_quotes)
                best = self._consensus.best_odds(all_quotes)
            if cycle_quotes:
                odds_block = self._consensus.select_odds_block(cycle_quotes)
        except Exception as exc:
            issues.append(self._stage_error(SyncStage.COMPUTE_CONSENSUS, exc, sport, ref=ref))

        # ATTACH_PROVENANCE
        if cycle_quotes:
            odds_state = OddsState.AVAILABLE
        elif cascade.odds_state == OddsState.AVAILABLE:
            odds_state = OddsState.NONE_OFFERED
        else:
            odds_state = cascade.odds_state
        if isinstance(schedule, ScheduleGame):
            schedule_provider = schedule.provider
        elif isinstance(schedule, UnifiedGame):
            schedule_provider = schedule.source_info.schedule_provider
        else:
            schedule_provider = None
        source_info = SourceInfo(
            primary=cascade.primary,
            backup=cascade.backup,
            schedule_provider=schedule_provider,
            confidence=pairing.confidence.score if pairing.confidence is not None else 100,
            fallback_used=cascade.fallback_used,
            odds_state=odds_state,
        )

        last_updated = _latest(
            schedule.updated_at if isinstance(schedule, ScheduleGame) else None,
            event.updated_at if event is not None else None,
            max((q.observed_at for q in cycle_quotes), default=None),
        )
        try:
            return UnifiedGame(
                canonical_id=cid,
                sport=sport,
                provider_ids=sorted(ids),
                odds=odds_block,
                consensus=consensus,
                best_odds=best,
                source_info=source_info,
                last_updated=last_updated,
                **fields,
            )
        except Exception as exc:
            issues.append(self._stage_error(SyncStage.ATTACH_PROVENANCE, exc, sport, ref=ref))
            return None

    async def _write(
        self, game: UnifiedGame, pairing: _Pairing, issues: list[SyncIssue]
    ) -> UnifiedGame | str | None:
        """UPSERT stage for one game: the stored result, "skipped", or None on error."""
        try:
            existing = await self._store.get(game.canonical_id)
            if existing is not None and existing.status.is_terminal:
                return "skipped"
            if pairing.event is not None:
                quotes = pairing.event.usable_quotes()
                if quotes:
                    await self._store.append_quotes(game.canonical_id, quotes)
            stored = await self._store.upsert(game)
            await self._store.save_aliases(game.sport, game.canonical_id, game.provider_ids)
        except Exception as exc:
            logger.warning(
                "game_upsert_failed",
                canonical_id=game.canonical_id,
                sport=game.sport.value,
                error=str(exc),
            )
            issues.append(SyncIssue(
                stage=SyncStage.UPSERT, kind=IssueKind.STORE_ERROR, detail=str(exc), ref=game.canonical_id,
            ))
            return None
        GAMES_UPSERTED.labels(sport=game.sport.value).inc()
        return stored

    @staticmethod
    def _stage_error(stage: SyncStage, exc: Exception, sport: Sport, ref: str | None = None) -> SyncIssue:
        logger.error("sync_stage_failed", stage=stage.value, sport=sport.value, error=str(exc), exc_info=True)
        return SyncIssue(stage=stage, kind=IssueKind.STAGE_ERROR, detail=f"{type(exc).__name__}: {exc}", ref=ref)
