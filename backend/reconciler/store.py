"""
Persistence for unified games, provider-ID aliases and the raw quote log.

GameStore is the seam the reconciler and the API depend on:
  MemoryGameStore  in-process, used by tests and local runs
  SqlGameStore     PostgreSQL via SQLAlchemy async

Upserts are merges keyed by canonical_id. A game already stored in a
terminal status is returned unchanged.
"""
from __future__ import annotations

import abc
import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from shared.models.domain import RawOddsQuote, UnifiedGame
from shared.models.enums import GameStatus, Sport
from shared.models.orm import GameAliasORM, OddsQuoteORM, UnifiedGameORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

from reconciler.merge import merge_games

logger = get_logger(__name__)

AliasMap = dict[tuple[str, str], str]


def _day_bounds(on_date: date) -> tuple[datetime, datetime]:
    start = datetime(on_date.year, on_date.month, on_date.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _quote_key(q: RawOddsQuote) -> tuple:
    return (*q.slot, q.observed_at)


class GameStore(abc.ABC):
    @abc.abstractmethod
    async def upsert(self, game: UnifiedGame) -> UnifiedGame:
        """Merge ``game`` into its stored copy and return what is now stored."""

    @abc.abstractmethod
    async def get(self, canonical_id: str) -> Optional[UnifiedGame]:
        ...

    @abc.abstractmethod
    async def query(
        self,
        sport: Sport,
        status: Optional[GameStatus] = None,
        on_date: Optional[date] = None,
    ) -> list[UnifiedGame]:
        """Games for a sport ordered by scheduled_at, then canonical_id."""

    @abc.abstractmethod
    async def load_aliases(self, sport: Sport) -> AliasMap:
        ...

    @abc.abstractmethod
    async def save_aliases(
        self, sport: Sport, canonical_id: str, provider_ids: Iterable[tuple[str, str]]
    ) -> None:
        ...

    @abc.abstractmethod
    async def append_quotes(self, canonical_id: str, quotes: Iterable[RawOddsQuote]) -> int:
        """Append quotes; already-recorded observations are ignored. Returns rows added."""

    @abc.abstractmethod
    async def recent_quotes(self, canonical_id: str) -> list[RawOddsQuote]:
        ...


# ── In-memory ───────────────────────────────────────────────────────────
class MemoryGameStore(GameStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._games: dict[str, UnifiedGame] = {}
        self._aliases: dict[Sport, AliasMap] = {}
        self._quotes: dict[str, dict[tuple, RawOddsQuote]] = {}

    async def upsert(self, game: UnifiedGame) -> UnifiedGame:
        async with self._lock:
            existing = self._games.get(game.canonical_id)
            if existing is not None and existing.status.is_terminal:
                return existing
            merged = game if existing is None else merge_games(existing, game)
            self._games[game.canonical_id] = merged
            return merged

    async def get(self, canonical_id: str) -> Optional[UnifiedGame]:
        return self._games.get(canonical_id)

    async def query(
        self,
        sport: Sport,
        status: Optional[GameStatus] = None,
        on_date: Optional[date] = None,
    ) -> list[UnifiedGame]:
        games = [g for g in self._games.values() if g.sport == sport]
        if status is not None:
            games = [g for g in games if g.status == status]
        if on_date is not None:
            start, end = _day_bounds(on_date)
            games = [g for g in games if start <= g.scheduled_at < end]
        return sorted(games, key=lambda g: (g.scheduled_at, g.canonical_id))

    async def load_aliases(self, sport: Sport) -> AliasMap:
        return dict(self._aliases.get(sport, {}))

    async def save_aliases(
        self, sport: Sport, canonical_id: str, provider_ids: Iterable[tuple[str, str]]
    ) -> None:
        async with self._lock:
            table = self._aliases.setdefault(sport, {})
            for pair in provider_ids:
                # First writer wins, matching the unique constraint in SQL.
                table.setdefault(tuple(pair), canonical_id)

    async def append_quotes(self, canonical_id: str, quotes: Iterable[RawOddsQuote]) -> int:
        async with self._lock:
            log = self._quotes.setdefault(canonical_id, {})
            added = 0
            for q in quotes:
                key = _quote_key(q)
                if key not in log:
                    log[key] = q
                    added += 1
            return added

    async def recent_quotes(self, canonical_id: str) -> list[RawOddsQuote]:
        log = self._quotes.get(canonical_id, {})
        return [log[k] for k in sorted(log)]


# ── PostgreSQL ──────────────────────────────────────────────────────────
class SqlGameStore(GameStore):
    def __init__(self, db: DatabaseManager, quote_history: timedelta = timedelta(hours=6)) -> None:
        self._db = db
        self._quote_history = quote_history

    async def upsert(self, game: UnifiedGame) -> UnifiedGame:
        async with self._db.write_session() as session:
            row = (
                await session.execute(
                    select(UnifiedGameORM)
                    .where(UnifiedGameORM.canonical_id == game.canonical_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            merged = game
            if row is not None:
                existing = UnifiedGame.model_validate(row.payload)
                if existing.status.is_terminal:
                    return existing
                merged = merge_games(existing, game)

            values = {
                "canonical_id": merged.canonical_id,
                "sport": merged.sport.value,
                "status": merged.status.value,
                "scheduled_at": merged.scheduled_at,
                "payload": merged.model_dump(mode="json"),
            }
            stmt = pg_insert(UnifiedGameORM).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[UnifiedGameORM.canonical_id],
                set_={
                    "sport": stmt.excluded.sport,
                    "status": stmt.excluded.status,
                    "scheduled_at": stmt.excluded.scheduled_at,
                    "payload": stmt.excluded.payload,
                    "synced_at": datetime.now(timezone.utc),
                },
            )
            await session.execute(stmt)
        return merged

    async def get(self, canonical_id: str) -> Optional[UnifiedGame]:
        async with self._db.read_session() as session:
            row = await session.get(UnifiedGameORM, canonical_id)
            return UnifiedGame.model_validate(row.payload) if row is not None else None

    async def query(
        self,
        sport: Sport,
        status: Optional[GameStatus] = None,
        on_date: Optional[date] = None,
    ) -> list[UnifiedGame]:
        stmt = select(UnifiedGameORM).where(UnifiedGameORM.sport == sport.value)
        if status is not None:
            stmt = stmt.where(UnifiedGameORM.status == status.value)
        if on_date is not None:
            start, end = _day_bounds(on_date)
            stmt = stmt.where(UnifiedGameORM.scheduled_at >= start, UnifiedGameORM.scheduled_at < end)
        stmt = stmt.order_by(UnifiedGameORM.scheduled_at, UnifiedGameORM.canonical_id)
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [UnifiedGame.model_validate(r.payload) for r in rows]

    async def load_aliases(self, sport: Sport) -> AliasMap:
        stmt = select(GameAliasORM).where(GameAliasORM.sport == sport.value)
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return {(r.provider, r.provider_game_id): r.canonical_id for r in rows}

    async def save_aliases(
        self, sport: Sport, canonical_id: str, provider_ids: Iterable[tuple[str, str]]
    ) -> None:
        rows = [
            {"sport": sport.value, "provider": p, "provider_game_id": pid, "canonical_id": canonical_id}
            for p, pid in provider_ids
        ]
        if not rows:
            return
        stmt = pg_insert(GameAliasORM).values(rows).on_conflict_do_nothing(
            constraint="uq_game_alias"
        )
        async with self._db.write_session() as session:
            await session.execute(stmt)

    async def append_quotes(self, canonical_id: str, quotes: Iterable[RawOddsQuote]) -> int:
        rows = [
            {
                "canonical_id": canonical_id,
                "provider": q.provider,
                "book": q.book,
                "provider_game_id": q.provider_game_id,
                "market": q.market.value,
                "side": q.side.value,
                "line": q.line,
                "price": q.price,
                "observed_at": q.observed_at,
            }
            for q in quotes
        ]
        if not rows:
            return 0
        stmt = pg_insert(OddsQuoteORM).values(rows).on_conflict_do_nothing(
            constraint="uq_odds_quote_observation"
        )
        async with self._db.write_session() as session:
            result = await session.execute(stmt)
        return max(result.rowcount or 0, 0)

    async def recent_quotes(self, canonical_id: str) -> list[RawOddsQuote]:
        stmt = select(OddsQuoteORM).where(OddsQuoteORM.canonical_id == canonical_id)
        async with self._db.read_session() as session:
            latest = (
                await session.execute(
                    select(OddsQuoteORM.observed_at)
                    .where(OddsQuoteORM.canonical_id == canonical_id)
                    .order_by(OddsQuoteORM.observed_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if latest is None:
                return []
            stmt = stmt.where(OddsQuoteORM.observed_at >= latest - self._quote_history).order_by(
                OddsQuoteORM.provider,
                OddsQuoteORM.book,
                OddsQuoteORM.market,
                OddsQuoteORM.side,
                OddsQuoteORM.observed_at,
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [RawOddsQuote.model_validate(r) for r in rows]
