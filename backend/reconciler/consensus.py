"""
Consensus lines, best available prices and the headline odds block.

All inputs are RawOddsQuote lists, possibly spanning several providers and
books and several observations of the same slot. Only the latest observation
per (provider, book, market, side) counts, and observations much older than
the newest one are left out so a frozen book cannot drag the average.
"""
from __future__ import annotations

from datetime import datetime
from statistics import fmean
from typing import Iterable, Optional, Sequence

from shared.models.domain import (
    BestLine,
    BestOdds,
    ConsensusBlock,
    OddsBlock,
    RawOddsQuote,
)
from shared.models.enums import Market, QuoteSide

Source = tuple[str, str]


# ── Probability helpers ─────────────────────────────────────────────────
def implied_probability(price: float) -> float:
    """American odds -> implied win probability (vig included)."""
    if price < 0:
        return -price / (-price + 100.0)
    return 100.0 / (price + 100.0)


def no_vig_probabilities(home_price: float, away_price: float) -> tuple[float, float]:
    """Normalize both implied probabilities so they sum to 1."""
    home = implied_probability(home_price)
    away = implied_probability(away_price)
    total = home + away
    if total <= 0:
        return 0.5, 0.5
    return round(home / total, 4), round(away / total, 4)


def _mean(values: list[float]) -> Optional[float]:
    return round(fmean(values), 2) if values else None


# ── Quote selection ─────────────────────────────────────────────────────
def latest_quotes(quotes: Iterable[RawOddsQuote]) -> list[RawOddsQuote]:
    """Latest usable observation per slot, in slot order."""
    latest: dict[tuple[str, str, str, str], RawOddsQuote] = {}
    for q in quotes:
        if not q.is_usable():
            continue
        cur = latest.get(q.slot)
        if cur is None or (q.observed_at, q.line or 0.0, q.price or 0.0) > (
            cur.observed_at, cur.line or 0.0, cur.price or 0.0
        ):
            latest[q.slot] = q
    return [latest[k] for k in sorted(latest)]


def fresh_quotes(quotes: Iterable[RawOddsQuote], staleness_s: float) -> list[RawOddsQuote]:
    latest = latest_quotes(quotes)
    if not latest:
        return []
    newest: datetime = max(q.observed_at for q in latest)
    return [q for q in latest if (newest - q.observed_at).total_seconds() <= staleness_s]


def _by_source(quotes: Sequence[RawOddsQuote]) -> dict[Source, dict[tuple[Market, QuoteSide], RawOddsQuote]]:
    out: dict[Source, dict[tuple[Market, QuoteSide], RawOddsQuote]] = {}
    for q in quotes:
        out.setdefault(q.source_key, {})[(q.market, q.side)] = q
    return out


def _home_spread(slots: dict[tuple[Market, QuoteSide], RawOddsQuote]) -> Optional[float]:
    home = slots.get((Market.SPREAD, QuoteSide.HOME))
    if home is not None:
        return home.line
    away = slots.get((Market.SPREAD, QuoteSide.AWAY))
    if away is not None and away.line is not None:
        return -away.line
    return None


def _total_line(slots: dict[tuple[Market, QuoteSide], RawOddsQuote]) -> Optional[float]:
    for side in (QuoteSide.OVER, QuoteSide.UNDER):
        q = slots.get((Market.TOTAL, side))
        if q is not None:
            return q.line
    return None


def _price(slots: dict[tuple[Market, QuoteSide], RawOddsQuote], market: Market, side: QuoteSide) -> Optional[float]:
    q = slots.get((market, side))
    return q.price if q is not None else None


class ConsensusCalculator:
    """Aggregates quotes into a ConsensusBlock, BestOdds and a single OddsBlock."""

    def __init__(self, staleness_s: float = 3600.0, preferred_books: Sequence[str] = ()) -> None:
        self._staleness_s = staleness_s
        self._preferred_books = list(preferred_books)

    def consensus(
        self, quotes: Iterable[RawOddsQuote], staleness_s: Optional[float] = None
    ) -> ConsensusBlock:
        fresh = fresh_quotes(quotes, self._staleness_s if staleness_s is None else staleness_s)
        if not fresh:
            return ConsensusBlock()

        spreads: list[float] = []
        totals: list[float] = []
        home_mls: list[float] = []
        away_mls: list[float] = []
        for slots in _by_source(fresh).values():
            for bucket, value in (
                (spreads, _home_spread(slots)),
                (totals, _total_line(slots)),
                (home_mls, _price(slots, Market.MONEYLINE, QuoteSide.HOME)),
                (away_mls, _price(slots, Market.MONEYLINE, QuoteSide.AWAY)),
            ):
                if value is not None:
                    bucket.append(value)

        block = ConsensusBlock(
            spread=_mean(spreads),
            total=_mean(totals),
            home_ml=_mean(home_mls),
            away_ml=_mean(away_mls),
            bookmaker_count=len({q.source_key for q in fresh}),
        )
        if block.home_ml is not None and block.away_ml is not None:
            home_p, away_p = no_vig_probabilities(block.home_ml, block.away_ml)
            block = block.model_copy(update={"home_win_prob": home_p, "away_win_prob": away_p})
        return block

    def best_odds(
        self, quotes: Iterable[RawOddsQuote], staleness_s: Optional[float] = None
    ) -> BestOdds:
        fresh = fresh_quotes(quotes, self._staleness_s if staleness_s is None else staleness_s)

        def pick(market: Market, side: QuoteSide, key) -> Optional[BestLine]:
            pool = [q for q in fresh if q.market == market and q.side == side]
            if not pool:
                return None
            # Deterministic among equals: provider, then book.
            pool.sort(key=lambda q: q.source_key)
            best = max(pool, key=key)
            return BestLine(provider=best.provider, book=best.book, price=best.price, point=best.line)

        def price(q: RawOddsQuote) -> float:
            return q.price if q.price is not None else float("-inf")

        return BestOdds(
            home_ml=pick(Market.MONEYLINE, QuoteSide.HOME, price),
            away_ml=pick(Market.MONEYLINE, QuoteSide.AWAY, price),
            home_spread=pick(Market.SPREAD, QuoteSide.HOME, lambda q: (q.line, price(q))),
            away_spread=pick(Market.SPREAD, QuoteSide.AWAY, lambda q: (q.line, price(q))),
            over=pick(Market.TOTAL, QuoteSide.OVER, lambda q: (-q.line, price(q))),
            under=pick(Market.TOTAL, QuoteSide.UNDER, lambda q: (q.line, price(q))),
        )

    def select_odds_block(
        self,
        quotes: Iterable[RawOddsQuote],
        preferred_books: Optional[Sequence[str]] = None,
    ) -> Optional[OddsBlock]:
        """
        The single quote shown as "the line".

        Each market comes from the first preferred book that offers it, falling
        back to the most recently observed book. The block is labelled with the
        book that supplied the spread (else total, else moneyline).
        """
        latest = latest_quotes(quotes)
        if not latest:
            return None
        order = list(self._preferred_books if preferred_books is None else preferred_books)
        by_source = _by_source(latest)

        def source_for(market: Market) -> Optional[Source]:
            offering = [s for s, slots in by_source.items() if any(m == market for m, _ in slots)]
            if not offering:
                return None
            for book in order:
                for source in sorted(offering):
                    if source[1] == book:
                        return source
            return max(
                offering,
                key=lambda s: (max(q.observed_at for (m, _), q in by_source[s].items() if m == market), s),
            )

        chosen = {m: source_for(m) for m in (Market.SPREAD, Market.TOTAL, Market.MONEYLINE)}
        label = chosen[Market.SPREAD] or chosen[Market.TOTAL] or chosen[Market.MONEYLINE]
        if label is None:
            return None

        block = OddsBlock(provider=label[0], book=label[1])
        if chosen[Market.SPREAD]:
            slots = by_source[chosen[Market.SPREAD]]
            home = slots.get((Market.SPREAD, QuoteSide.HOME))
            block.spread = _home_spread(slots)
            block.spread_price = home.price if home is not None else None
        if chosen[Market.TOTAL]:
            slots = by_source[chosen[Market.TOTAL]]
            block.total = _total_line(slots)
            block.over_price = _price(slots, Market.TOTAL, QuoteSide.OVER)
            block.under_price = _price(slots, Market.TOTAL, QuoteSide.UNDER)
        if chosen[Market.MONEYLINE]:
            slots = by_source[chosen[Market.MONEYLINE]]
            block.home_ml = _price(slots, Market.MONEYLINE, QuoteSide.HOME)
            block.away_ml = _price(slots, Market.MONEYLINE, QuoteSide.AWAY)
        return block
