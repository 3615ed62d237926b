"""
Abstract base class for all schedule and odds providers.

Every provider exposes the same contract:

    fetch(sport, window)        -> FetchResult
    fetch_game(sport, ids)      -> FetchResult   (targeted refresh, optional)

A FetchResult carries translated domain records or an explicit failure kind.
The base class owns timeouts, quota checks, the circuit breaker, metrics and
the once-per-cycle warning; subclasses only implement ``_fetch``.
"""
from __future__ import annotations

import abc
import asyncio
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.models.domain import GameIdentifiers, OddsEvent, SyncIssue
from shared.models.enums import FailureKind, IssueKind, ProviderRole, Sport, SyncStage
from shared.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from shared.utils.http_client import (
    ProviderError,
    ProviderHTTPClient,
    QuotaExhaustedError,
    TransientProviderError,
)
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_FETCHES

from ingest.providers.quota import QuotaTracker

logger = get_logger(__name__)

__all__ = [
    "FetchResult",
    "ParseContext",
    "ProviderClient",
    "ProviderError",
    "QuotaExhaustedError",
    "TimeWindow",
    "TransientProviderError",
]

T = TypeVar("T")


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive UTC range of scheduled start times to fetch."""
    start: datetime
    end: datetime

    @classmethod
    def around(cls, anchor: datetime, days_back: int = 0, days_ahead: int = 1) -> "TimeWindow":
        anchor = anchor.astimezone(timezone.utc)
        day = datetime(anchor.year, anchor.month, anchor.day, tzinfo=timezone.utc)
        return cls(
            start=day - timedelta(days=days_back),
            end=day + timedelta(days=days_ahead + 1) - timedelta(seconds=1),
        )

    def dates(self) -> list[date]:
        first, last = self.start.date(), self.end.date()
        return [first + timedelta(days=i) for i in range((last - first).days + 1)]

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end


@dataclass
class FetchResult:
    """Outcome of one provider call."""
    provider: str
    records: list[Any] = field(default_factory=list)
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    issues: list[SyncIssue] = field(default_factory=list)
    skipped: bool = False
    supported: bool = True
    latency_ms: float = 0.0

    @classmethod
    def unsupported(cls, provider: str) -> "FetchResult":
        return cls(provider=provider, supported=False, skipped=True)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def quote_count(self) -> int:
        return sum(len(r.usable_quotes()) for r in self.records if isinstance(r, OddsEvent))


class ParseContext:
    """
    Field-level parsing guard.

    A field that fails to parse is reported as shape drift and treated as
    absent; the rest of the record is kept.
    """

    _PARSE_ERRORS = (KeyError, TypeError, ValueError, IndexError, AttributeError)

    def __init__(self, provider: str, stage: SyncStage, fetched_at: datetime | None = None) -> None:
        self.provider = provider
        self.stage = stage
        self.fetched_at = fetched_at or datetime.now(timezone.utc)
        self.issues: list[SyncIssue] = []

    def field(
        self,
        name: str,
        fn: Callable[..., T],
        *args: Any,
        ref: str | None = None,
        default: Any = None,
    ) -> Any:
        try:
            value = fn(*args)
        except self._PARSE_ERRORS as exc:
            self.drift(f"{name}: {type(exc).__name__}: {exc}", ref=ref)
            return default
        return default if value is None else value

    def drift(self, detail: str, ref: str | None = None) -> None:
        self.issues.append(SyncIssue(
            stage=self.stage,
            kind=IssueKind.SHAPE_DRIFT,
            provider=self.provider,
            detail=detail,
            ref=ref,
        ))


# ── Value helpers shared by parsers ─────────────────────────────────────
def safe_float(value: Any) -> Optional[float]:
    """Parse numbers that may arrive as strings ("+150", "-3.5", "EVEN", "PK")."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise TypeError("boolean is not a number")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    if text in ("even", "ev"):
        return 100.0
    if text in ("pk", "pick", "pickem"):
        return 0.0
    return float(text.replace("+", ""))


def safe_int(value: Any) -> Optional[int]:
    f = safe_float(value)
    return None if f is None else int(f)


def parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class ProviderClient(abc.ABC):
    """
    Base class for schedule and odds providers.

    Subclasses set ``name``, ``role``, ``supported_sports`` and implement
    ``_fetch`` (and ``_fetch_game`` when the provider has a per-game endpoint).
    """

    name: str = ""
    role: ProviderRole = ProviderRole.ODDS
    metered: bool = False
    requires_key: bool = False
    supports_game_fetch: bool = False
    supported_sports: frozenset[Sport] = frozenset(Sport)

    def __init__(
        self,
        tracker: QuotaTracker,
        http: ProviderHTTPClient | None = None,
        api_key: str = "",
        timeout_s: float = 10.0,
        cache_ttl_s: int = 0,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._tracker = tracker
        self._http = http
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._cache_ttl_s = cache_ttl_s
        self._breaker = breaker

    @property
    def enabled(self) -> bool:
        return bool(self._api_key) or not self.requires_key

    @property
    def breaker(self) -> CircuitBreaker | None:
        return self._breaker

    def supports(self, sport: Sport) -> bool:
        return sport in self.supported_sports

    @property
    def _stage(self) -> SyncStage:
        if self.role == ProviderRole.SCHEDULE:
            return SyncStage.FETCH_SCHEDULE
        return SyncStage.FETCH_ODDS_CASCADE

    async def start(self) -> None:
        if self._http is not None:
            await self._http.start()

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()

    # ── Public contract ─────────────────────────────────────────────────
    async def fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        """Fetch records for a sport within a time window. Never raises."""
        return await self._guarded(sport, lambda: self._fetch(sport, window))

    async def fetch_game(self, sport: Sport, identifiers: GameIdentifiers) -> FetchResult:
        """Fetch records for one named game. Never raises."""
        if not self.supports_game_fetch:
            return FetchResult.unsupported(self.name)
        return await self._guarded(
            sport, lambda: self._fetch_game(sport, identifiers), ref=identifiers.id_for(self.name)
        )

    # ── Subclass hooks ──────────────────────────────────────────────────
    @abc.abstractmethod
    async def _fetch(self, sport: Sport, window: TimeWindow) -> FetchResult:
        """Provider-specific fetch and translation."""
        ...

    async def _fetch_game(self, sport: Sport, identifiers: GameIdentifiers) -> FetchResult:
        raise NotImplementedError(f"{self.name} has no per-game endpoint")

    # ── Guard ───────────────────────────────────────────────────────────
    async def _guarded(
        self,
        sport: Sport,
        call: Callable[[], Awaitable[FetchResult]],
        ref: str | None = None,
    ) -> FetchResult:
        if not self.enabled or not self.supports(sport):
            return FetchResult(provider=self.name, skipped=True, supported=self.supports(sport))

        if await self._tracker.is_exhausted(self.name):
            PROVIDER_FETCHES.labels(provider=self.name, sport=sport.value, outcome="skipped").inc()
            return self._failed(
                FailureKind.QUOTA_EXHAUSTED, "quota exhausted this cycle", skipped=True, ref=ref
            )

        async def _timed() -> FetchResult:
            return await asyncio.wait_for(call(), timeout=self._timeout_s)

        await self._tracker.record_request(self.name)
        start = time.perf_counter()
        try:
            if self._breaker is not None:
                result = await self._breaker.call(_timed)
            else:
                result = await _timed()
        except CircuitBreakerOpen as exc:
            result = self._failed(FailureKind.TRANSIENT, str(exc), skipped=True, ref=ref)
        except QuotaExhaustedError as exc:
            await self._tracker.mark_exhausted(self.name)
            result = self._failed(FailureKind.QUOTA_EXHAUSTED, str(exc), ref=ref)
        except TimeoutError:
            result = self._failed(
                FailureKind.TRANSIENT, f"timed out after {self._timeout_s:.1f}s", ref=ref
            )
        except TransientProviderError as exc:
            result = self._failed(FailureKind.TRANSIENT, str(exc), ref=ref)
        except Exception as exc:
            # Unexpected parser or client bug: degrade like a transient failure.
            logger.warning(
                "provider_unexpected_error",
                provider=self.name,
                sport=sport.value,
                error=str(exc),
                exc_info=True,
            )
            result = self._failed(FailureKind.TRANSIENT, f"unexpected: {exc}", ref=ref)

        result.latency_ms = round((time.perf_counter() - start) * 1000, 2)
        await self._sync_quota_headers()
        await self._log_outcome(sport, result)
        return result

    def _failed(
        self, kind: FailureKind, error: str, skipped: bool = False, ref: str | None = None
    ) -> FetchResult:
        issue_kind = IssueKind.QUOTA_EXHAUSTED if kind == FailureKind.QUOTA_EXHAUSTED else IssueKind.TRANSIENT
        return FetchResult(
            provider=self.name,
            failure=kind,
            error=error,
            skipped=skipped,
            issues=[SyncIssue(
                stage=self._stage, kind=issue_kind, provider=self.name, detail=error, ref=ref,
            )],
        )

    async def _sync_quota_headers(self) -> None:
        quota = self._http.take_quota() if self._http is not None else None
        if quota is not None:
            await self._tracker.record_usage(self.name, quota.used, quota.remaining)

    async def _log_outcome(self, sport: Sport, result: FetchResult) -> None:
        if result.ok:
            outcome = "ok" if result.records else "empty"
            PROVIDER_FETCHES.labels(provider=self.name, sport=sport.value, outcome=outcome).inc()
            logger.debug(
                "provider_fetch_complete",
                provider=self.name,
                sport=sport.value,
                records=len(result.records),
                latency_ms=result.latency_ms,
            )
            return

        kind = result.failure.value if result.failure else "unknown"
        PROVIDER_FETCHES.labels(provider=self.name, sport=sport.value, outcome=kind).inc()
        if not await self._tracker.should_log(self.name, kind):
            return
        if result.failure == FailureKind.QUOTA_EXHAUSTED:
            logger.warning("provider_quota_exhausted", provider=self.name, sport=sport.value, error=result.error)
        else:
            logger.warning(
                "provider_transient_failure",
                provider=self.name,
                sport=sport.value,
                error=result.error,
            )
