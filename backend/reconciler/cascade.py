"""
Ordered odds-provider cascade.

The cascade is a priority list of ProviderClients walked by one loop. A
provider satisfies the cascade when it answers with at least one usable
quote; failures and empty answers advance to the next provider. Quota
exhaustion is answered by the client guard without a network call, so a
provider that ran dry earlier in the cycle costs nothing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from shared.models.domain import GameIdentifiers, OddsEvent, RawOddsQuote, SyncIssue
from shared.models.enums import FailureKind, OddsState, Sport
from shared.utils.logging import get_logger
from shared.utils.metrics import CASCADE_EXHAUSTED, CASCADE_RESOLUTIONS

from ingest.providers.base import FetchResult, ProviderClient, TimeWindow

logger = get_logger(__name__)


@dataclass
class CascadeResult:
    sport: Sport
    primary: Optional[str] = None
    backup: Optional[str] = None
    attempted: list[str] = field(default_factory=list)
    fallback_used: bool = False
    odds_state: OddsState = OddsState.NONE_OFFERED
    events: list[OddsEvent] = field(default_factory=list)
    failures: dict[str, FailureKind] = field(default_factory=dict)
    issues: list[SyncIssue] = field(default_factory=list)

    @property
    def quotes(self) -> list[RawOddsQuote]:
        return [q for e in self.events for q in e.usable_quotes()]


class OddsCascade:
    def __init__(self, clients: Sequence[ProviderClient]) -> None:
        self._clients = list(clients)

    @property
    def order(self) -> list[str]:
        return [c.name for c in self._clients]

    async def resolve(self, sport: Sport, window: TimeWindow) -> CascadeResult:
        """Walk the cascade for a sport's window. Never raises."""
        eligible = [c for c in self._clients if c.enabled and c.supports(sport)]
        return await self._run(sport, eligible, lambda c: c.fetch(sport, window))

    async def resolve_game(self, sport: Sport, identifiers: GameIdentifiers) -> CascadeResult:
        """Same walk restricted to providers with a per-game endpoint."""
        eligible = [
            c for c in self._clients
            if c.enabled and c.supports(sport) and c.supports_game_fetch
        ]
        return await self._run(sport, eligible, lambda c: c.fetch_game(sport, identifiers))

    async def _run(
        self,
        sport: Sport,
        eligible: list[ProviderClient],
        call: Callable[[ProviderClient], Awaitable[FetchResult]],
    ) -> CascadeResult:
        result = CascadeResult(sport=sport)
        answered = False

        for position, client in enumerate(eligible):
            fetched = await call(client)
            if not fetched.supported:
                continue
            result.attempted.append(client.name)
            result.issues.extend(fetched.issues)

            if not fetched.ok:
                result.failures[client.name] = fetched.failure or FailureKind.TRANSIENT
                logger.debug(
                    "cascade_provider_failed",
                    sport=sport.value,
                    provider=client.name,
                    failure=result.failures[client.name].value,
                    skipped=fetched.skipped,
                )
                continue

            answered = True
            if fetched.quote_count() == 0:
                logger.debug("cascade_provider_empty", sport=sport.value, provider=client.name)
                continue

            result.primary = client.name
            result.fallback_used = position > 0
            result.odds_state = OddsState.AVAILABLE
            result.events = sorted(
                (r for r in fetched.records if isinstance(r, OddsEvent)),
                key=lambda e: (e.identifiers.scheduled_at, e.provider_id),
            )
            if result.fallback_used:
                result.backup = client.name
            elif position + 1 < len(eligible):
                result.backup = eligible[position + 1].name
            break

        if result.primary is not None:
            CASCADE_RESOLUTIONS.labels(
                sport=sport.value,
                provider=result.primary,
                fallback=str(result.fallback_used).lower(),
            ).inc()
            logger.info(
                "cascade_resolved",
                sport=sport.value,
                provider=result.primary,
                fallback_used=result.fallback_used,
                attempted=result.attempted,
                events=len(result.events),
            )
            return result

        if result.attempted and not answered:
            result.odds_state = OddsState.FETCH_FAILED
        CASCADE_EXHAUSTED.labels(sport=sport.value, odds_state=result.odds_state.value).inc()
        logger.info(
            "cascade_exhausted",
            sport=sport.value,
            odds_state=result.odds_state.value,
            attempted=result.attempted,
            failures={k: v.value for k, v in result.failures.items()},
        )
        return result
