"""
Provider registry.

Builds the schedule client and the ordered list of odds clients from
settings. The cascade order is data (``odds_provider_order``); a provider
that needs an API key and has none is silently left out.
"""
from __future__ import annotations

from typing import Optional

from shared.config import Settings, get_settings
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.http_client import TransientProviderError
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

from ingest.providers.action_network import ActionNetworkClient
from ingest.providers.base import ProviderClient
from ingest.providers.espn import ESPNOddsClient, ESPNScheduleClient
from ingest.providers.quota import QuotaTracker
from ingest.providers.the_odds_api import TheOddsApiClient

logger = get_logger(__name__)

SCHEDULE_CLIENTS: dict[str, type[ProviderClient]] = {
    "espn": ESPNScheduleClient,
}

ODDS_CLIENTS: dict[str, type[ProviderClient]] = {
    "action_network": ActionNetworkClient,
    "espn": ESPNOddsClient,
    "the_odds_api": TheOddsApiClient,
}


class ProviderRegistry:
    """Holds the configured provider clients and manages their lifecycle."""

    def __init__(
        self,
        schedule_client: Optional[ProviderClient],
        odds_clients: list[ProviderClient],
    ) -> None:
        self.schedule_client = schedule_client
        self.odds_clients = odds_clients

    @property
    def all_clients(self) -> list[ProviderClient]:
        clients = [self.schedule_client] if self.schedule_client else []
        return clients + self.odds_clients

    async def start(self) -> None:
        for client in self.all_clients:
            await client.start()
        logger.info(
            "provider_registry_started",
            schedule=self.schedule_client.name if self.schedule_client else None,
            odds_order=[c.name for c in self.odds_clients],
        )

    async def close(self) -> None:
        for client in self.all_clients:
            await client.close()


def _build_client(
    cls: type[ProviderClient],
    settings: Settings,
    tracker: QuotaTracker,
    redis: Optional[RedisManager],
    breakers: dict[str, CircuitBreaker],
) -> Optional[ProviderClient]:
    api_key = settings.api_key_for(cls.name)
    if cls.requires_key and not api_key:
        logger.debug("provider_disabled_no_key", provider=cls.name)
        return None

    breaker = breakers.get(cls.name)
    if breaker is None:
        breaker = breakers[cls.name] = CircuitBreaker(
            cls.name,
            failure_threshold=settings.provider_circuit_failure_threshold,
            recovery_timeout_s=settings.provider_circuit_recovery_s,
            failure_types=(TransientProviderError, TimeoutError),
        )
    http = cls.build_http(
        timeout_s=settings.provider_request_timeout_s,
        max_retries=settings.provider_max_retries,
        cache=redis,
    )
    return cls(
        tracker,
        http=http,
        api_key=api_key,
        timeout_s=settings.provider_call_timeout_s,
        cache_ttl_s=settings.cache_ttl_for(cls.name),
        breaker=breaker,
    )


def build_provider_registry(
    tracker: QuotaTracker,
    redis: Optional[RedisManager] = None,
    settings: Settings | None = None,
) -> ProviderRegistry:
    """Build clients for the configured schedule provider and odds cascade."""
    settings = settings or get_settings()
    breakers: dict[str, CircuitBreaker] = {}

    schedule_cls = SCHEDULE_CLIENTS.get(settings.schedule_provider)
    if schedule_cls is None:
        logger.warning("schedule_provider_unknown", provider=settings.schedule_provider)
        schedule_client = None
    else:
        schedule_client = _build_client(schedule_cls, settings, tracker, redis, breakers)

    odds_clients: list[ProviderClient] = []
    for name in settings.odds_provider_order:
        cls = ODDS_CLIENTS.get(name)
        if cls is None:
            logger.warning("odds_provider_unknown", provider=name)
            continue
        client = _build_client(cls, settings, tracker, redis, breakers)
        if client is not None:
            odds_clients.append(client)

    return ProviderRegistry(schedule_client, odds_clients)
