"""
Async HTTP client wrapper for provider requests.

Translates transport outcomes into the provider error taxonomy:
  TransientProviderError  timeouts, network errors, 5xx, malformed bodies
  QuotaExhaustedError     429 or an explicit out-of-credits response
Also captures provider quota headers and serves repeat GETs from the
Redis response cache when a TTL is given.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import time
from typing import TYPE_CHECKING, Any, Optional

import httpx

from shared.config import get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_CACHE_HITS, PROVIDER_LATENCY, PROVIDER_REQUESTS

if TYPE_CHECKING:
    from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

# Explicit provider error codes for a spent quota.
QUOTA_MARKERS = ("OUT_OF_USAGE_CREDITS", "EXCEEDED_FREQ_LIMIT")
_SECRET_PARAMS = {"apikey", "api_key", "key", "token"}


class ProviderError(Exception):
    """Base class for provider failures."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class TransientProviderError(ProviderError):
    """Retryable next cycle: timeout, network, 5xx or unreadable body."""


class QuotaExhaustedError(ProviderError):
    """Provider reported its quota as spent; do not call again this cycle."""


class QuotaInfo:
    """Quota counters as last reported by a provider's response headers."""

    def __init__(self, used: Optional[int] = None, remaining: Optional[int] = None) -> None:
        self.used = used
        self.remaining = remaining

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> Optional["QuotaInfo"]:
        used = _int_header(headers, "x-requests-used")
        remaining = _int_header(headers, "x-requests-remaining")
        if used is None and remaining is None:
            return None
        return cls(used=used, remaining=remaining)


def _int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def _cache_key(provider: str, path: str, params: dict[str, Any] | None) -> str:
    visible = sorted(
        (k, str(v)) for k, v in (params or {}).items() if k.lower() not in _SECRET_PARAMS
    )
    digest = hashlib.sha1(f"{path}?{visible}".encode()).hexdigest()[:20]
    return f"cache:provider:{provider}:{digest}"


class ProviderHTTPClient:
    """
    Async HTTP client tailored for sports data provider APIs.
    Handles timeouts and retries, records metrics per request.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        cache: Optional["RedisManager"] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.provider_request_timeout_s
        self._max_retries = max(1, max_retries or settings.provider_max_retries)
        self._default_headers = {"Accept": "application/json", **(headers or {})}
        self._cache = cache
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.last_quota: Optional[QuotaInfo] = None

    def take_quota(self) -> Optional[QuotaInfo]:
        """Quota headers seen since the last call, then forget them."""
        quota, self.last_quota = self.last_quota, None
        return quota

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        cache_ttl_s: int = 0,
    ) -> Any:
        """
        GET a JSON document, consulting the response cache first.

        Raises:
            QuotaExhaustedError: Provider reported quota/rate limit exceeded.
            TransientProviderError: Anything retryable next cycle.
        """
        key = _cache_key(self._provider, path, params) if self._cache and cache_ttl_s > 0 else None
        if key:
            cached = await self._cache_get(key)
            if cached is not None:
                PROVIDER_CACHE_HITS.labels(provider=self._provider).inc()
                return cached

        resp = await self.get(path, params=params)
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientProviderError(self._provider, f"malformed JSON body: {exc}") from exc

        if key:
            await self._cache_set(key, resp.text, cache_ttl_s)
        return data

    async def get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """Perform a GET with retry on timeouts and 5xx."""
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        last_error = "no attempt made"
        for attempt in range(1, self._max_retries + 1):
            start_time = time.perf_counter()
            status = "error"
            try:
                resp = await self._client.get(path, params=params)
                status = str(resp.status_code)
                quota = QuotaInfo.from_headers(resp.headers)
                if quota is not None:
                    self.last_quota = quota

                if resp.status_code == 429:
                    raise QuotaExhaustedError(self._provider, "rate limit exceeded (429)")

                if resp.status_code >= 500:
                    last_error = f"server error {resp.status_code}"
                    logger.warning(
                        "provider_server_error",
                        provider=self._provider,
                        path=path,
                        status=resp.status_code,
                        attempt=attempt,
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(0.5 * attempt)
                    continue

                if resp.status_code >= 400:
                    body = resp.text[:500]
                    if any(marker in body for marker in QUOTA_MARKERS):
                        raise QuotaExhaustedError(self._provider, f"quota exhausted ({resp.status_code})")
                    # Client errors are not retried; the request itself or the schema is wrong.
                    raise TransientProviderError(
                        self._provider, f"client error {resp.status_code}: {body[:120]}"
                    )

                logger.debug(
                    "provider_request_success",
                    provider=self._provider,
                    path=path,
                    status=resp.status_code,
                    latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                return resp

            except httpx.TimeoutException:
                status = "timeout"
                last_error = "timeout"
                logger.warning("provider_timeout", provider=self._provider, path=path, attempt=attempt)
                if attempt < self._max_retries:
                    await asyncio.sleep(0.5 * attempt)

            except httpx.TransportError as exc:
                status = "network"
                last_error = f"network error: {exc}"
                logger.warning(
                    "provider_network_error",
                    provider=self._provider,
                    path=path,
                    error=str(exc),
                    attempt=attempt,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(0.5 * attempt)

            finally:
                PROVIDER_REQUESTS.labels(provider=self._provider, status=status).inc()
                PROVIDER_LATENCY.labels(provider=self._provider).observe(
                    time.perf_counter() - start_time
                )

        raise TransientProviderError(
            self._provider, f"{last_error} after {self._max_retries} attempts"
        )

    # ── Response cache ──────────────────────────────────────────────────
    async def _cache_get(self, key: str) -> Any:
        try:
            raw = await self._cache.get_snapshot(key)
        except Exception as exc:
            logger.warning("provider_cache_read_failed", provider=self._provider, error=str(exc))
            return None
        return json.loads(raw) if raw else None

    async def _cache_set(self, key: str, body: str, ttl_s: int) -> None:
        try:
            await self._cache.set_snapshot(key, body, ttl_s=ttl_s)
        except Exception as exc:
            logger.warning("provider_cache_write_failed", provider=self._provider, error=str(exc))
