"""
Circuit breaker for provider calls.

States:
  CLOSED     normal operation, calls pass through
  OPEN       too many consecutive failures, calls are rejected without touching the network
  HALF_OPEN  after the recovery period, a single probe call is allowed through

Only exceptions listed in ``failure_types`` count as failures, so a provider
that is merely out of quota does not get its circuit opened.
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Coroutine, TypeVar

from shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when the circuit is open and calls are being rejected."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN. Retry after {retry_after:.0f}s.")


class CircuitBreaker:
    """
    Async circuit breaker.

    Args:
        name: Identifier for logging (the provider name).
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout_s: Seconds to wait in OPEN state before probing.
        failure_types: Exception classes that count as failures.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 300.0,
        failure_types: tuple[type[BaseException], ...] = (Exception,),
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self.failure_types = failure_types

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0.0
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout_s:
                return CircuitState.HALF_OPEN
        return self._state

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
        }

    async def call(
        self, func: Callable[..., Coroutine[Any, Any, T]], *args: Any, **kwargs: Any
    ) -> T:
        current = self.state
        if current == CircuitState.OPEN:
            retry_after = self.recovery_timeout_s - (time.monotonic() - self._last_failure_time)
            raise CircuitBreakerOpen(self.name, max(retry_after, 1.0))

        if current == CircuitState.HALF_OPEN:
            async with self._lock:
                if self._probe_in_flight:
                    raise CircuitBreakerOpen(self.name, 5.0)
                self._probe_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except self.failure_types as exc:
            await self._on_failure(exc)
            raise
        except BaseException:
            async with self._lock:
                self._probe_in_flight = False
            raise
        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                logger.info("circuit_breaker_closed", name=self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    async def _on_failure(self, exc: BaseException) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            was_probe = self._probe_in_flight
            self._probe_in_flight = False

            if was_probe:
                self._state = CircuitState.OPEN
                logger.warning("circuit_breaker_reopened", name=self.name, error=str(exc))
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failures=self._failure_count,
                    error=str(exc),
                )
