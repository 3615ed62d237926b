"""Startup helpers shared by the API and the reconciler service."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from shared.utils.logging import get_logger

logger = get_logger(__name__)

CONNECT_RETRY_ATTEMPTS = 5
CONNECT_RETRY_BASE_DELAY_S = 2.0


async def connect_with_retry(
    connect_fn: Callable[[], Awaitable[None]],
    name: str,
    attempts: int = CONNECT_RETRY_ATTEMPTS,
    base_delay_s: float = CONNECT_RETRY_BASE_DELAY_S,
) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, attempts + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == attempts:
                raise
            delay = base_delay_s * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=attempts,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
