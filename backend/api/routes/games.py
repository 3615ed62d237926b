"""
Unified games REST endpoints.

GET /v1/games?sport=nfl&status=live&date=YYYY-MM-DD   games for a sport
GET /v1/games/{canonical_id}                          one game
GET /v1/providers/quota                               last reported provider quotas
"""
from __future__ import annotations

import hashlib
import json
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from shared.config import get_settings
from shared.models.enums import GameStatus, Sport
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

from api.dependencies import get_redis, get_store
from reconciler.store import GameStore

logger = get_logger(__name__)
router = APIRouter(prefix="/v1", tags=["games"])


def _compute_etag(content: str | bytes) -> str:
    """Compute a weak ETag from content."""
    if isinstance(content, str):
        content = content.encode()
    digest = hashlib.md5(content).hexdigest()[:16]
    return f'W/"{digest}"'


@router.get("/games")
async def list_games(
    request: Request,
    response: Response,
    sport: Sport = Query(..., description="League to list"),
    status: Optional[GameStatus] = Query(None, description="Only games in this status"),
    date_str: Optional[str] = Query(None, alias="date", description="UTC day, YYYY-MM-DD"),
    store: GameStore = Depends(get_store),
) -> Any:
    """
    List unified games for a sport, ordered by scheduled time.
    Supports ETag-based conditional requests for efficient polling.
    """
    on_date: Optional[date] = None
    if date_str:
        try:
            on_date = date.fromisoformat(date_str)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid date '{date_str}', expected YYYY-MM-DD")

    games = await store.query(sport, status=status, on_date=on_date)
    payload = {
        "sport": sport.value,
        "count": len(games),
        "games": [g.model_dump(mode="json") for g in games],
    }
    payload_json = json.dumps(payload, sort_keys=True)
    etag = _compute_etag(payload_json)

    if request.headers.get("if-none-match") == etag:
        return Response(status_code=304, headers={"ETag": etag})

    response.headers["ETag"] = etag
    response.headers["Cache-Control"] = "public, max-age=5"
    return payload


@router.get("/games/{canonical_id}")
async def get_game(
    canonical_id: str,
    response: Response,
    store: GameStore = Depends(get_store),
) -> dict[str, Any]:
    game = await store.get(canonical_id)
    if game is None:
        raise HTTPException(status_code=404, detail=f"Game {canonical_id} not found")
    response.headers["Cache-Control"] = "public, max-age=2"
    return game.model_dump(mode="json")


@router.get("/providers/quota")
async def provider_quota(
    redis: Optional[RedisManager] = Depends(get_redis),
) -> dict[str, Any]:
    """Quota counters as last mirrored to Redis by the reconciler."""
    settings = get_settings()
    providers = sorted({settings.schedule_provider, *settings.odds_provider_order})
    quotas: dict[str, Any] = {}
    if redis is not None:
        for provider in providers:
            try:
                state = await redis.get_quota(provider)
            except Exception as exc:
                logger.warning("quota_read_failed", provider=provider, error=str(exc))
                state = None
            if state is not None:
                quotas[provider] = state
    return {"providers": providers, "quota": quotas}
