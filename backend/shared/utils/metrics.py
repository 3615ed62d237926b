"""
Prometheus metrics for GameLine.
Counters, histograms and gauges for providers, the cascade and sync cycles.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
PROVIDER_REQUESTS = Counter(
    "gl_provider_requests_total",
    "Total provider HTTP requests",
    ["provider", "status"],
)
PROVIDER_FETCHES = Counter(
    "gl_provider_fetches_total",
    "Provider fetch outcomes (ok, empty, transient, quota_exhausted, skipped)",
    ["provider", "sport", "outcome"],
)
PROVIDER_CACHE_HITS = Counter(
    "gl_provider_cache_hits_total",
    "Provider responses served from the Redis response cache",
    ["provider"],
)
CASCADE_RESOLUTIONS = Counter(
    "gl_cascade_resolutions_total",
    "Odds cascade resolutions by satisfying provider",
    ["sport", "provider", "fallback"],
)
CASCADE_EXHAUSTED = Counter(
    "gl_cascade_exhausted_total",
    "Odds cascade runs where no provider produced quotes",
    ["sport", "odds_state"],
)
MATCH_DECISIONS = Counter(
    "gl_match_decisions_total",
    "Identity match decisions",
    ["sport", "outcome"],
)
GAMES_UPSERTED = Counter(
    "gl_games_upserted_total",
    "Unified games written to the store",
    ["sport"],
)
SYNC_ISSUES = Counter(
    "gl_sync_issues_total",
    "Non-fatal issues reported by reconciler stages",
    ["sport", "stage", "kind"],
)

# ── Histograms ──────────────────────────────────────────────────────────
PROVIDER_LATENCY = Histogram(
    "gl_provider_latency_seconds",
    "Provider request latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
SYNC_DURATION = Histogram(
    "gl_sync_duration_seconds",
    "Duration of one sport's sync cycle",
    ["sport"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
PROVIDER_QUOTA_REMAINING = Gauge(
    "gl_provider_quota_remaining",
    "Requests remaining as last reported by the provider",
    ["provider"],
)
LIVE_GAMES = Gauge(
    "gl_live_games",
    "Live games seen in the last sync cycle",
    ["sport"],
)



def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
