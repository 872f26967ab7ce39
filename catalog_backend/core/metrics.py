"""Prometheus metrics for the catalog cache and synchronization layer.

Labels stay low-cardinality: key classes rather than keys, outcomes rather
than error messages.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ----------------------------
# Cache metrics
# ----------------------------

CACHE_REQUESTS_TOTAL = Counter(
    "catalog_cache_requests_total",
    "Cache lookups by key class and result (hit/miss).",
    labelnames=("key_class", "result"),
)

CACHE_EVICTIONS_TOTAL = Counter(
    "catalog_cache_evictions_total",
    "Entries removed by the cache without an explicit invalidation.",
    labelnames=("reason",),
)

CACHE_ENTRIES = Gauge(
    "catalog_cache_entries",
    "Number of entries currently held by the catalog cache.",
)

# ----------------------------
# Upstream content service
# ----------------------------

CONTENT_FETCH_TOTAL = Counter(
    "catalog_content_fetch_total",
    "Content service fetches by outcome.",
    labelnames=("outcome",),
)

CONTENT_FETCH_RETRIES_TOTAL = Counter(
    "catalog_content_fetch_retries_total",
    "Retries issued against the content service.",
)

CATALOG_FALLBACK_TOTAL = Counter(
    "catalog_fallback_total",
    "Reads answered from the relational fallback store, by operation.",
    labelnames=("operation",),
)

# ----------------------------
# Synchronization
# ----------------------------

SYNC_DURATION_SECONDS = Histogram(
    "catalog_sync_duration_seconds",
    "Duration of catalog synchronization attempts.",
    labelnames=("outcome",),
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

SYNC_HEALTH_SCORE = Gauge(
    "catalog_sync_health_score",
    "Composite sync health score (0-100) at the last computation.",
)

# ----------------------------
# Background tasks
# ----------------------------

BACKGROUND_TASK_FAILURES_TOTAL = Counter(
    "catalog_background_task_failures_total",
    "Unexpected errors raised by supervised background loops, by task.",
    labelnames=("task",),
)


_KNOWN_KEY_CLASSES = frozenset({"catalog", "service", "categories"})


def key_class(key: str) -> str:
    """Return the metric label for a cache key (its prefix)."""

    prefix, sep, _ = key.partition(":")
    if sep and prefix in _KNOWN_KEY_CLASSES:
        return prefix
    return "other"


__all__ = [
    "CACHE_ENTRIES",
    "CACHE_EVICTIONS_TOTAL",
    "CACHE_REQUESTS_TOTAL",
    "BACKGROUND_TASK_FAILURES_TOTAL",
    "CATALOG_FALLBACK_TOTAL",
    "CONTENT_FETCH_RETRIES_TOTAL",
    "CONTENT_FETCH_TOTAL",
    "SYNC_DURATION_SECONDS",
    "SYNC_HEALTH_SCORE",
    "key_class",
]
