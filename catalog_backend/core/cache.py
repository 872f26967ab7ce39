"""In-process cache for the service catalog.

This module provides:
- TTL per key class (``catalog:``, ``service:``, ``categories:``)
- expiry-order eviction once the store is full
- a time-derived global version stamped on every entry
- a bounded delta log of tagged changes for incremental (delta) clients
- a periodic sweep for cold keys that are written but never re-read

The store is process-local and intentionally has no persistence: a restart
drops entries, the delta log and the version. Versions from a previous
process are therefore always older than the log floor and answered with a
full-resync delta.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Generic, List, Optional, Pattern, Sequence, TypeVar, Union

from catalog_backend.core.error_handler import resilient_task
from catalog_backend.core.metrics import (
    CACHE_ENTRIES,
    CACHE_EVICTIONS_TOTAL,
    CACHE_REQUESTS_TOTAL,
    key_class,
)
from catalog_backend.domain.catalog.entities import CatalogEntry, CategoryCount

logger = logging.getLogger(__name__)

T = TypeVar("T")

FILL_LOCKS_MAX = 1024


class CacheKeys:
    """Standard cache key patterns."""

    CATALOG_PREFIX = "catalog:"
    SERVICE_PREFIX = "service:"
    CATEGORIES_PREFIX = "categories:"
    UPSTREAM_PREFIX = "cms:"

    @staticmethod
    def catalog() -> str:
        return "catalog:all"

    @staticmethod
    def service(slug: str) -> str:
        return f"service:{slug}"

    @staticmethod
    def categories() -> str:
        return "categories:all"

    @staticmethod
    def upstream_services() -> str:
        """Raw record list as last returned by the content service."""
        return "cms:services"

    @staticmethod
    def slug_from_key(key: str) -> Optional[str]:
        """Return the service identifier for a ``service:`` key, else None."""
        if key.startswith(CacheKeys.SERVICE_PREFIX):
            return key[len(CacheKeys.SERVICE_PREFIX):]
        return None


@dataclass(frozen=True)
class CacheConfig:
    """TTLs are in seconds."""

    catalog_ttl: float = 300.0
    service_ttl: float = 60.0
    categories_ttl: float = 300.0
    max_entries: int = 1000
    delta_log_size: int = 100
    sweep_interval: float = 60.0
    upstream_ttl: float = 30.0

    @classmethod
    def from_settings(cls, settings: Any) -> "CacheConfig":
        return cls(
            catalog_ttl=settings.catalog_cache_ttl_seconds,
            service_ttl=settings.service_cache_ttl_seconds,
            categories_ttl=settings.categories_cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
            delta_log_size=settings.cache_delta_log_size,
            sweep_interval=settings.cache_sweep_interval_seconds,
            upstream_ttl=settings.content_cache_ttl_seconds,
        )


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float
    version: int


class ChangeKind(str, enum.Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class DeltaChange:
    kind: ChangeKind
    key: str
    entry: Any = None


@dataclass(frozen=True)
class DeltaLogRecord:
    version: int
    timestamp: float
    changes: tuple[DeltaChange, ...]

    @property
    def keys(self) -> List[str]:
        return [change.key for change in self.changes]


@dataclass
class CacheDelta:
    """Changes after a version, folded per key (latest change wins)."""

    added: List[DeltaChange] = field(default_factory=list)
    updated: List[DeltaChange] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    next_version: int = 0
    has_more: bool = False
    full_resync: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.deleted)


@dataclass(frozen=True)
class CacheStats:
    entries: int
    version: int
    memory_bytes: int
    hits: int
    misses: int
    hit_rate: float
    evictions: int
    expirations: int
    delta_log_records: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": self.entries,
            "version": self.version,
            "memory_bytes": self.memory_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "delta_log_records": self.delta_log_records,
        }


def fold_change(previous: Optional[DeltaChange], change: DeltaChange) -> DeltaChange:
    if previous is None:
        return change
    if previous.kind is ChangeKind.ADDED and change.kind is ChangeKind.UPDATED:
        return DeltaChange(ChangeKind.ADDED, change.key, change.entry)
    return change


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(value)


class CacheStore:
    """TTL key/value store with a global version and a bounded delta log."""

    def __init__(self, config: Optional[CacheConfig] = None, *, clock: Callable[[], float] = time.time):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._delta_log: Deque[DeltaLogRecord] = deque()
        self._version = int(self._clock() * 1000)
        # Versions below the floor cannot be answered incrementally.
        self._log_floor = self._version
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._fill_locks: Dict[str, asyncio.Lock] = {}

    # Versioning ----------------------------------------------------------

    @property
    def current_version(self) -> int:
        return self._version

    def _bump_version(self) -> int:
        now_ms = int(self._clock() * 1000)
        self._version = max(now_ms, self._version + 1)
        return self._version

    def touch(self) -> int:
        """Advance the version without changing any entry."""
        return self._bump_version()

    def _append_record(self, changes: Sequence[DeltaChange]) -> int:
        version = self._bump_version()
        self._delta_log.append(DeltaLogRecord(version=version, timestamp=self._clock(), changes=tuple(changes)))
        while len(self._delta_log) > self.config.delta_log_size:
            evicted = self._delta_log.popleft()
            self._log_floor = evicted.version
        return version

    # Core API ------------------------------------------------------------

    def ttl_for(self, key: str) -> float:
        if key.startswith(CacheKeys.CATALOG_PREFIX):
            return self.config.catalog_ttl
        if key.startswith(CacheKeys.CATEGORIES_PREFIX):
            return self.config.categories_ttl
        if key.startswith(CacheKeys.UPSTREAM_PREFIX):
            return self.config.upstream_ttl
        return self.config.service_ttl

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._record_miss(key)
            return None

        if self._clock() >= entry.expires_at:
            # Lazy expiry
            self._entries.pop(key, None)
            self._expirations += 1
            CACHE_EVICTIONS_TOTAL.labels(reason="expired").inc()
            CACHE_ENTRIES.set(len(self._entries))
            self._record_miss(key)
            return None

        self._hits += 1
        CACHE_REQUESTS_TOTAL.labels(key_class=key_class(key), result="hit").inc()
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl_seconds = self.ttl_for(key) if ttl is None else ttl
        if key not in self._entries and len(self._entries) >= self.config.max_entries:
            self._evict_soonest_expiring()
        self._entries[key] = CacheEntry(
            value=value,
            expires_at=self._clock() + ttl_seconds,
            version=self._version,
        )
        CACHE_ENTRIES.set(len(self._entries))

    def invalidate(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._append_record([DeltaChange(ChangeKind.DELETED, key)])
        CACHE_ENTRIES.set(len(self._entries))
        return True

    def discard(self, key: str) -> bool:
        """Drop an internal entry without logging a change for delta clients."""
        if self._entries.pop(key, None) is None:
            return False
        CACHE_ENTRIES.set(len(self._entries))
        return True

    def invalidate_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in self._entries if regex.search(key)]
        if not matched:
            return 0
        for key in matched:
            del self._entries[key]
        self._append_record([DeltaChange(ChangeKind.DELETED, key) for key in matched])
        CACHE_ENTRIES.set(len(self._entries))
        logger.info("Invalidated %d cache keys matching pattern: %s", len(matched), regex.pattern)
        return len(matched)

    def invalidate_all(self) -> int:
        """Drop every entry and start a new delta epoch (full reset)."""
        self._entries.clear()
        self._delta_log.clear()
        version = self._bump_version()
        self._log_floor = version
        CACHE_ENTRIES.set(0)
        logger.warning("Catalog cache cleared (all keys deleted), version=%d", version)
        return version

    def record_change(self, kind: ChangeKind, key: str, entry: Any = None) -> int:
        """Append a change to the delta log without touching cached entries."""
        return self._append_record([DeltaChange(kind, key, entry)])

    def record_upsert(self, key: str, entry: Any, *, created: bool) -> int:
        """Log that ``key`` now holds ``entry`` upstream (ADDED or UPDATED)."""
        return self.record_change(ChangeKind.ADDED if created else ChangeKind.UPDATED, key, entry)

    def records_since(self, version: int) -> Optional[List[DeltaLogRecord]]:
        """Log records newer than ``version`` in version order.

        None means the log no longer covers ``version`` and the caller has to
        resynchronize from scratch.
        """
        if version < self._log_floor:
            return None
        return [record for record in self._delta_log if record.version > version]

    def get_delta_since(self, version: int, *, limit: Optional[int] = None) -> CacheDelta:
        if version < self._log_floor:
            return CacheDelta(next_version=self._version, full_resync=True)

        folded: Dict[str, DeltaChange] = {}
        consumed = 0
        last_version = version
        has_more = False
        for record in self._delta_log:
            if record.version <= version:
                continue
            if limit is not None and consumed >= limit:
                has_more = True
                break
            for change in record.changes:
                folded[change.key] = fold_change(folded.get(change.key), change)
            consumed += len(record.changes)
            last_version = record.version

        delta = CacheDelta(next_version=last_version if has_more else self._version, has_more=has_more)
        for change in folded.values():
            if change.kind is ChangeKind.ADDED:
                delta.added.append(change)
            elif change.kind is ChangeKind.UPDATED:
                delta.updated.append(change)
            else:
                delta.deleted.append(change.key)
        return delta

    def fill_lock(self, key: str) -> asyncio.Lock:
        """Lock serializing fills of ``key`` (see :mod:`catalog_backend.core.readthrough`)."""
        lock = self._fill_locks.get(key)
        if lock is None:
            if len(self._fill_locks) >= FILL_LOCKS_MAX:
                for stale in [k for k, v in self._fill_locks.items() if not v.locked()]:
                    del self._fill_locks[stale]
            lock = self._fill_locks[key] = asyncio.Lock()
        return lock

    def sweep(self) -> int:
        """Remove every expired entry; returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            self._expirations += len(expired)
            CACHE_EVICTIONS_TOTAL.labels(reason="expired").inc(len(expired))
            CACHE_ENTRIES.set(len(self._entries))
        return len(expired)

    def get_stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            entries=len(self._entries),
            version=self._version,
            memory_bytes=self._estimate_memory(),
            hits=self._hits,
            misses=self._misses,
            hit_rate=round(self._hits / lookups * 100, 2) if lookups else 0.0,
            evictions=self._evictions,
            expirations=self._expirations,
            delta_log_records=len(self._delta_log),
        )

    async def run_sweeper(self, interval: Optional[float] = None) -> None:
        await run_cache_sweeper(self, interval=interval)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # Typed wrappers ------------------------------------------------------

    def get_catalog(self) -> Optional[List[CatalogEntry]]:
        return self.get(CacheKeys.catalog())

    def set_catalog(self, entries: List[CatalogEntry]) -> None:
        self.set(CacheKeys.catalog(), list(entries))

    def invalidate_catalog(self) -> bool:
        return self.invalidate(CacheKeys.catalog())

    def get_service(self, slug: str) -> Optional[CatalogEntry]:
        return self.get(CacheKeys.service(slug))

    def set_service(self, slug: str, entry: CatalogEntry) -> None:
        self.set(CacheKeys.service(slug), entry)

    def invalidate_service(self, slug: str) -> bool:
        return self.invalidate(CacheKeys.service(slug))

    def get_categories(self) -> Optional[List[CategoryCount]]:
        return self.get(CacheKeys.categories())

    def set_categories(self, categories: List[CategoryCount]) -> None:
        self.set(CacheKeys.categories(), list(categories))

    def invalidate_categories(self) -> bool:
        return self.invalidate(CacheKeys.categories())

    # Helpers -------------------------------------------------------------

    def _record_miss(self, key: str) -> None:
        self._misses += 1
        CACHE_REQUESTS_TOTAL.labels(key_class=key_class(key), result="miss").inc()

    def _evict_soonest_expiring(self) -> None:
        victim = min(self._entries, key=lambda k: self._entries[k].expires_at)
        del self._entries[victim]
        self._evictions += 1
        CACHE_EVICTIONS_TOTAL.labels(reason="capacity").inc()
        logger.debug("Cache full (%d entries); evicted %s", self.config.max_entries, victim)

    def _estimate_memory(self) -> int:
        total = 0
        for key, entry in self._entries.items():
            try:
                payload = json.dumps(entry.value, default=_json_default)
            except (TypeError, ValueError):
                payload = repr(entry.value)
            total += len(key) + len(payload.encode("utf-8"))
        return total


@resilient_task(task_name="catalog_cache_sweeper", retry_delay=5.0)
async def run_cache_sweeper(cache: CacheStore, *, interval: Optional[float] = None) -> None:
    """Periodically drop expired entries that lazy expiry never reaches."""

    period = interval if interval is not None else cache.config.sweep_interval
    while True:
        await asyncio.sleep(period)
        removed = cache.sweep()
        if removed:
            logger.debug("Cache sweep removed %d expired entries", removed)


__all__ = [
    "CacheConfig",
    "CacheDelta",
    "CacheEntry",
    "CacheKeys",
    "CacheStats",
    "CacheStore",
    "ChangeKind",
    "DeltaChange",
    "DeltaLogRecord",
    "fold_change",
    "run_cache_sweeper",
]
