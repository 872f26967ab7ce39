"""Catalog sync job: makes upstream content durable in the fallback store."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from catalog_backend.clients.content import ContentServiceClient, content_hash
from catalog_backend.core.cache import CacheKeys, CacheStore
from catalog_backend.core.error_handler import resilient_task
from catalog_backend.core.metrics import SYNC_DURATION_SECONDS
from catalog_backend.core.result import Failure, Success
from catalog_backend.repositories.catalog import CatalogRepository
from catalog_backend.services.catalog.mapping import entry_from_content
from catalog_backend.services.catalog.source import CatalogSource
from catalog_backend.services.sync_health import SyncHealthMonitor, SyncRecord

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    synced: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    changed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
        }


class CatalogSyncJob:
    def __init__(
        self,
        client: ContentServiceClient,
        source: CatalogSource,
        repository: CatalogRepository,
        cache: CacheStore,
        monitor: SyncHealthMonitor,
        *,
        clock=time.time,
    ):
        self.client = client
        self.source = source
        self.repository = repository
        self.cache = cache
        self.monitor = monitor
        self._clock = clock
        self._lock = asyncio.Lock()

    async def run_once(self) -> SyncStats:
        """Fetch upstream, upsert new or changed records, record the attempt.

        Raises whatever made the sync fail after it has been recorded.
        """

        async with self._lock:
            started = self._clock()
            perf_start = time.perf_counter()
            stats = SyncStats()
            error: Optional[BaseException] = None
            try:
                await self._sync(stats)
            except Exception as exc:
                error = exc
            duration = time.perf_counter() - perf_start

            success = error is None and stats.failed == 0
            SYNC_DURATION_SECONDS.labels(outcome="success" if success else "failure").observe(duration)
            self.monitor.record_sync(
                SyncRecord(
                    timestamp=started,
                    duration=duration,
                    success=success,
                    items_synced=stats.created + stats.updated,
                    error=self._describe(error, stats),
                    stats=stats.to_dict(),
                )
            )
            if error is not None:
                raise error
            return stats

    async def _sync(self, stats: SyncStats) -> None:
        records = await self.client.fetch_services()
        # Readers can reuse what this run just fetched.
        self.cache.set(CacheKeys.upstream_services(), records)
        if not records:
            logger.warning("No services from content service to sync")
            return

        match await self.repository.content_hashes():
            case Success(value):
                known: Dict[str, Optional[str]] = value
            case Failure(error):
                raise RuntimeError(str(error))

        seen: set[str] = set()
        for record in records:
            entry = entry_from_content(record)
            if entry is None or entry.id in seen:
                continue
            seen.add(entry.id)
            stats.synced += 1

            digest = content_hash(record)
            if entry.id in known and known[entry.id] == digest:
                stats.unchanged += 1
                continue

            match await self.source.upsert_service(entry, digest):
                case Success((_, created)):
                    pass
                case Failure(error):
                    stats.failed += 1
                    logger.error("Failed to upsert service %s: %s", entry.id, error)
                    continue

            if created:
                stats.created += 1
            else:
                stats.updated += 1
            stats.changed_ids.append(entry.id)

            # Invalidate before logging so the fold reports the upsert, not a deletion.
            self.cache.invalidate_service(entry.id)
            self.cache.record_upsert(CacheKeys.service(entry.id), entry, created=created)

        if stats.changed_ids:
            self.cache.invalidate_catalog()
            self.cache.invalidate_categories()

        logger.info(
            "Catalog sync finished: synced=%d created=%d updated=%d unchanged=%d failed=%d",
            stats.synced,
            stats.created,
            stats.updated,
            stats.unchanged,
            stats.failed,
        )

    @staticmethod
    def _describe(error: Optional[BaseException], stats: SyncStats) -> Optional[str]:
        if error is not None:
            return f"{type(error).__name__}: {error}"
        if stats.failed:
            return f"{stats.failed} service(s) failed to persist"
        return None

    async def run_periodic(self, interval: float) -> None:
        @resilient_task(task_name="catalog_sync", retry_delay=max(1.0, min(interval, 60.0)))
        async def loop() -> None:
            while True:
                await self.run_once()
                await asyncio.sleep(interval)

        await loop()


__all__ = ["CatalogSyncJob", "SyncStats"]
