"""Catalog source: external content service first, relational store as fallback.

Read paths never write the relational store; persisting upstream data is the
sync job's responsibility (:mod:`catalog_backend.services.catalog.sync`).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from catalog_backend.clients.content import ContentServiceClient, ContentServiceError
from catalog_backend.core.cache import CacheKeys, CacheStore
from catalog_backend.core.metrics import CATALOG_FALLBACK_TOTAL
from catalog_backend.core.result import DatabaseError, Failure, Result, Success
from catalog_backend.domain.catalog.entities import AvailabilityRecord, CatalogEntry, CategoryCount
from catalog_backend.domain.catalog.models import ServiceRecord
from catalog_backend.repositories.catalog import CatalogRepository
from catalog_backend.services.catalog.mapping import availability_from_row, entry_from_content, entry_from_row

logger = logging.getLogger(__name__)

SORT_FIELDS = ("popularity", "title", "created_at", "updated_at")
UPSTREAM_FAILURE_TTL_SECONDS = 5.0


@dataclass(frozen=True)
class SearchParams:
    query: Optional[str] = None
    category: Optional[str] = None
    tags: Sequence[str] = field(default_factory=tuple)
    is_active: Optional[bool] = True
    limit: int = 50
    offset: int = 0
    sort_by: str = "popularity"
    sort_order: str = "desc"


def dedupe_entries(entries: Sequence[CatalogEntry]) -> List[CatalogEntry]:
    """Drop entries without an identifier and repeated identifiers (first wins)."""

    seen: set[str] = set()
    unique: List[CatalogEntry] = []
    for entry in entries:
        if not entry.id or entry.id in seen:
            continue
        seen.add(entry.id)
        unique.append(entry)
    return unique


def count_categories(entries: Sequence[CatalogEntry]) -> List[CategoryCount]:
    counts: Dict[str, int] = {}
    for entry in entries:
        counts[entry.category] = counts.get(entry.category, 0) + 1
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [CategoryCount(category=category, count=count) for category, count in ordered]


def _matches(entry: CatalogEntry, params: SearchParams) -> bool:
    if params.is_active is not None and entry.is_active != params.is_active:
        return False
    if params.category and entry.category != params.category:
        return False
    if params.query:
        needle = params.query.strip().lower()
        haystacks = (entry.title, entry.description, entry.id)
        if needle and not any(needle in (value or "").lower() for value in haystacks):
            return False
    if params.tags:
        wanted = {tag.strip().lower() for tag in params.tags if tag and tag.strip()}
        if wanted and not wanted.intersection(tag.lower() for tag in entry.tags):
            return False
    return True


def filter_and_sort(entries: Sequence[CatalogEntry], params: SearchParams) -> List[CatalogEntry]:
    matched = [entry for entry in entries if _matches(entry, params)]
    sort_by = params.sort_by if params.sort_by in SORT_FIELDS else "popularity"
    reverse = params.sort_order != "asc"

    if sort_by == "title":
        matched.sort(key=lambda entry: entry.title.lower(), reverse=reverse)
    elif sort_by == "popularity":
        matched.sort(key=lambda entry: entry.popularity or 0, reverse=reverse)
    else:
        # Entries without a timestamp go last in either direction.
        dated = [entry for entry in matched if getattr(entry, sort_by) is not None]
        undated = [entry for entry in matched if getattr(entry, sort_by) is None]
        dated.sort(key=lambda entry: getattr(entry, sort_by), reverse=reverse)
        matched = dated + undated
    return matched


class CatalogSource:
    def __init__(
        self,
        client: ContentServiceClient,
        repository: CatalogRepository,
        *,
        cache: Optional[CacheStore] = None,
    ):
        self.client = client
        self.repository = repository
        # Shared with the controller in production; a private store otherwise.
        self.cache = cache if cache is not None else CacheStore()

    async def _upstream_records(self) -> List[Dict[str, Any]]:
        """Raw upstream records, fetched at most once per ``upstream_ttl``.

        Concurrent callers share one fetch. A failed fetch is remembered as an
        empty list for a few seconds so an outage does not cost every lookup
        the full retry budget.
        """

        key = CacheKeys.upstream_services()
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async with self.cache.fill_lock(key):
            cached = self.cache.get(key)
            if cached is not None:
                return cached
            try:
                records = await self.client.fetch_services()
            except (ContentServiceError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("Content service unavailable, using fallback store: %s", exc)
                self.cache.set(key, [], ttl=min(self.cache.config.upstream_ttl, UPSTREAM_FAILURE_TTL_SECONDS))
                return []
            self.cache.set(key, records)
            return records

    async def _external_entries(self) -> List[CatalogEntry]:
        """Mapped upstream catalog, or an empty list when unreachable."""

        mapped = [entry_from_content(record) for record in await self._upstream_records()]
        return dedupe_entries([entry for entry in mapped if entry is not None])

    def _fallback_rows(self, operation: str, result: Result, default):
        CATALOG_FALLBACK_TOTAL.labels(operation=operation).inc()
        match result:
            case Success(value):
                return value
            case Failure(error):
                logger.error("Fallback store failed during %s: %s", operation, error)
        return default

    async def get_all(self) -> List[CatalogEntry]:
        entries = await self._external_entries()
        if entries:
            return entries

        logger.info("Content service returned no services, falling back to database")
        rows: Sequence[ServiceRecord] = self._fallback_rows("get_all", await self.repository.list_active(), [])
        return dedupe_entries([entry_from_row(row) for row in rows])

    async def get_by_slug(self, slug: str) -> Optional[CatalogEntry]:
        for entry in await self._external_entries():
            if entry.id == slug:
                return entry

        row: Optional[ServiceRecord] = self._fallback_rows("get_by_slug", await self.repository.get(slug), None)
        if row is None:
            return None
        return entry_from_row(row)

    async def get_by_category(self, category: str, limit: int = 50) -> List[CatalogEntry]:
        entries = await self._external_entries()
        if entries:
            return [entry for entry in entries if entry.category == category][:limit]

        rows = self._fallback_rows(
            "get_by_category",
            await self.repository.list_by_category(category, limit),
            [],
        )
        return [entry_from_row(row) for row in rows]

    async def search(self, params: SearchParams) -> Tuple[List[CatalogEntry], int]:
        entries = await self._external_entries()
        if not entries:
            rows = self._fallback_rows("search", await self.repository.list_active(), [])
            entries = dedupe_entries([entry_from_row(row) for row in rows])

        matched = filter_and_sort(entries, params)
        offset = max(0, params.offset)
        return matched[offset : offset + params.limit], len(matched)

    async def get_categories(self) -> List[CategoryCount]:
        entries = await self._external_entries()
        if entries:
            return count_categories(entries)

        counts = self._fallback_rows("get_categories", await self.repository.category_counts(), [])
        return [CategoryCount(category=category, count=count) for category, count in counts]

    async def get_availability(self, service_id: str, location: Optional[str] = None) -> List[AvailabilityRecord]:
        match await self.repository.availability(service_id, location):
            case Success(rows):
                return [availability_from_row(row) for row in rows]
            case Failure(error):
                logger.error("Availability lookup failed for %s: %s", service_id, error)
        return []

    async def get_updated_since(self, since: datetime, limit: Optional[int] = None) -> List[CatalogEntry]:
        match await self.repository.list_updated_since(since, limit):
            case Success(rows):
                return [entry_from_row(row) for row in rows]
            case Failure(error):
                logger.error("Updated-since lookup failed: %s", error)
        return []

    async def get_count(self) -> int:
        entries = await self._external_entries()
        if entries:
            return len(entries)
        return self._fallback_rows("get_count", await self.repository.count_active(), 0)

    async def upsert_service(
        self,
        entry: CatalogEntry,
        content_hash: Optional[str] = None,
    ) -> Result[Tuple[ServiceRecord, bool], DatabaseError]:
        return await self.repository.upsert(entry, content_hash=content_hash)


__all__ = ["CatalogSource", "SearchParams", "count_categories", "dedupe_entries", "filter_and_sort"]
