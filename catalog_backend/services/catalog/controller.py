"""Catalog controller: cache-or-fetch decisions and response envelopes.

Every public coroutine returns a :class:`ControllerResponse` whose body is
JSON-safe. Failures are never raised to the caller; they become
``{"success": False, "error": {"code", "message"}, "timestamp"}`` with the
matching status code. Internal error text is logged, never returned.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from catalog_backend.core.cache import CacheKeys, CacheStore, ChangeKind, DeltaChange, fold_change
from catalog_backend.core.readthrough import get_or_compute
from catalog_backend.domain.catalog.entities import CatalogEntry, CategoryCount
from catalog_backend.domain.errors import CatalogError, InvalidRequestError, ServiceNotFoundError
from catalog_backend.services.catalog.source import CatalogSource, SearchParams, count_categories

logger = logging.getLogger(__name__)

CATALOG_MAX_LIMIT = 500
CATALOG_DEFAULT_LIMIT = 100
SEARCH_MAX_LIMIT = 100
SEARCH_DEFAULT_LIMIT = 50
MAX_RELATED_SERVICES = 4


@dataclass(frozen=True)
class ControllerResponse:
    status_code: int
    body: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status_code < 400


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _version_timestamp(version: int) -> str:
    return datetime.fromtimestamp(version / 1000, tz=timezone.utc).isoformat()


def _clamp_limit(raw: Any, *, default: int, maximum: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return min(value, maximum)


def _clamp_offset(raw: Any) -> int:
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return 0


def _parse_tags(tags: Union[str, Iterable[str], None]) -> tuple[str, ...]:
    if not tags:
        return ()
    if isinstance(tags, str):
        tags = tags.split(",")
    return tuple(tag.strip() for tag in tags if tag and tag.strip())


def _dump(entries: Iterable[CatalogEntry]) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in entries]


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# (version, slug, logged change or relational row)
_TimelineItem = Tuple[int, str, Union[DeltaChange, CatalogEntry]]


def _ms_to_datetime(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def _row_version(entry: CatalogEntry, default: int) -> int:
    """Smallest millisecond version not earlier than the row's ``updated_at``."""

    if entry.updated_at is None:
        return default
    micros = (entry.updated_at - _EPOCH) // timedelta(microseconds=1)
    return -(-micros // 1000)


def _take_page(items: Sequence[_TimelineItem], limit: int) -> tuple[List[_TimelineItem], bool]:
    """Take whole version groups until ``limit`` distinct services are covered.

    A version is never split across pages, otherwise resuming from it would
    skip the rest of the group. The first group is always taken.
    """

    page: List[_TimelineItem] = []
    slugs: set[str] = set()
    index = 0
    while index < len(items):
        version = items[index][0]
        end = index
        while end < len(items) and items[end][0] == version:
            end += 1
        group = items[index:end]
        fresh = {slug for _, slug, _ in group} - slugs
        if page and len(slugs) + len(fresh) > limit:
            break
        page.extend(group)
        slugs |= fresh
        index = end
    return page, index < len(items)


def _fold_page(
    page: Sequence[_TimelineItem],
) -> tuple[Dict[str, Optional[CatalogEntry]], Dict[str, Optional[CatalogEntry]], List[str]]:
    logged: Dict[str, DeltaChange] = {}
    rows: Dict[str, CatalogEntry] = {}
    for _, slug, item in page:
        if isinstance(item, DeltaChange):
            logged[slug] = fold_change(logged.get(slug), item)
        else:
            rows[slug] = item

    added: Dict[str, Optional[CatalogEntry]] = {}
    updated: Dict[str, Optional[CatalogEntry]] = {}
    deleted: List[str] = []
    for slug, change in logged.items():
        entry = change.entry if isinstance(change.entry, CatalogEntry) else None
        if change.kind is ChangeKind.ADDED:
            added[slug] = entry or rows.get(slug)
        elif change.kind is ChangeKind.UPDATED:
            updated[slug] = rows.get(slug) or entry
        else:
            deleted.append(slug)
    for slug, entry in rows.items():
        if slug not in logged:
            updated[slug] = entry
    return added, updated, deleted


class CatalogController:
    def __init__(self, cache: CacheStore, source: CatalogSource, *, delta_page_size: int = 500):
        self.cache = cache
        self.source = source
        self.delta_page_size = max(1, delta_page_size)

    # Responses -----------------------------------------------------------

    def _ok(self, payload: Dict[str, Any]) -> ControllerResponse:
        return ControllerResponse(200, {"success": True, **payload, "timestamp": _now_iso()})

    @staticmethod
    def _error(code: str, message: str, status_code: int = 500) -> ControllerResponse:
        return ControllerResponse(
            status_code,
            {
                "success": False,
                "error": {"code": code, "message": message},
                "timestamp": _now_iso(),
            },
        )

    def _from_exception(self, exc: CatalogError) -> ControllerResponse:
        return self._error(exc.code, exc.message, exc.status_code)

    # Cached lookups ------------------------------------------------------

    async def _catalog(self) -> List[CatalogEntry]:
        return await get_or_compute(
            self.cache,
            CacheKeys.catalog(),
            compute=self.source.get_all,
            after_store=lambda _: self.cache.touch(),
        )

    async def _categories(self, entries: Optional[Sequence[CatalogEntry]] = None) -> List[CategoryCount]:
        async def compute() -> List[CategoryCount]:
            if entries is not None:
                return count_categories(entries)
            return await self.source.get_categories()

        return await get_or_compute(self.cache, CacheKeys.categories(), compute=compute)

    async def _service(self, slug: str) -> Optional[CatalogEntry]:
        return await get_or_compute(
            self.cache,
            CacheKeys.service(slug),
            compute=lambda: self.source.get_by_slug(slug),
        )

    async def _related(self, entry: CatalogEntry) -> List[CatalogEntry]:
        slugs = [slug for slug in entry.related_services if slug and slug != entry.id][:MAX_RELATED_SERVICES]
        if not slugs:
            return []

        results = await asyncio.gather(*(self._service(slug) for slug in slugs), return_exceptions=True)
        related: List[CatalogEntry] = []
        for slug, result in zip(slugs, results):
            if isinstance(result, BaseException):
                logger.warning("Related service %s could not be resolved for %s: %s", slug, entry.id, result)
                continue
            if result is not None:
                related.append(result)
        return related

    # Public API ----------------------------------------------------------

    async def get_catalog(self, limit: Any = CATALOG_DEFAULT_LIMIT, offset: Any = 0) -> ControllerResponse:
        page_limit = _clamp_limit(limit, default=CATALOG_DEFAULT_LIMIT, maximum=CATALOG_MAX_LIMIT)
        page_offset = _clamp_offset(offset)
        try:
            entries = await self._catalog()
            categories = await self._categories(entries)
            return self._ok(
                {
                    "data": _dump(entries[page_offset : page_offset + page_limit]),
                    "meta": {
                        "total": len(entries),
                        "limit": page_limit,
                        "offset": page_offset,
                        "categories": [item.category for item in categories],
                    },
                    "version": self.cache.current_version,
                }
            )
        except Exception:
            logger.exception("CatalogController.get_catalog failed")
            return self._error("CATALOG_ERROR", "Failed to fetch service catalog")

    async def get_service(self, slug: Optional[str]) -> ControllerResponse:
        slug = (slug or "").strip()
        if not slug:
            return self._from_exception(InvalidRequestError("Service slug is required", code="INVALID_SLUG"))

        try:
            entry = await self._service(slug)
            if entry is None:
                raise ServiceNotFoundError(slug)

            related = await self._related(entry)
            availability = await self.source.get_availability(slug)
            return self._ok(
                {
                    "data": entry.to_dict(),
                    "availability": [record.to_dict() for record in availability],
                    "related_services": _dump(related),
                    "version": self.cache.current_version,
                }
            )
        except CatalogError as exc:
            return self._from_exception(exc)
        except Exception:
            logger.exception("CatalogController.get_service failed for %s", slug)
            return self._error("SERVICE_ERROR", "Failed to fetch service details")

    async def search_services(
        self,
        query: Optional[str] = None,
        category: Optional[str] = None,
        tags: Union[str, Iterable[str], None] = None,
        is_active: Optional[bool] = True,
        limit: Any = SEARCH_DEFAULT_LIMIT,
        offset: Any = 0,
        sort_by: str = "popularity",
        sort_order: str = "desc",
    ) -> ControllerResponse:
        params = SearchParams(
            query=(query or "").strip() or None,
            category=(category or "").strip() or None,
            tags=_parse_tags(tags),
            is_active=is_active,
            limit=_clamp_limit(limit, default=SEARCH_DEFAULT_LIMIT, maximum=SEARCH_MAX_LIMIT),
            offset=_clamp_offset(offset),
            sort_by=sort_by or "popularity",
            sort_order="asc" if (sort_order or "").lower() == "asc" else "desc",
        )
        try:
            entries, total = await self.source.search(params)
            return self._ok(
                {
                    "data": _dump(entries),
                    "meta": {
                        "query": params.query or "",
                        "total": total,
                        "limit": params.limit,
                        "offset": params.offset,
                    },
                }
            )
        except Exception:
            logger.exception("CatalogController.search_services failed")
            return self._error("SEARCH_ERROR", "Failed to search services")

    async def get_categories(self) -> ControllerResponse:
        try:
            categories = await self._categories()
            return self._ok({"data": [item.to_dict() for item in categories]})
        except Exception:
            logger.exception("CatalogController.get_categories failed")
            return self._error("CATEGORIES_ERROR", "Failed to fetch categories")

    async def get_availability(self, service_id: Optional[str], location: Optional[str] = None) -> ControllerResponse:
        service_id = (service_id or "").strip()
        if not service_id:
            return self._from_exception(InvalidRequestError("Service ID is required", code="INVALID_SERVICE_ID"))

        try:
            records = await self.source.get_availability(service_id, (location or "").strip() or None)
            return self._ok(
                {
                    "data": {
                        "service_id": service_id,
                        "locations": [record.to_dict() for record in records],
                    }
                }
            )
        except Exception:
            logger.exception("CatalogController.get_availability failed for %s", service_id)
            return self._error("AVAILABILITY_ERROR", "Failed to check availability")

    async def get_sync_delta(self, since_version: Any = 0) -> ControllerResponse:
        try:
            since = int(since_version or 0)
        except (TypeError, ValueError):
            since = 0

        try:
            current = self.cache.current_version
            if since >= current:
                return self._ok({"data": self._delta_body(since, current, [], [], [], has_more=False)})

            records = self.cache.records_since(since)
            timeline: List[_TimelineItem] = []
            for record in records or ():
                for change in record.changes:
                    slug = CacheKeys.slug_from_key(change.key)
                    if slug is not None:
                        timeline.append((record.version, slug, change))
            rows, horizon = await self._rows_since(since, current)
            timeline.extend((_row_version(entry, current), entry.id, entry) for entry in rows)
            timeline.sort(key=lambda item: item[0])

            truncated = False
            if horizon is not None:
                # Rows at or past the horizon may continue beyond what was read.
                eligible = [item for item in timeline if item[0] < horizon]
                truncated = len(eligible) < len(timeline)
                timeline = eligible

            page, has_more = _take_page(timeline, self.delta_page_size)
            has_more = has_more or truncated
            next_version = page[-1][0] if has_more and page else current

            added, updated, deleted = _fold_page(page)
            await self._fill_missing(added, updated)
            return self._ok(
                {
                    "data": self._delta_body(
                        since,
                        next_version,
                        [entry for entry in added.values() if entry is not None],
                        [entry for entry in updated.values() if entry is not None],
                        deleted,
                        has_more=has_more,
                        full_resync=records is None,
                    )
                }
            )
        except Exception:
            logger.exception("CatalogController.get_sync_delta failed since=%s", since)
            return self._error("SYNC_ERROR", "Failed to get sync delta")

    async def _rows_since(self, since: int, current: int) -> tuple[List[CatalogEntry], Optional[int]]:
        """Relational rows changed after ``since``, read no further than one page.

        Returns the rows and, when the read was cut short, the version from
        which rows may be missing.
        """

        window_start = _ms_to_datetime(max(since, 0))
        read_size = self.delta_page_size + 1
        rows = await self.source.get_updated_since(window_start, read_size)
        if len(rows) < read_size:
            return rows, None

        horizon = _row_version(rows[-1], current)
        if any(_row_version(entry, current) < horizon for entry in rows):
            return rows, horizon
        # Every row read shares one millisecond; a page cannot split it.
        return await self.source.get_updated_since(window_start), None

    async def _fill_missing(self, *groups: Dict[str, Optional[CatalogEntry]]) -> None:
        """Resolve logged changes that carry no entry (e.g. webhook notifications)."""

        if not any(entry is None for group in groups for entry in group.values()):
            return
        by_id = {entry.id: entry for entry in await self._catalog()}
        for group in groups:
            for slug in list(group):
                if group[slug] is None:
                    group[slug] = by_id.get(slug)

    @staticmethod
    def _delta_body(
        since: int,
        next_version: int,
        added: Sequence[CatalogEntry],
        updated: Sequence[CatalogEntry],
        deleted: Sequence[str],
        *,
        has_more: bool,
        full_resync: bool = False,
    ) -> Dict[str, Any]:
        return {
            "version": since,
            "timestamp": _version_timestamp(max(since, 0)),
            "services": {
                "added": _dump(added),
                "updated": _dump(updated),
                "deleted": list(deleted),
            },
            "next_version": next_version,
            "has_more": has_more,
            "full_resync": full_resync,
        }


__all__ = ["CatalogController", "ControllerResponse"]
