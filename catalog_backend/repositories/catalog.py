"""Catalog repository over the relational fallback store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_backend.core.db import session_scope
from catalog_backend.core.result import DatabaseError, Result, failure, success
from catalog_backend.domain.catalog.entities import CatalogEntry
from catalog_backend.domain.catalog.models import ServiceAvailability, ServiceRecord

# Columns copied verbatim from a CatalogEntry on upsert.
_ENTRY_COLUMNS = (
    "title",
    "description",
    "category",
    "icon",
    "image_url",
    "features",
    "benefits",
    "additional_info",
    "related_services",
    "pricing",
    "delivery_time",
    "coverage",
    "tags",
    "service_stats",
    "certifications",
    "is_active",
    "popularity",
)


def _db_failure(operation: str, exc: Exception) -> Result:
    return failure(
        DatabaseError(
            operation=operation,
            message=str(exc),
            original_exception=exc,
        )
    )


class CatalogRepository:
    """Repository for ServiceRecord and ServiceAvailability rows.

    Every method opens its own short-lived session from the injected factory
    and returns a Result instead of raising.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_active(self) -> Result[Sequence[ServiceRecord], DatabaseError]:
        try:
            async with session_scope(self._session_factory) as session:
                stmt = (
                    select(ServiceRecord)
                    .where(ServiceRecord.is_active.is_(True))
                    .order_by(ServiceRecord.popularity.desc(), ServiceRecord.id.asc())
                )
                rows = (await session.execute(stmt)).scalars().all()
            return success(rows)
        except Exception as e:
            return _db_failure("ServiceRecord.list_active", e)

    async def get(self, service_id: str) -> Result[Optional[ServiceRecord], DatabaseError]:
        """
        Get a service row by identifier, active or not.

        Returns:
            Result containing the row or None if not found, or error
        """
        try:
            async with session_scope(self._session_factory) as session:
                row = await session.get(ServiceRecord, service_id)
            return success(row)
        except Exception as e:
            return _db_failure("ServiceRecord.get", e)

    async def list_by_category(self, category: str, limit: int = 50) -> Result[Sequence[ServiceRecord], DatabaseError]:
        try:
            async with session_scope(self._session_factory) as session:
                stmt = (
                    select(ServiceRecord)
                    .where(ServiceRecord.category == category, ServiceRecord.is_active.is_(True))
                    .order_by(ServiceRecord.popularity.desc(), ServiceRecord.id.asc())
                    .limit(limit)
                )
                rows = (await session.execute(stmt)).scalars().all()
            return success(rows)
        except Exception as e:
            return _db_failure("ServiceRecord.list_by_category", e)

    async def category_counts(self) -> Result[List[Tuple[str, int]], DatabaseError]:
        """Active rows per category, largest first (ties by name)."""
        try:
            async with session_scope(self._session_factory) as session:
                count = func.count(ServiceRecord.id)
                stmt = (
                    select(ServiceRecord.category, count)
                    .where(ServiceRecord.is_active.is_(True))
                    .group_by(ServiceRecord.category)
                    .order_by(count.desc(), ServiceRecord.category.asc())
                )
                rows = [(category, int(total)) for category, total in (await session.execute(stmt)).all()]
            return success(rows)
        except Exception as e:
            return _db_failure("ServiceRecord.category_counts", e)

    async def count_active(self) -> Result[int, DatabaseError]:
        try:
            async with session_scope(self._session_factory) as session:
                stmt = select(func.count(ServiceRecord.id)).where(ServiceRecord.is_active.is_(True))
                total = (await session.execute(stmt)).scalar_one()
            return success(int(total))
        except Exception as e:
            return _db_failure("ServiceRecord.count_active", e)

    async def list_updated_since(
        self,
        since: datetime,
        limit: Optional[int] = None,
    ) -> Result[Sequence[ServiceRecord], DatabaseError]:
        """Rows (active or not) whose ``updated_at`` is strictly after ``since``, oldest first."""
        try:
            async with session_scope(self._session_factory) as session:
                stmt = (
                    select(ServiceRecord)
                    .where(ServiceRecord.updated_at > since)
                    .order_by(ServiceRecord.updated_at.asc(), ServiceRecord.id.asc())
                )
                if limit is not None:
                    stmt = stmt.limit(limit)
                rows = (await session.execute(stmt)).scalars().all()
            return success(rows)
        except Exception as e:
            return _db_failure("ServiceRecord.list_updated_since", e)

    async def availability(
        self,
        service_id: str,
        location: Optional[str] = None,
    ) -> Result[Sequence[ServiceAvailability], DatabaseError]:
        try:
            async with session_scope(self._session_factory) as session:
                stmt = select(ServiceAvailability).where(ServiceAvailability.service_id == service_id)
                if location:
                    stmt = stmt.where(ServiceAvailability.location == location)
                stmt = stmt.order_by(ServiceAvailability.location.asc(), ServiceAvailability.id.asc())
                rows = (await session.execute(stmt)).scalars().all()
            return success(rows)
        except Exception as e:
            return _db_failure("ServiceAvailability.list", e)

    async def content_hashes(self) -> Result[Dict[str, Optional[str]], DatabaseError]:
        try:
            async with session_scope(self._session_factory) as session:
                stmt = select(ServiceRecord.id, ServiceRecord.content_hash)
                hashes = {service_id: digest for service_id, digest in (await session.execute(stmt)).all()}
            return success(hashes)
        except Exception as e:
            return _db_failure("ServiceRecord.content_hashes", e)

    async def upsert(
        self,
        entry: CatalogEntry,
        *,
        content_hash: Optional[str] = None,
    ) -> Result[Tuple[ServiceRecord, bool], DatabaseError]:
        """
        Create or update the row for ``entry.id``.

        Returns:
            Result containing ``(row, created)``; updates bump ``version``.
        """
        now = datetime.now(timezone.utc)
        try:
            async with session_scope(self._session_factory) as session:
                row = await session.get(ServiceRecord, entry.id)
                created = row is None
                if row is None:
                    row = ServiceRecord(id=entry.id, version=1, created_at=entry.created_at or now)
                    session.add(row)
                else:
                    row.version = (row.version or 0) + 1

                for column in _ENTRY_COLUMNS:
                    setattr(row, column, getattr(entry, column))
                row.content_hash = content_hash
                row.synced_at = now
                row.updated_at = now
                await session.commit()
            return success((row, created))
        except Exception as e:
            return _db_failure("ServiceRecord.upsert", e)


__all__ = ["CatalogRepository"]
