"""Conversions into :class:`CatalogEntry` from content records and DB rows."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from catalog_backend.domain.catalog.entities import AvailabilityRecord, CatalogEntry
from catalog_backend.domain.catalog.models import ServiceAvailability, ServiceRecord

DEFAULT_ICON = "Package"

CATEGORY_ICONS: Dict[str, str] = {
    "transport": "Truck",
    "warehousing": "Building2",
    "storage": "Building2",
    "customs": "FileCheck",
    "ecommerce": "ShoppingCart",
    "logistics": "Package",
    "port": "Anchor",
    "hr": "Users",
    "agency": "Briefcase",
    "postal": "Mail",
    "marketplace": "Store",
    "technology": "Cpu",
    "consulting": "MessageSquare",
    "finance": "DollarSign",
    "corporate": "Building",
    "partnership": "Handshake",
    "platform": "Globe",
    "training": "GraduationCap",
    "events": "Calendar",
    "trading": "TrendingUp",
}


def category_icon(category: Optional[str]) -> str:
    return CATEGORY_ICONS.get((category or "").strip().lower(), DEFAULT_ICON)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not raw or not isinstance(raw, str):
        return None
    try:
        return _aware(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return None


def _str_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(item) for item in raw if item is not None and str(item).strip()]


def entry_from_content(record: Dict[str, Any]) -> Optional[CatalogEntry]:
    """Map a raw content-service record; records without a slug are dropped."""

    slug = str(record.get("slug") or "").strip()
    if not slug:
        return None

    category = str(record.get("category") or "").strip()
    tags = _str_list(record.get("tags")) or [value for value in (category, slug) if value]
    return CatalogEntry(
        id=slug,
        title=str(record.get("name") or slug),
        description=str(record.get("short_description") or ""),
        category=category,
        icon=category_icon(category),
        image_url=record.get("hero_image_url") or None,
        tags=tags,
        is_active=True,
        popularity=0,
        created_at=_parse_timestamp(record.get("created_at")),
        updated_at=_parse_timestamp(record.get("updated_at")),
    )


def entry_from_row(row: ServiceRecord) -> CatalogEntry:
    return CatalogEntry(
        id=row.id,
        title=row.title,
        description=row.description or "",
        category=row.category,
        icon=row.icon or DEFAULT_ICON,
        image_url=row.image_url,
        features=list(row.features or []),
        benefits=list(row.benefits or []),
        additional_info=row.additional_info,
        related_services=list(row.related_services or []),
        pricing=row.pricing,
        delivery_time=row.delivery_time,
        coverage=row.coverage,
        tags=list(row.tags or []),
        service_stats=list(row.service_stats or []),
        certifications=list(row.certifications or []),
        is_active=bool(row.is_active),
        popularity=row.popularity or 0,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def availability_from_row(row: ServiceAvailability) -> AvailabilityRecord:
    return AvailabilityRecord(
        id=row.id,
        service_id=row.service_id,
        location=row.location,
        available=True if row.available is None else bool(row.available),
        capacity=row.capacity,
        next_available=_aware(row.next_available),
        created_at=_aware(row.created_at),
    )


__all__ = [
    "CATEGORY_ICONS",
    "DEFAULT_ICON",
    "availability_from_row",
    "category_icon",
    "entry_from_content",
    "entry_from_row",
]
