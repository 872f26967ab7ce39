"""Value objects served by the catalog layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class CatalogEntry:
    """A single service offering.

    ``id`` is the externally assigned slug: unique within the catalog, stable
    across syncs, used as the cache key suffix and as the relational join key.
    """

    id: str
    title: str
    description: str
    category: str
    icon: str
    image_url: Optional[str] = None
    features: List[str] = field(default_factory=list)
    benefits: List[str] = field(default_factory=list)
    additional_info: Any = None
    related_services: List[str] = field(default_factory=list)
    pricing: Any = None
    delivery_time: Optional[str] = None
    coverage: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    service_stats: List[Any] = field(default_factory=list)
    certifications: List[str] = field(default_factory=list)
    is_active: bool = True
    popularity: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "icon": self.icon,
            "image_url": self.image_url,
            "features": list(self.features),
            "benefits": list(self.benefits),
            "additional_info": self.additional_info,
            "related_services": list(self.related_services),
            "pricing": self.pricing,
            "delivery_time": self.delivery_time,
            "coverage": self.coverage,
            "tags": list(self.tags),
            "service_stats": list(self.service_stats),
            "certifications": list(self.certifications),
            "is_active": self.is_active,
            "popularity": self.popularity,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class AvailabilityRecord:
    id: int
    service_id: str
    location: str
    available: bool
    capacity: Optional[int] = None
    next_available: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service_id": self.service_id,
            "location": self.location,
            "available": self.available,
            "capacity": self.capacity,
            "next_available": _iso(self.next_available),
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class CategoryCount:
    category: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "count": self.count}


__all__ = ["AvailabilityRecord", "CatalogEntry", "CategoryCount"]
