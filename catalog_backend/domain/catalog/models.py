from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from catalog_backend.domain.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceRecord(Base):
    """Relational copy of a catalog entry, used as the fallback store."""

    __tablename__ = "services"
    __table_args__ = (
        Index("ix_services_category_active", "category", "is_active"),
        Index("ix_services_updated_at", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(120), nullable=False)
    icon: Mapped[str] = mapped_column(String(64), nullable=False, default="Package")
    image_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    features: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    benefits: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    additional_info: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    related_services: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    pricing: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    delivery_time: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    coverage: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tags: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    service_stats: Mapped[Optional[List[Any]]] = mapped_column(JSON, nullable=True)
    certifications: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    popularity: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    content_hash: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<ServiceRecord {self.id} v{self.version}>"


class ServiceAvailability(Base):
    __tablename__ = "service_availability"
    __table_args__ = (Index("ix_service_availability_service_location", "service_id", "location"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(String(120), nullable=False)
    location: Mapped[str] = mapped_column(String(120), nullable=False)
    available: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True, default=True)
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    next_available: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<ServiceAvailability {self.service_id}@{self.location}>"


__all__ = ["ServiceAvailability", "ServiceRecord"]
