"""Catalog domain: value objects and relational models."""

from . import models  # noqa: F401  # ensure models are registered
from .entities import AvailabilityRecord, CatalogEntry, CategoryCount

__all__ = ["AvailabilityRecord", "CatalogEntry", "CategoryCount"]
