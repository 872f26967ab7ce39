import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="catalog-tests-"))

TEST_ENV = {
    "ENVIRONMENT": "test",
    "DATA_DIR": str(TEST_DATA_DIR),
    "DATABASE_URL": f"sqlite+aiosqlite:///{TEST_DATA_DIR / 'catalog.db'}",
    "CONTENT_SERVICE_URL": "http://content.invalid/api",
    "CMS_WEBHOOK_SECRET": "",
    "SYNC_INTERVAL_SECONDS": "0",
    "LOG_FILE": str(TEST_DATA_DIR / "app.log"),
}

for key, value in TEST_ENV.items():
    os.environ[key] = value

from catalog_backend.core.cache import CacheConfig, CacheStore
from catalog_backend.core.db import create_session_factory
from catalog_backend.migrations import upgrade_to_head
from catalog_backend.repositories.catalog import CatalogRepository
from sqlalchemy.ext.asyncio import create_async_engine


@pytest.fixture(scope="session", autouse=True)
def _set_test_env():
    """Force deterministic env for tests and reset cached settings."""

    for key, value in TEST_ENV.items():
        os.environ[key] = value

    from catalog_backend.core import settings as settings_module

    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


class FakeClock:
    """Manually advanced wall clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeContentClient:
    """Stands in for ContentServiceClient: returns canned records or raises."""

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None):
        self.records = list(records or [])
        self.error = error
        self.calls = 0

    async def fetch_services(self) -> List[Dict[str, Any]]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [dict(record) for record in self.records]

    async def close(self) -> None:
        return None


def make_record(slug: str, *, category: str = "transport", name: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    record = {
        "id": len(slug),
        "name": name or slug.replace("-", " ").title(),
        "slug": slug,
        "category": category,
        "short_description": f"{slug} service",
        "hero_image_url": None,
    }
    record.update(extra)
    return record


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> CacheStore:
    return CacheStore(CacheConfig(), clock=clock)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}", future=True)
    await upgrade_to_head(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def repository(session_factory) -> CatalogRepository:
    return CatalogRepository(session_factory)


@pytest.fixture
def content_client() -> FakeContentClient:
    return FakeContentClient()


@pytest.fixture(name="make_record")
def make_record_fixture():
    return make_record
