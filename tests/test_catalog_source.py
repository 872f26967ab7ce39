from datetime import datetime, timedelta, timezone

import pytest

from catalog_backend.clients.content import ContentServiceError
from catalog_backend.core.result import DatabaseError, Failure
from catalog_backend.domain.catalog.entities import CatalogEntry
from catalog_backend.domain.catalog.models import ServiceAvailability
from catalog_backend.services.catalog.mapping import category_icon, entry_from_content
from catalog_backend.services.catalog.source import CatalogSource, SearchParams


def _stored(slug: str, *, category: str = "warehousing", popularity: float = 0, active: bool = True) -> CatalogEntry:
    return CatalogEntry(
        id=slug,
        title=slug.title(),
        description=f"{slug} from the database",
        category=category,
        icon="Building2",
        features=["24/7"],
        related_services=["other"],
        is_active=active,
        popularity=popularity,
    )


@pytest.fixture
def source(content_client, repository, cache) -> CatalogSource:
    return CatalogSource(content_client, repository, cache=cache)


def test_category_icon_defaults_to_package():
    assert category_icon("transport") == "Truck"
    assert category_icon("Customs") == "FileCheck"
    assert category_icon("unknown") == "Package"
    assert category_icon(None) == "Package"


def test_entry_from_content_derives_icon_and_tags(make_record):
    entry = entry_from_content(make_record("sea-freight", category="port", hero_image_url="https://img/x.png"))

    assert entry.id == "sea-freight"
    assert entry.title == "Sea Freight"
    assert entry.icon == "Anchor"
    assert entry.tags == ["port", "sea-freight"]
    assert entry.image_url == "https://img/x.png"
    assert entry.is_active is True
    assert entry.popularity == 0
    assert entry_from_content({"name": "No slug"}) is None


@pytest.mark.asyncio
async def test_get_all_prefers_external_and_dedupes(source, content_client, repository, make_record):
    await repository.upsert(_stored("db-only"))
    content_client.records = [
        make_record("a"),
        make_record("b"),
        make_record("a", name="Duplicate"),
        {"name": "missing slug"},
    ]

    entries = await source.get_all()

    assert [entry.id for entry in entries] == ["a", "b"]
    assert entries[0].title == "A"


@pytest.mark.asyncio
async def test_get_all_falls_back_when_external_is_empty(source, content_client, repository):
    await repository.upsert(_stored("warehouse", popularity=5))
    await repository.upsert(_stored("inactive", active=False))
    content_client.records = []

    entries = await source.get_all()

    assert [entry.id for entry in entries] == ["warehouse"]
    assert entries[0].features == ["24/7"]
    assert entries[0].icon == "Building2"


@pytest.mark.asyncio
async def test_get_all_falls_back_when_external_fails(source, content_client, repository):
    await repository.upsert(_stored("warehouse"))
    content_client.error = ContentServiceError("down", status=503, retryable=True)

    entries = await source.get_all()

    assert [entry.id for entry in entries] == ["warehouse"]


@pytest.mark.asyncio
async def test_fallback_database_error_yields_empty_result(content_client, monkeypatch, repository):
    async def broken():
        return Failure(DatabaseError(operation="ServiceRecord.list_active", message="db down"))

    monkeypatch.setattr(repository, "list_active", broken)
    content_client.error = ContentServiceError("down", status=503, retryable=True)

    assert await CatalogSource(content_client, repository).get_all() == []


@pytest.mark.asyncio
async def test_get_by_slug_checks_database_after_external(source, content_client, repository, make_record):
    await repository.upsert(_stored("legacy"))
    content_client.records = [make_record("airfreight")]

    assert (await source.get_by_slug("airfreight")).title == "Airfreight"
    assert (await source.get_by_slug("legacy")).description == "legacy from the database"
    assert await source.get_by_slug("nowhere") is None


@pytest.mark.asyncio
async def test_lookups_share_one_upstream_fetch(source, content_client, clock, make_record):
    content_client.records = [make_record("air"), make_record("sea")]

    await source.get_all()
    await source.get_by_slug("sea")
    await source.search(SearchParams(query="air"))
    assert content_client.calls == 1

    clock.advance(31)
    assert await source.get_count() == 2
    assert content_client.calls == 2


@pytest.mark.asyncio
async def test_failed_fetch_is_remembered_briefly(source, content_client, repository, clock, make_record):
    await repository.upsert(_stored("warehouse"))
    content_client.error = ContentServiceError("down", status=503, retryable=True)

    assert [entry.id for entry in await source.get_all()] == ["warehouse"]
    assert await source.get_by_slug("warehouse") is not None
    assert content_client.calls == 1

    clock.advance(6)
    content_client.error = None
    content_client.records = [make_record("air")]
    assert [entry.id for entry in await source.get_all()] == ["air"]
    assert content_client.calls == 2


@pytest.mark.asyncio
async def test_get_by_category_limits_results(source, content_client, make_record):
    content_client.records = [make_record(f"t{i}", category="transport") for i in range(5)] + [
        make_record("c1", category="customs")
    ]

    entries = await source.get_by_category("transport", limit=3)

    assert [entry.id for entry in entries] == ["t0", "t1", "t2"]


@pytest.mark.asyncio
async def test_search_filters_and_paginates(source, content_client, make_record):
    content_client.records = [
        make_record("air-freight", category="transport"),
        make_record("rail-freight", category="transport"),
        make_record("customs-clearance", category="customs", short_description="Freight paperwork"),
        make_record("storage", category="warehousing"),
    ]

    entries, total = await source.search(SearchParams(query="FREIGHT", limit=2, sort_by="title", sort_order="asc"))
    assert total == 3
    assert [entry.id for entry in entries] == ["air-freight", "customs-clearance"]

    entries, total = await source.search(SearchParams(category="transport", tags=["rail-freight"]))
    assert total == 1
    assert entries[0].id == "rail-freight"


@pytest.mark.asyncio
async def test_get_categories_counts_descending(source, content_client, repository, clock, make_record):
    content_client.records = [
        make_record("a", category="customs"),
        make_record("b", category="transport"),
        make_record("c", category="transport"),
    ]

    categories = await source.get_categories()
    assert [(item.category, item.count) for item in categories] == [("transport", 2), ("customs", 1)]

    content_client.records = []
    clock.advance(31)
    await repository.upsert(_stored("w1"))
    await repository.upsert(_stored("w2"))
    await repository.upsert(_stored("t1", category="transport"))
    categories = await source.get_categories()
    assert [(item.category, item.count) for item in categories] == [("warehousing", 2), ("transport", 1)]


@pytest.mark.asyncio
async def test_get_count_falls_back_to_active_rows(source, content_client, repository, clock, make_record):
    content_client.records = [make_record("a"), make_record("b")]
    assert await source.get_count() == 2

    content_client.records = []
    clock.advance(31)
    await repository.upsert(_stored("w1"))
    await repository.upsert(_stored("w2", active=False))
    assert await source.get_count() == 1


@pytest.mark.asyncio
async def test_upsert_increments_version_and_stamps_sync(repository):
    row, was_created = (await repository.upsert(_stored("warehouse"), content_hash="hash-1")).unwrap()
    assert was_created is True
    assert row.version == 1

    row, was_created = (await repository.upsert(_stored("warehouse", popularity=3), content_hash="hash-2")).unwrap()
    assert was_created is False
    assert row.version == 2
    assert row.popularity == 3
    assert row.content_hash == "hash-2"
    assert row.synced_at is not None

    hashes = (await repository.content_hashes()).unwrap()
    assert hashes == {"warehouse": "hash-2"}


@pytest.mark.asyncio
async def test_get_updated_since_reads_database(source, repository):
    await repository.upsert(_stored("fresh"))
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    future = datetime.now(timezone.utc) + timedelta(minutes=5)

    assert [entry.id for entry in await source.get_updated_since(past)] == ["fresh"]
    assert await source.get_updated_since(future) == []


@pytest.mark.asyncio
async def test_get_availability_filters_by_location(source, session_factory):
    async with session_factory() as session:
        session.add_all(
            [
                ServiceAvailability(service_id="warehouse", location="Riga", available=True, capacity=10),
                ServiceAvailability(service_id="warehouse", location="Tallinn", available=None),
                ServiceAvailability(service_id="other", location="Riga", available=False),
            ]
        )
        await session.commit()

    everywhere = await source.get_availability("warehouse")
    assert [record.location for record in everywhere] == ["Riga", "Tallinn"]
    assert everywhere[1].available is True

    riga = await source.get_availability("warehouse", "Riga")
    assert len(riga) == 1
    assert riga[0].capacity == 10
