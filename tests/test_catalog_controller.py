import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from catalog_backend.core.cache import CacheKeys, ChangeKind
from catalog_backend.domain.catalog.entities import CatalogEntry
from catalog_backend.domain.catalog.models import ServiceRecord
from catalog_backend.services.catalog.controller import CatalogController
from catalog_backend.services.catalog.source import CatalogSource


def _stored(slug: str, *, related=None, category: str = "transport") -> CatalogEntry:
    return CatalogEntry(
        id=slug,
        title=slug.title(),
        description="",
        category=category,
        icon="Truck",
        related_services=list(related or []),
    )


@pytest.fixture
def source(content_client, repository, cache) -> CatalogSource:
    return CatalogSource(content_client, repository, cache=cache)


@pytest.fixture
def controller(cache, source) -> CatalogController:
    return CatalogController(cache, source, delta_page_size=500)


@pytest.mark.asyncio
async def test_catalog_page_reports_unsliced_total(controller, content_client, cache, make_record):
    content_client.records = [
        make_record(f"service-{i}", category="transport" if i % 2 else "customs") for i in range(46)
    ]
    version_before = cache.current_version

    response = await controller.get_catalog(limit=20, offset=0)

    assert response.status_code == 200
    body = response.body
    assert body["success"] is True
    assert len(body["data"]) == 20
    assert body["meta"]["total"] == 46
    assert body["meta"]["limit"] == 20
    assert sorted(body["meta"]["categories"]) == ["customs", "transport"]
    assert body["version"] > version_before
    assert content_client.calls == 1


@pytest.mark.asyncio
async def test_catalog_is_served_from_cache(controller, content_client, make_record):
    content_client.records = [make_record("a"), make_record("b")]

    await controller.get_catalog()
    second = await controller.get_catalog(limit=1, offset=1)

    assert content_client.calls == 1
    assert [item["id"] for item in second.body["data"]] == ["b"]


@pytest.mark.asyncio
async def test_catalog_limits_are_clamped(controller, content_client, make_record):
    content_client.records = [make_record("a")]

    response = await controller.get_catalog(limit=10_000, offset=-5)

    assert response.body["meta"]["limit"] == 500
    assert response.body["meta"]["offset"] == 0


@pytest.mark.asyncio
async def test_concurrent_catalog_misses_share_one_fetch(cache, repository, make_record):
    class SlowClient:
        calls = 0

        async def fetch_services(self):
            SlowClient.calls += 1
            await asyncio.sleep(0.05)
            return [make_record("a"), make_record("b")]

    controller = CatalogController(cache, CatalogSource(SlowClient(), repository))

    responses = await asyncio.gather(*(controller.get_catalog() for _ in range(5)))

    assert SlowClient.calls == 1
    assert all(response.body["meta"]["total"] == 2 for response in responses)


@pytest.mark.asyncio
async def test_service_cache_ttl_controls_refetch(controller, content_client, clock, make_record):
    content_client.records = [make_record("airfreight")]

    first = await controller.get_service("airfreight")
    assert first.status_code == 200
    assert first.body["data"]["id"] == "airfreight"
    assert content_client.calls == 1

    clock.advance(30)
    await controller.get_service("airfreight")
    assert content_client.calls == 1

    clock.advance(31)
    await controller.get_service("airfreight")
    assert content_client.calls == 2


@pytest.mark.asyncio
async def test_unknown_service_is_not_found(controller, content_client, make_record):
    content_client.records = [make_record("a")]

    response = await controller.get_service("missing")

    assert response.status_code == 404
    assert response.body["success"] is False
    assert response.body["error"] == {"code": "SERVICE_NOT_FOUND", "message": "Service 'missing' not found"}


@pytest.mark.asyncio
async def test_blank_slug_is_rejected(controller, content_client):
    response = await controller.get_service("  ")

    assert response.status_code == 400
    assert response.body["error"]["code"] == "INVALID_SLUG"
    assert content_client.calls == 0


@pytest.mark.asyncio
async def test_related_services_are_best_effort(controller, source, repository, monkeypatch):
    await repository.upsert(_stored("main", related=["b", "broken", "missing", "d", "e"]))
    for slug in ("b", "d", "e"):
        await repository.upsert(_stored(slug))

    original = source.get_by_slug

    async def flaky(slug):
        if slug == "broken":
            raise RuntimeError("lookup exploded")
        return await original(slug)

    monkeypatch.setattr(source, "get_by_slug", flaky)

    response = await controller.get_service("main")

    assert response.status_code == 200
    assert [item["id"] for item in response.body["related_services"]] == ["b", "d"]
    assert response.body["availability"] == []


@pytest.mark.asyncio
async def test_internal_errors_do_not_leak(controller, source, monkeypatch):
    async def explode():
        raise RuntimeError("password=hunter2")

    monkeypatch.setattr(source, "get_all", explode)

    response = await controller.get_catalog()

    assert response.status_code == 500
    assert response.body["error"]["code"] == "CATALOG_ERROR"
    assert "hunter2" not in response.body["error"]["message"]


@pytest.mark.asyncio
async def test_search_results_are_not_cached(controller, content_client, clock, make_record):
    content_client.records = [make_record("air-freight"), make_record("sea-freight"), make_record("storage")]

    first = await controller.search_services(query="freight", tags="air-freight,sea-freight", limit=500)
    clock.advance(31)
    content_client.records.append(make_record("rail-freight"))
    second = await controller.search_services(query="freight")

    assert content_client.calls == 2
    assert second.body["meta"]["total"] == 3
    assert first.body["meta"] == {"query": "freight", "total": 2, "limit": 100, "offset": 0}


@pytest.mark.asyncio
async def test_categories_are_cached(controller, content_client, make_record):
    content_client.records = [make_record("a", category="customs"), make_record("b"), make_record("c")]

    first = await controller.get_categories()
    await controller.get_categories()

    assert content_client.calls == 1
    assert first.body["data"] == [{"category": "transport", "count": 2}, {"category": "customs", "count": 1}]


@pytest.mark.asyncio
async def test_availability_requires_service_id(controller):
    response = await controller.get_availability("")

    assert response.status_code == 400
    assert response.body["error"]["code"] == "INVALID_SERVICE_ID"

    ok = await controller.get_availability("warehouse", location="Riga")
    assert ok.body["data"] == {"service_id": "warehouse", "locations": []}


@pytest.mark.asyncio
async def test_sync_delta_is_empty_when_client_is_current(controller, cache):
    current = cache.current_version

    for since in (current, current + 10_000):
        response = await controller.get_sync_delta(since)
        data = response.body["data"]
        assert data["services"] == {"added": [], "updated": [], "deleted": []}
        assert data["has_more"] is False
        assert data["next_version"] == current


@pytest.mark.asyncio
async def test_sync_delta_merges_log_and_database(controller, cache, repository):
    since = cache.current_version
    cache.record_upsert(CacheKeys.service("new"), _stored("new"), created=True)
    cache.set_service("gone", _stored("gone"))
    cache.invalidate_service("gone")
    await repository.upsert(_stored("changed"))

    response = await controller.get_sync_delta(since)

    data = response.body["data"]
    assert [item["id"] for item in data["services"]["added"]] == ["new"]
    assert [item["id"] for item in data["services"]["updated"]] == ["changed"]
    assert data["services"]["deleted"] == ["gone"]
    assert data["next_version"] == cache.current_version
    assert data["has_more"] is False
    assert data["full_resync"] is False


@pytest.mark.asyncio
async def test_sync_delta_paginates(cache, source):
    controller = CatalogController(cache, source, delta_page_size=2)
    since = cache.current_version
    for slug in ("a", "b", "c"):
        cache.record_upsert(CacheKeys.service(slug), _stored(slug), created=True)

    first = (await controller.get_sync_delta(since)).body["data"]
    assert [item["id"] for item in first["services"]["added"]] == ["a", "b"]
    assert first["has_more"] is True

    second = (await controller.get_sync_delta(first["next_version"])).body["data"]
    assert [item["id"] for item in second["services"]["added"]] == ["c"]
    assert second["has_more"] is False


@pytest.mark.asyncio
async def test_sync_delta_resolves_changes_without_payload(controller, cache, content_client, make_record):
    since = cache.current_version
    cache.record_change(ChangeKind.UPDATED, CacheKeys.service("air"))
    content_client.records = [make_record("air")]

    data = (await controller.get_sync_delta(since)).body["data"]

    assert [item["id"] for item in data["services"]["updated"]] == ["air"]


@pytest.mark.asyncio
async def test_sync_delta_flags_stale_versions(controller):
    data = (await controller.get_sync_delta(1)).body["data"]

    assert data["full_resync"] is True
    assert data["has_more"] is False


async def _stamp(session_factory, slug: str, when: datetime) -> None:
    async with session_factory() as session:
        await session.execute(update(ServiceRecord).where(ServiceRecord.id == slug).values(updated_at=when))
        await session.commit()


def _at(clock, seconds: float) -> datetime:
    return datetime.fromtimestamp(clock() + seconds, tz=timezone.utc)


@pytest.mark.asyncio
async def test_sync_delta_pages_database_rows(cache, source, repository, session_factory, clock):
    controller = CatalogController(cache, source, delta_page_size=2)
    since = cache.current_version
    slugs = ["r1", "r2", "r3", "r4", "r5"]
    for offset, slug in enumerate(slugs, start=1):
        await repository.upsert(_stored(slug))
        await _stamp(session_factory, slug, _at(clock, offset * 0.1))
    clock.advance(1)
    cache.touch()

    seen = []
    pages = 0
    cursor = since
    while True:
        data = (await controller.get_sync_delta(cursor)).body["data"]
        pages += 1
        page_ids = [item["id"] for item in data["services"]["updated"]]
        assert len(page_ids) <= 2
        seen.extend(page_ids)
        if not data["has_more"]:
            break
        assert data["next_version"] > cursor
        cursor = data["next_version"]

    assert seen == slugs
    assert pages == 3
    assert data["next_version"] == cache.current_version


@pytest.mark.asyncio
async def test_sync_delta_interleaves_log_and_database_by_version(cache, source, repository, session_factory, clock):
    controller = CatalogController(cache, source, delta_page_size=2)
    since = cache.current_version
    await repository.upsert(_stored("row-1"))
    await _stamp(session_factory, "row-1", _at(clock, 0.1))
    await repository.upsert(_stored("row-2"))
    await _stamp(session_factory, "row-2", _at(clock, 0.3))
    clock.advance(0.2)
    cache.record_upsert(CacheKeys.service("log-1"), _stored("log-1"), created=True)
    clock.advance(0.2)
    cache.record_upsert(CacheKeys.service("log-2"), _stored("log-2"), created=True)
    clock.advance(1)
    cache.touch()

    first = (await controller.get_sync_delta(since)).body["data"]
    assert [item["id"] for item in first["services"]["updated"]] == ["row-1"]
    assert [item["id"] for item in first["services"]["added"]] == ["log-1"]
    assert first["has_more"] is True

    second = (await controller.get_sync_delta(first["next_version"])).body["data"]
    assert [item["id"] for item in second["services"]["updated"]] == ["row-2"]
    assert [item["id"] for item in second["services"]["added"]] == ["log-2"]
    assert second["has_more"] is False
    assert second["next_version"] == cache.current_version


@pytest.mark.asyncio
async def test_full_resync_pages_are_bounded_too(cache, source, repository, session_factory, clock):
    controller = CatalogController(cache, source, delta_page_size=2)
    for offset, slug in enumerate(["a", "b", "c"], start=1):
        await repository.upsert(_stored(slug))
        await _stamp(session_factory, slug, _at(clock, -offset))

    data = (await controller.get_sync_delta(1)).body["data"]

    assert data["full_resync"] is True
    assert [item["id"] for item in data["services"]["updated"]] == ["c", "b"]
    assert data["has_more"] is True


@pytest.mark.asyncio
async def test_service_with_related_entries_fetches_upstream_once(controller, content_client, repository):
    await repository.upsert(_stored("air", related=["r1", "r2", "r3", "r4"]))
    for slug in ("r1", "r2", "r3", "r4"):
        await repository.upsert(_stored(slug))

    response = await controller.get_service("air")

    assert response.status_code == 200
    assert [item["id"] for item in response.body["related_services"]] == ["r1", "r2", "r3", "r4"]
    assert content_client.calls == 1


@pytest.mark.asyncio
async def test_delta_fill_reuses_cached_catalog(controller, cache, content_client, make_record):
    content_client.records = [make_record("air"), make_record("sea")]
    await controller.get_catalog()
    since = cache.current_version
    cache.record_change(ChangeKind.UPDATED, CacheKeys.service("air"))
    cache.record_change(ChangeKind.ADDED, CacheKeys.service("sea"))

    data = (await controller.get_sync_delta(since)).body["data"]

    assert [item["id"] for item in data["services"]["updated"]] == ["air"]
    assert [item["id"] for item in data["services"]["added"]] == ["sea"]
    assert content_client.calls == 1
