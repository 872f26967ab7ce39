"""Application wiring: explicit construction of every catalog component."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from catalog_backend.clients.content import ContentServiceClient
from catalog_backend.core.cache import CacheConfig, CacheStore
from catalog_backend.core.db import create_engine_from_settings, create_session_factory, init_models
from catalog_backend.core.error_handler import GracefulShutdown
from catalog_backend.core.logging import configure_logging
from catalog_backend.core.settings import Settings, get_settings
from catalog_backend.repositories.catalog import CatalogRepository
from catalog_backend.services.catalog.controller import CatalogController
from catalog_backend.services.catalog.source import CatalogSource
from catalog_backend.services.catalog.sync import CatalogSyncJob
from catalog_backend.services.catalog.webhooks import WebhookHandler
from catalog_backend.services.sync_health import SyncHealthMonitor

logger = logging.getLogger(__name__)


@dataclass
class CatalogApplication:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    cache: CacheStore
    client: ContentServiceClient
    repository: CatalogRepository
    source: CatalogSource
    controller: CatalogController
    monitor: SyncHealthMonitor
    sync_job: CatalogSyncJob
    webhooks: WebhookHandler
    shutdown: GracefulShutdown

    @classmethod
    def build(cls, settings: Optional[Settings] = None) -> "CatalogApplication":
        settings = settings or get_settings()
        engine = create_engine_from_settings(settings)
        session_factory = create_session_factory(engine)

        cache = CacheStore(CacheConfig.from_settings(settings))
        client = ContentServiceClient.from_settings(settings)
        repository = CatalogRepository(session_factory)
        source = CatalogSource(client, repository, cache=cache)
        monitor = SyncHealthMonitor.from_settings(settings)
        sync_job = CatalogSyncJob(client, source, repository, cache, monitor)

        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            cache=cache,
            client=client,
            repository=repository,
            source=source,
            controller=CatalogController(cache, source, delta_page_size=settings.sync_delta_page_size),
            monitor=monitor,
            sync_job=sync_job,
            webhooks=WebhookHandler(
                cache,
                sync_job,
                secret=settings.webhook_secret,
                environment=settings.environment,
            ),
            shutdown=GracefulShutdown(),
        )

    async def start(self, *, background: bool = True) -> None:
        configure_logging(self.settings)
        logger.info("Applying database migrations")
        await init_models(self.engine)

        if not background:
            return

        self.shutdown.spawn("catalog_cache_sweeper", self.cache.run_sweeper())
        if self.settings.sync_interval_seconds > 0:
            self.shutdown.spawn("catalog_sync", self.sync_job.run_periodic(self.settings.sync_interval_seconds))
        else:
            logger.info("Periodic catalog sync disabled (SYNC_INTERVAL_SECONDS=0)")
        logger.info("Catalog application started (environment=%s)", self.settings.environment)

    async def stop(self) -> None:
        await self.shutdown.shutdown()
        await self.client.close()
        await self.engine.dispose()
        logger.info("Catalog application stopped")


async def run_forever(settings: Optional[Settings] = None) -> None:
    app = CatalogApplication.build(settings)
    await app.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.stop()


__all__ = ["CatalogApplication", "run_forever"]
