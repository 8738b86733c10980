"""
Runtime wiring: one engine, and the services built on top of it.

The API, the consumer workers and the coordinator all start from
``build_runtime`` so they share configuration and bootstrap logic.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from harvester.core.clock import utcnow
from harvester.core.config import Settings, get_settings
from harvester.core.logging import get_logger
from harvester.db.session import build_engine
from harvester.extractor.browser import PageCrawlerService
from harvester.extractor.engine import Extractor, StrategyExtractor
from harvester.extractor.sources import SOURCES
from harvester.schemas.messages import ScrapeMessage
from harvester.services.consumer import requeue_delay
from harvester.services.queue import DatabaseQueue, ExpiredHandler
from harvester.services.seeder import Seeder
from harvester.services.state_store import StateStore

logger = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    engine: AsyncEngine
    store: StateStore
    queue: DatabaseQueue
    seeder: Seeder
    extractor: Extractor

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Runtime closed")


def quarantine_expired(store: StateStore, settings: Settings) -> ExpiredHandler:
    """Queue callback that fails the work item of a message dropped at the delivery ceiling."""

    async def handler(message: ScrapeMessage, reason: str) -> None:
        item = await store.get_work_item(message.key)
        failures = item.consecutive_failures if item else 0
        next_retry_at = utcnow() + requeue_delay(failures, settings.failed_requeue_hours)
        await store.expire_work_item(message.key, reason, next_retry_at)

    return handler


async def build_runtime(
    settings: Settings | None = None,
    engine: AsyncEngine | None = None,
    extractor: Extractor | None = None,
    create_schema: bool = False,
) -> Runtime:
    """
    Build the services for one process.

    Args:
        settings: Application settings (defaults to environment settings)
        engine: Existing engine to reuse; a new one is built when omitted
        extractor: Extractor override; the Playwright extractor by default
        create_schema: Create tables directly instead of relying on Alembic

    Returns:
        Runtime with rate-limit and schedule rows bootstrapped for every source
    """
    settings = settings or get_settings()
    engine = engine or build_engine(settings)
    store = StateStore(engine)
    if create_schema:
        await store.create_schema()
    await store.bootstrap_sources(SOURCES.values())

    queue = DatabaseQueue(
        store.session_factory,
        queue_name=settings.queue_name,
        visibility_timeout=settings.queue_visibility_timeout,
        max_deliveries=settings.queue_max_deliveries,
        on_expired=quarantine_expired(store, settings),
    )
    runtime = Runtime(
        settings=settings,
        engine=engine,
        store=store,
        queue=queue,
        seeder=Seeder(store, queue, settings),
        extractor=extractor or StrategyExtractor(PageCrawlerService(settings)),
    )
    logger.info("Runtime ready", environment=settings.environment, queue=settings.queue_name)
    return runtime
