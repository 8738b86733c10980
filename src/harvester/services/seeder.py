"""
Seeder: enumerates work items and publishes the ones that are due.

For every (source, locality, profession) in the configured locality set
the seeder consults the state store and skips identities that are in
flight, unsupported, recently completed or cooling down after failure.
Everything else is marked ``queued`` and published. Duplicate prevention
happens here, by status, not inside the queue.
"""

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from harvester.core.clock import utcnow
from harvester.core.config import Settings, get_settings
from harvester.core.exceptions import QueueUnavailableException, ValidationException
from harvester.core.logging import LoggerMixin
from harvester.extractor.sources import SOURCES, SourceSpec
from harvester.models import WorkItemKey, WorkItemStatus
from harvester.schemas.messages import ScrapeMessage
from harvester.services.localities import SeedMode, localities_for
from harvester.services.queue import DatabaseQueue
from harvester.services.state_store import StateStore, WorkItemFilter


@dataclass
class SeedResult:
    queued: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class Seeder(LoggerMixin):
    """Producer side of the pipeline."""

    def __init__(
        self,
        store: StateStore,
        queue: DatabaseQueue,
        settings: Settings | None = None,
        sources: Mapping[str, SourceSpec] = SOURCES,
    ) -> None:
        self.store = store
        self.queue = queue
        self.settings = settings or get_settings()
        self.sources = sources

    def resolve_sources(self, names: Sequence[str] | None) -> list[SourceSpec]:
        """Map requested source types to registry entries (all of them when ``names`` is empty)."""
        if not names:
            return list(self.sources.values())
        unknown = [name for name in names if name not in self.sources]
        if unknown:
            raise ValidationException(
                "Unknown source type",
                {"sources": [f"Unknown source type: {name}" for name in unknown]},
            )
        return [self.sources[name] for name in names]

    async def seed(
        self,
        mode: SeedMode = "test",
        sources: Sequence[str] | None = None,
        professions: Sequence[str] | None = None,
        force: bool = False,
        now: datetime | None = None,
    ) -> SeedResult:
        """
        Queue every due work item for the selected sources.

        Args:
            mode: ``test`` (small fixed locality set) or ``production``
            sources: Source types to seed; all registered sources by default
            professions: Professions to enumerate; defaults from settings
            force: Re-queue completed and failed items regardless of age.
                Items already in flight are still skipped.

        Returns:
            SeedResult with queued, skipped and error counts
        """
        now = now or utcnow()
        selected = self.resolve_sources(sources)
        professions = list(professions or self.settings.professions)
        result = SeedResult()

        self.logger.info(
            "Seed run started",
            mode=mode,
            sources=[s.source_type for s in selected],
            professions=professions,
            force=force,
        )

        for source in selected:
            localities = localities_for(source.jurisdiction, mode)
            if not localities:
                self.logger.warning("No localities configured", source_type=source.source_type, mode=mode)
                continue

            for profession in professions:
                blocked = await self._blocked_keys(source, profession, now, force)
                for locality in localities:
                    key = WorkItemKey(source.jurisdiction, locality, profession, source.source_type)
                    if key in blocked:
                        result.skipped += 1
                        continue
                    if await self._enqueue(key, now):
                        result.queued += 1
                    else:
                        result.errors += 1

        self.logger.info("Seed run finished", mode=mode, **result.as_dict())
        return result

    async def _blocked_keys(
        self,
        source: SourceSpec,
        profession: str,
        now: datetime,
        force: bool,
    ) -> set[WorkItemKey]:
        """Identities that must not be queued right now."""
        scope = {"source_type": source.source_type, "profession": profession}

        blocked = await self.store.find_work_items(
            WorkItemFilter(statuses=[WorkItemStatus.QUEUED], **scope)
        )
        # A processing item past the visibility timeout lost its consumer
        blocked |= await self.store.find_work_items(
            WorkItemFilter(
                statuses=[WorkItemStatus.PROCESSING],
                started_after=now - timedelta(seconds=self.settings.queue_visibility_timeout),
                **scope,
            )
        )
        if force:
            return blocked

        blocked |= await self.store.find_work_items(
            WorkItemFilter(statuses=[WorkItemStatus.UNSUPPORTED], **scope)
        )
        blocked |= await self.store.find_work_items(
            WorkItemFilter(
                statuses=[WorkItemStatus.COMPLETED],
                completed_after=now - timedelta(days=self.settings.refresh_after_days),
                **scope,
            )
        )
        # Failed items that used up their attempts wait for next_retry_at
        blocked |= await self.store.find_work_items(
            WorkItemFilter(
                statuses=[WorkItemStatus.FAILED],
                retry_after=now,
                min_attempts=self.settings.max_retries + 1,
                **scope,
            )
        )
        return blocked

    async def _enqueue(self, key: WorkItemKey, now: datetime) -> bool:
        await self.store.upsert_work_item(
            key,
            WorkItemStatus.QUEUED,
            attempt_count=0,
            queued_at=now,
            next_retry_at=None,
        )
        message = ScrapeMessage.for_key(key, now)
        try:
            await self._publish(message)
        except QueueUnavailableException as e:
            self.logger.error("Publish failed", work_item=str(key), error=e.message)
            await self.store.upsert_work_item(
                key,
                WorkItemStatus.UNQUEUED,
                last_error=f"Publish failed: {e.message}",
            )
            return False
        return True

    async def _publish(self, message: ScrapeMessage) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.publish_max_attempts),
            wait=wait_exponential(multiplier=self.settings.publish_retry_wait, max=10),
            retry=retry_if_exception_type(QueueUnavailableException),
            reraise=True,
        ):
            with attempt:
                await self.queue.send(message)
