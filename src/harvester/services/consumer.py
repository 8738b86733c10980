"""
Consumer: receives scrape messages and turns them into harvested records.

One message is handled at a time per consumer; throughput comes from
running several consumers. For every message the consumer

1. skips work items that are already finished,
2. waits (boundedly) for a rate-limit slot for the source,
3. claims the work item, which counts the attempt,
4. calls the extractor under a timeout,
5. persists the outcome and acknowledges, retries or dead-letters.

An empty extraction is a completed item with zero records. Nothing is
ever stored that the extractor did not return.
"""

import asyncio
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_result, stop_after_delay, wait_fixed

from harvester.core.clock import as_utc, utcnow
from harvester.core.config import Settings, get_settings
from harvester.core.exceptions import EntityNotFoundException
from harvester.core.logging import LoggerMixin
from harvester.extractor.engine import Extractor
from harvester.extractor.models import (
    CrawlErrorType,
    ExtractionOutcome,
    ExtractionRequest,
    ExtractionResult,
)
from harvester.models import TERMINAL_STATUSES, AttemptStatus, RateLimit, WorkItemKey, WorkItemStatus
from harvester.models.worker_health import STOPPED
from harvester.services.queue import DatabaseQueue, ReceivedMessage
from harvester.services.state_store import MessageLogEntry, StateStore


def retry_delay(attempt: int, min_wait: float, max_wait: float) -> float:
    """Exponential backoff for the ``attempt``-th failure, capped at ``max_wait``."""
    return min(min_wait * 2 ** max(attempt - 1, 0), max_wait)


def requeue_delay(consecutive_failures: int, base_hours: float) -> timedelta:
    """Cool-down before a failed item may be seeded again (doubles per failure, up to 32x)."""
    return timedelta(hours=base_hours * 2 ** min(consecutive_failures, 5))


class Consumer(LoggerMixin):
    """
    Queue consumer.

    Args:
        store: State store
        queue: Scrape queue
        extractor: Anything with ``async extract(request) -> ExtractionResult``
        settings: Application settings
        worker_id: Identity reported in heartbeats and the audit log
    """

    worker_type = "consumer"

    def __init__(
        self,
        store: StateStore,
        queue: DatabaseQueue,
        extractor: Extractor,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.extractor = extractor
        self.settings = settings or get_settings()
        self.worker_id = worker_id or f"consumer-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.items_processed = 0
        self.errors_count = 0

    async def run_once(self) -> int:
        """Receive and handle one batch. Returns the number of messages handled."""
        messages = await self.queue.receive_batch(self.settings.queue_batch_size)
        for message in messages:
            await self.handle(message)
        await self.heartbeat()
        return len(messages)

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll the queue until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        self.logger.info("Consumer started", worker_id=self.worker_id)

        while not stop_event.is_set():
            try:
                handled = await self.run_once()
            except SQLAlchemyError as e:
                self.errors_count += 1
                self.logger.error("Consumer batch failed", worker_id=self.worker_id, error=str(e))
                handled = 0

            if handled == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.settings.queue_poll_interval)
                except asyncio.TimeoutError:
                    pass

        try:
            await self.heartbeat(STOPPED)
        except SQLAlchemyError as e:
            self.logger.error("Final heartbeat failed", worker_id=self.worker_id, error=str(e))
        self.logger.info("Consumer stopped", worker_id=self.worker_id, processed=self.items_processed)

    async def heartbeat(self, status: str = "healthy") -> None:
        await self.store.record_heartbeat(
            self.worker_id,
            self.worker_type,
            status=status,
            items_processed=self.items_processed,
            errors_count=self.errors_count,
            context={"queue": self.queue.queue_name, "version": self.settings.worker_version},
        )

    async def handle(self, message: ReceivedMessage) -> AttemptStatus:
        """Process one leased message end to end and return the audited status."""
        key = message.body.key
        started = utcnow()

        item = await self.store.get_work_item(key)
        if item is None:
            await self.store.upsert_work_item(key, WorkItemStatus.QUEUED, queued_at=message.enqueued_at)
        elif item.status in TERMINAL_STATUSES:
            await self.queue.ack(message)
            await self._log(message, key, item.attempt_count, AttemptStatus.SKIPPED, started,
                            error_message=f"Work item already {item.status.value}")
            return AttemptStatus.SKIPPED

        limit = await self._rate_limit(key.source_type)
        if not await self._acquire(limit):
            delay = self._denied_delay(limit)
            self.logger.info("Rate limited", work_item=str(key), retry_in=delay)
            await self._log(message, key, item.attempt_count if item else 0, AttemptStatus.RATE_LIMITED,
                            started)
            await self.queue.release(message, delay)
            return AttemptStatus.RATE_LIMITED

        attempt = await self.store.claim_work_item(
            key,
            stale_before=utcnow() - timedelta(seconds=self.settings.queue_visibility_timeout),
        )
        if attempt is None:
            # Held by another consumer, or finished since the status check
            await self.queue.ack(message)
            await self._log(message, key, 0, AttemptStatus.SKIPPED, started,
                            error_message="Work item claimed elsewhere")
            return AttemptStatus.SKIPPED

        self.logger.info("Processing work item", work_item=str(key), attempt=attempt,
                         message_id=str(message.id))
        result = await self._extract(key)

        if result.outcome in (ExtractionOutcome.SUCCESS, ExtractionOutcome.EMPTY):
            status = await self._complete(message, key, attempt, result, started)
        elif result.outcome == ExtractionOutcome.UNSUPPORTED:
            status = await self._unsupported(message, key, attempt, result, started)
        else:
            status = await self._fail(message, key, attempt, result, started)

        self.items_processed += 1
        return status

    async def _rate_limit(self, source_type: str) -> RateLimit:
        try:
            return await self.store.get_rate_limit(source_type)
        except EntityNotFoundException:
            await self.store.configure_rate_limit(source_type, self.settings.default_requests_per_second)
            return await self.store.get_rate_limit(source_type)

    async def _acquire(self, limit: RateLimit) -> bool:
        """Spin on the admission check for at most ``rate_limit_max_wait_seconds``."""
        retrying = AsyncRetrying(
            wait=wait_fixed(limit.min_interval),
            stop=stop_after_delay(self.settings.rate_limit_max_wait_seconds),
            retry=retry_if_result(lambda admitted: admitted is False),
            retry_error_callback=lambda state: False,
        )
        return await retrying(self.store.try_acquire, limit.source_type)

    @staticmethod
    def _denied_delay(limit: RateLimit) -> float:
        delay = limit.min_interval
        if limit.is_throttled and limit.throttled_until is not None:
            remaining = (as_utc(limit.throttled_until) - utcnow()).total_seconds()
            delay = max(delay, remaining)
        return delay

    async def _extract(self, key: WorkItemKey) -> ExtractionResult:
        request = ExtractionRequest(
            source_type=key.source_type,
            jurisdiction=key.jurisdiction,
            locality_code=key.locality_code,
            profession=key.profession,
            result_limit=self.settings.extractor_result_limit,
        )
        timeout = self.settings.extractor_timeout_seconds
        try:
            return await asyncio.wait_for(self.extractor.extract(request), timeout=timeout)
        except asyncio.TimeoutError:
            return ExtractionResult.failure(f"Extraction timed out after {timeout}s",
                                            CrawlErrorType.TIMEOUT.value)
        except Exception as e:
            self.logger.exception("Extractor raised", work_item=str(key))
            return ExtractionResult.failure(f"{type(e).__name__}: {e}")

    async def _complete(self, message: ReceivedMessage, key: WorkItemKey, attempt: int,
                        result: ExtractionResult, started: datetime) -> AttemptStatus:
        stored = await self.store.save_results(key, result.records)
        status = AttemptStatus.COMPLETED if result.records else AttemptStatus.EMPTY
        await self._log(message, key, attempt, status, started,
                        result_count=len(result.records), stored_count=stored)
        await self.queue.ack(message)
        self.logger.info("Work item completed", work_item=str(key), records=stored,
                         strategy=result.strategy_used)
        return status

    async def _unsupported(self, message: ReceivedMessage, key: WorkItemKey, attempt: int,
                           result: ExtractionResult, started: datetime) -> AttemptStatus:
        reason = result.error_message or "Source not supported"
        await self.store.mark_unsupported(key, reason)
        await self._log(message, key, attempt, AttemptStatus.UNSUPPORTED, started, error_message=reason)
        await self.queue.ack(message)
        self.logger.warning("Work item unsupported", work_item=str(key), reason=reason)
        return AttemptStatus.UNSUPPORTED

    async def _fail(self, message: ReceivedMessage, key: WorkItemKey, attempt: int,
                    result: ExtractionResult, started: datetime) -> AttemptStatus:
        self.errors_count += 1
        now = utcnow()
        error = result.error_message or "Extraction failed"

        if result.error_type == CrawlErrorType.BOT_DETECTED.value:
            await self.store.throttle(
                key.source_type,
                now + timedelta(minutes=self.settings.bot_throttle_minutes),
                error,
            )

        if attempt <= self.settings.max_retries:
            delay = retry_delay(attempt, self.settings.retry_min_wait, self.settings.retry_max_wait)
            await self.store.record_failure(key, error, now + timedelta(seconds=delay), terminal=False)
            await self._log(message, key, attempt, AttemptStatus.RETRYING, started,
                            error_message=error, error_type=result.error_type)
            await self.queue.retry(message, delay)
            self.logger.warning("Work item failed, retrying", work_item=str(key), attempt=attempt,
                                retry_in=delay, error=error)
            return AttemptStatus.RETRYING

        item = await self.store.get_work_item(key)
        failures = item.consecutive_failures if item else 0
        next_retry_at = now + requeue_delay(failures, self.settings.failed_requeue_hours)
        await self.store.record_failure(key, error, next_retry_at, terminal=True)
        await self._log(message, key, attempt, AttemptStatus.FAILED, started,
                        error_message=error, error_type=result.error_type)
        await self.queue.dead_letter(message, error, self._diagnostics(key, attempt, result))
        self.logger.error("Work item failed permanently", work_item=str(key), attempts=attempt, error=error)
        return AttemptStatus.FAILED

    @staticmethod
    def _diagnostics(key: WorkItemKey, attempt: int, result: ExtractionResult) -> dict[str, Any]:
        return {
            "work_item": str(key),
            "attempts": attempt,
            "error_type": result.error_type,
            "strategy": result.strategy_used,
            **result.diagnostics,
        }

    async def _log(
        self,
        message: ReceivedMessage,
        key: WorkItemKey,
        attempt: int,
        status: AttemptStatus,
        started: datetime,
        **fields: Any,
    ) -> None:
        await self.store.record_message(
            MessageLogEntry(
                message_id=message.id,
                work_item_key=key,
                attempt_number=attempt,
                status=status,
                started_at=started,
                finished_at=utcnow(),
                worker_id=self.worker_id,
                worker_version=self.settings.worker_version,
                **fields,
            )
        )


async def run_consumers(
    store: StateStore,
    queue: DatabaseQueue,
    extractor: Extractor,
    settings: Settings | None = None,
    count: int | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Run ``count`` consumers side by side until ``stop_event`` is set."""
    settings = settings or get_settings()
    stop_event = stop_event or asyncio.Event()
    consumers = [
        Consumer(store, queue, extractor, settings)
        for _ in range(count or settings.consumer_instances)
    ]
    await asyncio.gather(*(consumer.run_forever(stop_event) for consumer in consumers))
