"""
State Store service.

Single source of truth for work item status, per-source rate limits, the
delivery audit log, refresh schedules and harvested records. Every other
component reads and writes durable state through this class.

Each operation runs in its own short transaction. Writes that must be
atomic under concurrent consumers (rate-limit admission, work item claims)
are single conditional UPDATE statements judged by their rowcount.
"""

import uuid
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import and_, case, func, or_, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from harvester.core.clock import utcnow
from harvester.core.exceptions import EntityNotFoundException
from harvester.core.logging import LoggerMixin
from harvester.db.base import Base
from harvester.db.session import get_db_context, get_session_factory
from harvester.extractor.models import LicenseRecord
from harvester.models import (
    ACTIVE_STATUSES,
    AlertSeverity,
    AttemptStatus,
    CoordinatorAlert,
    QueueMessageLog,
    RateLimit,
    Schedule,
    ScrapedRecord,
    WorkerHeartbeat,
    WorkItem,
    WorkItemKey,
    WorkItemStatus,
)
from harvester.models.queue_message import FAILED_ATTEMPT_STATUSES
from harvester.models.rate_limit import window_ceiling, window_length
from harvester.models.worker_health import STOPPED

# Audit statuses that did not involve an extractor call
NON_ATTEMPT_STATUSES = (AttemptStatus.SKIPPED, AttemptStatus.RATE_LIMITED)


class SourceDefaults(Protocol):
    """What bootstrap needs to know about a source."""

    source_type: str
    requests_per_second: float
    refresh_cadence: timedelta


@dataclass
class WorkItemFilter:
    """Criteria for :meth:`StateStore.find_work_items`. Unset fields do not filter."""

    source_type: str | None = None
    jurisdiction: str | None = None
    profession: str | None = None
    statuses: Collection[WorkItemStatus] | None = None
    completed_after: datetime | None = None
    started_after: datetime | None = None
    retry_after: datetime | None = None
    min_attempts: int | None = None
    max_attempts: int | None = None


@dataclass
class MessageLogEntry:
    """One delivery attempt, as handed to :meth:`StateStore.record_message`."""

    message_id: uuid.UUID
    work_item_key: WorkItemKey
    attempt_number: int
    status: AttemptStatus
    started_at: datetime
    finished_at: datetime
    error_message: str | None = None
    error_type: str | None = None
    result_count: int | None = None
    stored_count: int | None = None
    worker_id: str | None = None
    worker_version: str | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class StateStore(LoggerMixin):
    """Durable state operations over the harvester tables."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = get_session_factory(engine)
        self._dialect = engine.dialect.name

    def _insert(self, model: type[Base]):
        """INSERT construct that supports ON CONFLICT for the active dialect."""
        if self._dialect == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    async def create_schema(self) -> None:
        """Create all tables (tests and local development; production uses Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Work items
    # ------------------------------------------------------------------

    @staticmethod
    def _identity(key: WorkItemKey):
        return and_(
            WorkItem.jurisdiction == key.jurisdiction,
            WorkItem.locality_code == key.locality_code,
            WorkItem.profession == key.profession,
            WorkItem.source_type == key.source_type,
        )

    async def upsert_work_item(self, key: WorkItemKey, status: WorkItemStatus, **fields: Any) -> None:
        """
        Create the work item for ``key`` or move the existing one to ``status``.

        Args:
            key: Work item identity
            status: New status
            **fields: Extra columns to set (attempt_count, queued_at, last_error, ...)
        """
        values = {
            "jurisdiction": key.jurisdiction,
            "locality_code": key.locality_code,
            "profession": key.profession,
            "source_type": key.source_type,
            "status": status,
            **fields,
        }
        stmt = self._insert(WorkItem).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["jurisdiction", "locality_code", "profession", "source_type"],
            set_={"status": status, "updated_at": func.now(), **fields},
        )
        async with get_db_context(self.session_factory) as session:
            await session.execute(stmt)

    async def get_work_item(self, key: WorkItemKey) -> WorkItem | None:
        async with self.session_factory() as session:
            return await session.scalar(select(WorkItem).where(self._identity(key)))

    async def find_work_items(self, criteria: WorkItemFilter) -> set[WorkItemKey]:
        """Return the identity keys of all work items matching ``criteria``."""
        query = select(
            WorkItem.jurisdiction,
            WorkItem.locality_code,
            WorkItem.profession,
            WorkItem.source_type,
        )
        if criteria.source_type:
            query = query.where(WorkItem.source_type == criteria.source_type)
        if criteria.jurisdiction:
            query = query.where(WorkItem.jurisdiction == criteria.jurisdiction)
        if criteria.profession:
            query = query.where(WorkItem.profession == criteria.profession)
        if criteria.statuses is not None:
            query = query.where(WorkItem.status.in_(list(criteria.statuses)))
        if criteria.completed_after is not None:
            query = query.where(WorkItem.completed_at > criteria.completed_after)
        if criteria.started_after is not None:
            query = query.where(WorkItem.started_at > criteria.started_after)
        if criteria.retry_after is not None:
            query = query.where(WorkItem.next_retry_at > criteria.retry_after)
        if criteria.min_attempts is not None:
            query = query.where(WorkItem.attempt_count >= criteria.min_attempts)
        if criteria.max_attempts is not None:
            query = query.where(WorkItem.attempt_count <= criteria.max_attempts)

        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()
        return {WorkItemKey(*row) for row in rows}

    async def claim_work_item(
        self,
        key: WorkItemKey,
        stale_before: datetime,
        now: datetime | None = None,
    ) -> int | None:
        """
        Atomically move a work item to ``processing`` and count the attempt.

        A ``processing`` item whose ``started_at`` is older than
        ``stale_before`` was abandoned by a crashed consumer and may be
        claimed again.

        Returns:
            The new attempt number, or None if another consumer holds the item
            or it is no longer claimable.
        """
        now = now or utcnow()
        claimable = or_(
            WorkItem.status.in_([WorkItemStatus.QUEUED, WorkItemStatus.UNQUEUED]),
            and_(
                WorkItem.status == WorkItemStatus.PROCESSING,
                or_(WorkItem.started_at.is_(None), WorkItem.started_at <= stale_before),
            ),
        )
        stmt = (
            update(WorkItem)
            .where(self._identity(key), claimable)
            .values(
                status=WorkItemStatus.PROCESSING,
                attempt_count=WorkItem.attempt_count + 1,
                started_at=now,
                last_attempted_at=now,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            return await session.scalar(select(WorkItem.attempt_count).where(self._identity(key)))

    async def save_results(
        self,
        key: WorkItemKey,
        records: Iterable[LicenseRecord],
        now: datetime | None = None,
    ) -> int:
        """
        Upsert harvested records and mark the work item completed, in one transaction.

        Returns:
            Number of records written
        """
        now = now or utcnow()
        stored = 0
        async with get_db_context(self.session_factory) as session:
            for record in records:
                await session.execute(self._record_upsert(key, record, now))
                stored += 1
            await session.execute(
                update(WorkItem)
                .where(self._identity(key))
                .values(
                    status=WorkItemStatus.COMPLETED,
                    completed_at=now,
                    last_result_count=stored,
                    last_error=None,
                    consecutive_failures=0,
                    next_retry_at=None,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
        return stored

    async def record_failure(
        self,
        key: WorkItemKey,
        error: str,
        next_retry_at: datetime,
        terminal: bool,
    ) -> None:
        """Record a failed attempt: back to ``queued`` for a retry, or ``failed`` when exhausted."""
        values: dict[str, Any] = {
            "status": WorkItemStatus.FAILED if terminal else WorkItemStatus.QUEUED,
            "last_error": error,
            "next_retry_at": next_retry_at,
            "updated_at": func.now(),
        }
        if terminal:
            values["consecutive_failures"] = WorkItem.consecutive_failures + 1
        async with get_db_context(self.session_factory) as session:
            await session.execute(
                update(WorkItem)
                .where(self._identity(key))
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def mark_unsupported(self, key: WorkItemKey, reason: str) -> None:
        await self.upsert_work_item(key, WorkItemStatus.UNSUPPORTED, last_error=reason, next_retry_at=None)

    async def expire_work_item(self, key: WorkItemKey, reason: str, next_retry_at: datetime) -> bool:
        """
        Fail a ``queued`` or ``processing`` item whose message the queue gave up on.

        Returns:
            True if the item was moved to ``failed``.
        """
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                update(WorkItem)
                .where(self._identity(key), WorkItem.status.in_(list(ACTIVE_STATUSES)))
                .values(
                    status=WorkItemStatus.FAILED,
                    last_error=reason,
                    next_retry_at=next_retry_at,
                    consecutive_failures=WorkItem.consecutive_failures + 1,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            self.logger.warning("Work item expired from queue", work_item=str(key), reason=reason)
        return result.rowcount == 1

    async def count_work_items_by_status(self, source_type: str | None = None) -> dict[str, int]:
        query = select(WorkItem.status, func.count(WorkItem.id)).group_by(WorkItem.status)
        if source_type:
            query = query.where(WorkItem.source_type == source_type)
        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()
        return {status.value: count for status, count in rows}

    async def status_summary(self) -> dict[str, dict[str, int]]:
        """Work item counts by status, grouped per source type."""
        query = (
            select(WorkItem.source_type, WorkItem.status, func.count(WorkItem.id))
            .group_by(WorkItem.source_type, WorkItem.status)
            .order_by(WorkItem.source_type)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()
        summary: dict[str, dict[str, int]] = {}
        for source_type, status, count in rows:
            summary.setdefault(source_type, {})[status.value] = count
        return summary

    # ------------------------------------------------------------------
    # Scraped records
    # ------------------------------------------------------------------

    def _record_upsert(self, key: WorkItemKey, record: LicenseRecord, scraped_at: datetime):
        contact = {
            "name": record.name,
            "license_status": record.license_status,
            "company": record.company,
            "city": record.city,
            "phone": record.phone,
            "email": record.email,
            "locality": key.locality_code,
            "raw_data": record.to_raw(),
            "scraped_at": scraped_at,
        }
        stmt = self._insert(ScrapedRecord).values(
            source_type=key.source_type,
            source_license_id=record.license_number,
            jurisdiction=key.jurisdiction,
            profession=key.profession,
            **contact,
        )
        return stmt.on_conflict_do_update(
            index_elements=["source_type", "source_license_id"],
            set_={**contact, "updated_at": func.now()},
        )

    async def upsert_scraped_record(
        self,
        key: WorkItemKey,
        record: LicenseRecord,
        scraped_at: datetime | None = None,
    ) -> None:
        """Insert or refresh one record, keyed on (source_type, license number)."""
        async with get_db_context(self.session_factory) as session:
            await session.execute(self._record_upsert(key, record, scraped_at or utcnow()))

    async def count_scraped_records(self, source_type: str | None = None) -> int:
        query = select(func.count(ScrapedRecord.id))
        if source_type:
            query = query.where(ScrapedRecord.source_type == source_type)
        async with self.session_factory() as session:
            return await session.scalar(query) or 0

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def record_message(self, entry: MessageLogEntry) -> None:
        """Append one delivery attempt to the audit log."""
        async with get_db_context(self.session_factory) as session:
            session.add(
                QueueMessageLog(
                    message_id=entry.message_id,
                    work_item_key=str(entry.work_item_key),
                    source_type=entry.work_item_key.source_type,
                    attempt_number=entry.attempt_number,
                    status=entry.status,
                    started_at=entry.started_at,
                    finished_at=entry.finished_at,
                    duration_ms=entry.duration_ms,
                    result_count=entry.result_count,
                    stored_count=entry.stored_count,
                    error_message=entry.error_message,
                    error_type=entry.error_type,
                    worker_id=entry.worker_id,
                    worker_version=entry.worker_version,
                )
            )

    async def list_messages(self, work_item_key: WorkItemKey) -> list[QueueMessageLog]:
        query = (
            select(QueueMessageLog)
            .where(QueueMessageLog.work_item_key == str(work_item_key))
            .order_by(QueueMessageLog.finished_at, QueueMessageLog.attempt_number)
        )
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())

    async def attempt_stats(self, since: datetime) -> tuple[int, int]:
        """Return (attempts, failed attempts) finished since ``since``."""
        failed = case((QueueMessageLog.status.in_(list(FAILED_ATTEMPT_STATUSES)), 1), else_=0)
        query = select(func.count(QueueMessageLog.id), func.coalesce(func.sum(failed), 0)).where(
            QueueMessageLog.finished_at >= since,
            QueueMessageLog.status.not_in(list(NON_ATTEMPT_STATUSES)),
        )
        async with self.session_factory() as session:
            total, failures = (await session.execute(query)).one()
        return int(total), int(failures)

    async def last_finished_at(self) -> datetime | None:
        query = select(func.max(QueueMessageLog.finished_at)).where(
            QueueMessageLog.status.not_in(list(NON_ATTEMPT_STATUSES))
        )
        async with self.session_factory() as session:
            return await session.scalar(query)

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    async def get_rate_limit(self, source_type: str) -> RateLimit:
        async with self.session_factory() as session:
            limit = await session.scalar(select(RateLimit).where(RateLimit.source_type == source_type))
        if limit is None:
            raise EntityNotFoundException("RateLimit", source_type)
        return limit

    async def list_rate_limits(self) -> list[RateLimit]:
        async with self.session_factory() as session:
            return list((await session.scalars(select(RateLimit).order_by(RateLimit.source_type))).all())

    async def configure_rate_limit(self, source_type: str, requests_per_second: float) -> None:
        stmt = self._insert(RateLimit).values(
            source_type=source_type,
            requests_per_second=requests_per_second,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_type"],
            set_={"requests_per_second": requests_per_second, "updated_at": func.now()},
        )
        async with get_db_context(self.session_factory) as session:
            await session.execute(stmt)

    async def throttle(self, source_type: str, until: datetime, reason: str) -> None:
        """Block admissions for a source until ``until``."""
        async with get_db_context(self.session_factory) as session:
            await session.execute(
                update(RateLimit)
                .where(RateLimit.source_type == source_type)
                .values(is_throttled=True, throttled_until=until, throttle_reason=reason)
                .execution_options(synchronize_session=False)
            )
        self.logger.warning("Source throttled", source_type=source_type, until=until.isoformat(), reason=reason)

    async def try_acquire(self, source_type: str, now: datetime | None = None) -> bool:
        """
        Admit one request for ``source_type`` if its current window has room.

        The check and the increment are one conditional UPDATE, so
        concurrent callers can never both take the last slot of a window.

        Returns:
            True if the caller may issue a request now.
        """
        now = now or utcnow()
        limit = await self.get_rate_limit(source_type)
        rps = limit.requests_per_second
        cutoff = now - timedelta(seconds=window_length(rps))
        ceiling = window_ceiling(rps)

        window_expired = or_(RateLimit.window_start.is_(None), RateLimit.window_start <= cutoff)
        not_throttled = or_(
            RateLimit.is_throttled.is_(False),
            and_(RateLimit.throttled_until.is_not(None), RateLimit.throttled_until <= now),
        )
        stmt = (
            update(RateLimit)
            .where(
                RateLimit.source_type == source_type,
                not_throttled,
                or_(window_expired, RateLimit.count_in_window < ceiling),
            )
            .values(
                window_start=case((window_expired, now), else_=RateLimit.window_start),
                count_in_window=case((window_expired, 1), else_=RateLimit.count_in_window + 1),
                is_throttled=False,
                total_requests=RateLimit.total_requests + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return True
            await session.execute(
                update(RateLimit)
                .where(RateLimit.source_type == source_type)
                .values(total_denied=RateLimit.total_denied + 1)
                .execution_options(synchronize_session=False)
            )
        return False

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def bootstrap_sources(self, sources: Iterable[SourceDefaults]) -> None:
        """Create missing rate-limit and schedule rows; existing rows are left untouched."""
        async with get_db_context(self.session_factory) as session:
            for source in sources:
                await session.execute(
                    self._insert(RateLimit)
                    .values(source_type=source.source_type, requests_per_second=source.requests_per_second)
                    .on_conflict_do_nothing(index_elements=["source_type"])
                )
                await session.execute(
                    self._insert(Schedule)
                    .values(source_type=source.source_type, cadence=source.refresh_cadence, enabled=True)
                    .on_conflict_do_nothing(index_elements=["source_type"])
                )

    async def list_schedules(self) -> list[Schedule]:
        async with self.session_factory() as session:
            return list((await session.scalars(select(Schedule).order_by(Schedule.source_type))).all())

    async def due_schedules(self, now: datetime | None = None) -> list[Schedule]:
        now = now or utcnow()
        return [schedule for schedule in await self.list_schedules() if schedule.is_due(now)]

    async def set_schedule(self, source_type: str, *, enabled: bool | None = None,
                           cadence: timedelta | None = None) -> None:
        values: dict[str, Any] = {"updated_at": func.now()}
        if enabled is not None:
            values["enabled"] = enabled
        if cadence is not None:
            values["cadence"] = cadence
        async with get_db_context(self.session_factory) as session:
            await session.execute(
                update(Schedule)
                .where(Schedule.source_type == source_type)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def mark_schedule_run(self, source_type: str, at: datetime | None = None) -> None:
        async with get_db_context(self.session_factory) as session:
            await session.execute(
                update(Schedule)
                .where(Schedule.source_type == source_type)
                .values(last_run_at=at or utcnow(), updated_at=func.now())
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Worker health
    # ------------------------------------------------------------------

    async def record_heartbeat(
        self,
        worker_id: str,
        worker_type: str,
        *,
        status: str = "healthy",
        items_processed: int = 0,
        errors_count: int = 0,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        values = {
            "worker_type": worker_type,
            "status": status,
            "last_heartbeat": now or utcnow(),
            "items_processed": items_processed,
            "errors_count": errors_count,
            "context": context or {},
        }
        stmt = self._insert(WorkerHeartbeat).values(worker_id=worker_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["worker_id"], set_=values)
        async with get_db_context(self.session_factory) as session:
            await session.execute(stmt)

    async def list_heartbeats(self, worker_type: str | None = None) -> list[WorkerHeartbeat]:
        query = select(WorkerHeartbeat).order_by(WorkerHeartbeat.worker_id)
        if worker_type:
            query = query.where(WorkerHeartbeat.worker_type == worker_type)
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())

    async def stale_workers(self, cutoff: datetime, worker_type: str = "consumer") -> list[WorkerHeartbeat]:
        """Running workers of ``worker_type`` whose last heartbeat is older than ``cutoff``."""
        query = (
            select(WorkerHeartbeat)
            .where(
                WorkerHeartbeat.worker_type == worker_type,
                WorkerHeartbeat.status != STOPPED,
                WorkerHeartbeat.last_heartbeat < cutoff,
            )
            .order_by(WorkerHeartbeat.last_heartbeat)
        )
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())

    async def record_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        async with get_db_context(self.session_factory) as session:
            session.add(
                CoordinatorAlert(
                    alert_type=alert_type,
                    severity=severity,
                    message=message,
                    context=context or {},
                )
            )

    async def list_alerts(self, limit: int = 50) -> list[CoordinatorAlert]:
        query = select(CoordinatorAlert).order_by(CoordinatorAlert.created_at.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())
