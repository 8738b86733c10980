"""
Coordinator: periodic health check and seed trigger.

Each run reads aggregate work item and worker health from the state
store, seeds when the in-flight depth drops below the low-water-mark or a
source's schedule is due, derives alerts, and writes its own heartbeat.
It never touches harvested records and never retries on behalf of a
consumer.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from harvester.core.clock import as_utc, utcnow
from harvester.core.config import Settings, get_settings
from harvester.core.exceptions import SeedTriggerException, ValidationException
from harvester.core.logging import LoggerMixin, get_logger
from harvester.models import AlertSeverity, WorkItemStatus
from harvester.models.worker_health import STOPPED
from harvester.services.localities import SeedMode
from harvester.services.queue import DatabaseQueue
from harvester.services.seeder import Seeder, SeedResult
from harvester.services.state_store import StateStore

logger = get_logger(__name__)


def health_score(
    error_rate: float,
    healthy_worker_ratio: float,
    queue_depth_ratio: float,
    has_stale_workers: bool,
) -> float:
    """
    Combine pipeline metrics into a score in [0, 1].

    An error rate of 10% halves the score and 20% zeroes it. The score is
    scaled by the share of healthy consumers, and penalized when the
    queue is nearly full, nearly empty or has silent workers.
    """
    score = 1.0
    score *= max(0.0, 1 - error_rate * 5)
    score *= healthy_worker_ratio
    if queue_depth_ratio > 0.8:
        score *= 0.8
    elif queue_depth_ratio < 0.01:
        score *= 0.9
    if has_stale_workers:
        score *= 0.7
    return max(0.0, min(1.0, score))


def health_status(score: float) -> str:
    if score > 0.8:
        return "healthy"
    if score > 0.5:
        return "degraded"
    return "critical"


@dataclass
class Alert:
    alert_type: str
    severity: AlertSeverity
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class CoordinatorReport:
    """Outcome of one coordinator run."""
    checked_at: datetime
    queue_depth: int
    queue_messages: int
    error_rate: float
    health_score: float
    status: str
    seeded: dict[str, SeedResult] = field(default_factory=dict)
    alerts: list[Alert] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "queue_depth": self.queue_depth,
            "queue_messages": self.queue_messages,
            "error_rate": round(self.error_rate, 4),
            "health_score": round(self.health_score, 4),
            "status": self.status,
            "seeded": {name: result.as_dict() for name, result in self.seeded.items()},
            "alerts": [
                {"type": a.alert_type, "severity": a.severity.value, "message": a.message}
                for a in self.alerts
            ],
        }


class SeedTrigger(Protocol):
    async def trigger(self, sources: Sequence[str] | None = None) -> SeedResult: ...


class LocalSeedTrigger:
    """Runs the seeder in-process."""

    def __init__(self, seeder: Seeder, mode: SeedMode = "test") -> None:
        self.seeder = seeder
        self.mode = mode

    async def trigger(self, sources: Sequence[str] | None = None) -> SeedResult:
        return await self.seeder.seed(self.mode, sources=sources)


class HttpSeedTrigger:
    """Calls the seed endpoint of a remote control API."""

    def __init__(self, url: str, mode: SeedMode = "test", timeout: float = 60.0) -> None:
        self.url = url
        self.mode = mode
        self.timeout = timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def trigger(self, sources: Sequence[str] | None = None) -> SeedResult:
        payload: dict[str, Any] = {"mode": self.mode, "sources": list(sources) if sources else None}
        try:
            response = await self._post(payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SeedTriggerException(self.url, f"HTTP {e.response.status_code}: {e.response.text}") from e
        except httpx.HTTPError as e:
            raise SeedTriggerException(self.url, str(e)) from e

        data = response.json()
        logger.info("Remote seed triggered", url=self.url, **data)
        return SeedResult(
            queued=data.get("queued", 0),
            skipped=data.get("skipped", 0),
            errors=data.get("errors", 0),
        )


class Coordinator(LoggerMixin):
    """
    Periodic trigger and health monitor.

    Args:
        store: State store
        queue: Scrape queue (for message depth)
        trigger: Where seed requests go
        settings: Application settings
    """

    worker_type = "coordinator"

    def __init__(
        self,
        store: StateStore,
        queue: DatabaseQueue,
        trigger: SeedTrigger,
        settings: Settings | None = None,
        worker_id: str = "coordinator",
    ) -> None:
        self.store = store
        self.queue = queue
        self.trigger = trigger
        self.settings = settings or get_settings()
        self.worker_id = worker_id

    async def run_once(self, now: datetime | None = None) -> CoordinatorReport:
        now = now or utcnow()
        counts = await self.store.count_work_items_by_status()
        depth = counts.get(WorkItemStatus.QUEUED.value, 0) + counts.get(WorkItemStatus.PROCESSING.value, 0)
        alerts: list[Alert] = []

        seeded = await self._seed(depth, now, alerts)

        total, failed = await self.store.attempt_stats(now - timedelta(hours=1))
        error_rate = failed / total if total else 0.0

        heartbeats = [w for w in await self.store.list_heartbeats("consumer") if w.status != STOPPED]
        stale = await self.store.stale_workers(now - timedelta(minutes=self.settings.worker_stale_minutes))
        stale_ids = {worker.worker_id for worker in stale}
        healthy = [w for w in heartbeats if w.status == "healthy" and w.worker_id not in stale_ids]
        degraded = [w for w in heartbeats if w.status == "degraded"]

        alerts.extend(await self._derive_alerts(now, depth, error_rate, stale_ids, len(healthy), len(degraded)))

        score = health_score(
            error_rate=error_rate,
            healthy_worker_ratio=len(healthy) / max(len(heartbeats), 1),
            queue_depth_ratio=depth / self.settings.queue_max_depth,
            has_stale_workers=bool(stale_ids),
        )
        report = CoordinatorReport(
            checked_at=now,
            queue_depth=depth,
            queue_messages=await self.queue.depth(),
            error_rate=error_rate,
            health_score=score,
            status=health_status(score),
            seeded=seeded,
            alerts=alerts,
        )

        for alert in alerts:
            await self.store.record_alert(alert.alert_type, alert.severity, alert.message, alert.context)
        if alerts:
            self.logger.error("Coordinator alerts", alerts=[a.alert_type for a in alerts])

        await self.store.record_heartbeat(
            self.worker_id,
            self.worker_type,
            status=report.status,
            context=report.as_dict(),
            now=now,
        )
        self.logger.info(
            "Coordinator run complete",
            queue_depth=depth,
            health_score=round(score, 2),
            status=report.status,
            seeded=list(seeded),
            alerts=len(alerts),
        )
        return report

    async def _seed(self, depth: int, now: datetime, alerts: list[Alert]) -> dict[str, SeedResult]:
        seeded: dict[str, SeedResult] = {}

        if depth < self.settings.queue_low_water_mark:
            sources = [s.source_type for s in await self.store.list_schedules() if s.enabled]
            if not sources:
                return seeded
            self.logger.info("Queue below low-water-mark, seeding", depth=depth,
                             low_water_mark=self.settings.queue_low_water_mark)
            result = await self._run_trigger(sources, alerts)
            if result is not None:
                seeded["low_water_mark"] = result
                for source_type in sources:
                    await self.store.mark_schedule_run(source_type, now)
            return seeded

        for schedule in await self.store.due_schedules(now):
            self.logger.info("Schedule due, seeding", source_type=schedule.source_type)
            result = await self._run_trigger([schedule.source_type], alerts)
            if result is not None:
                seeded[schedule.source_type] = result
                await self.store.mark_schedule_run(schedule.source_type, now)
        return seeded

    async def _run_trigger(self, sources: list[str], alerts: list[Alert]) -> SeedResult | None:
        try:
            return await self.trigger.trigger(sources)
        except (SeedTriggerException, ValidationException) as e:
            self.logger.error("Seed trigger failed", sources=sources, error=e.message)
            alerts.append(Alert(
                "seed_trigger_failed",
                AlertSeverity.HIGH,
                f"Seed trigger failed: {e.message}",
                {"sources": sources, **e.details},
            ))
            return None

    async def _derive_alerts(
        self,
        now: datetime,
        depth: int,
        error_rate: float,
        stale_ids: set[str],
        healthy: int,
        degraded: int,
    ) -> list[Alert]:
        settings = self.settings
        alerts: list[Alert] = []

        if error_rate > settings.error_rate_alert_threshold:
            alerts.append(Alert(
                "high_error_rate",
                AlertSeverity.CRITICAL,
                f"Error rate {error_rate * 100:.2f}% exceeds threshold {settings.error_rate_alert_threshold * 100:.0f}%",
                {"error_rate": error_rate},
            ))

        if stale_ids:
            alerts.append(Alert(
                "stale_workers",
                AlertSeverity.HIGH,
                f"{len(stale_ids)} workers have not reported heartbeat in {settings.worker_stale_minutes:g} minutes",
                {"workers": sorted(stale_ids)},
            ))

        if degraded > healthy:
            alerts.append(Alert(
                "degraded_workers",
                AlertSeverity.HIGH,
                f"More degraded workers ({degraded}) than healthy ({healthy})",
            ))

        last_finished = as_utc(await self.store.last_finished_at())
        if depth > 0 and last_finished is not None:
            if last_finished < now - timedelta(minutes=settings.queue_stale_minutes):
                alerts.append(Alert(
                    "queue_stale",
                    AlertSeverity.CRITICAL,
                    f"Queue has not processed items in {settings.queue_stale_minutes:g} minutes",
                    {"last_finished_at": last_finished.isoformat(), "queue_depth": depth},
                ))

        if depth > settings.queue_max_depth:
            alerts.append(Alert(
                "queue_overflow",
                AlertSeverity.MEDIUM,
                f"Queue depth ({depth}) exceeds maximum ({settings.queue_max_depth})",
                {"queue_depth": depth},
            ))

        return alerts

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        stop_event = stop_event or asyncio.Event()
        self.logger.info("Coordinator started", interval=self.settings.coordinator_interval_seconds)

        while not stop_event.is_set():
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                self.logger.error("Coordinator run failed", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.coordinator_interval_seconds)
            except asyncio.TimeoutError:
                pass


def build_seed_trigger(seeder: Seeder, settings: Settings | None = None) -> SeedTrigger:
    """HTTP trigger when ``seed_trigger_url`` is set, otherwise the in-process seeder."""
    settings = settings or get_settings()
    if settings.seed_trigger_url:
        return HttpSeedTrigger(settings.seed_trigger_url, settings.seed_mode, settings.seed_trigger_timeout)
    return LocalSeedTrigger(seeder, settings.seed_mode)

