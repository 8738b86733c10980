import asyncio
import uuid
from datetime import timedelta

import httpx
import pytest

from harvester.core.clock import utcnow
from harvester.models import AlertSeverity, AttemptStatus, WorkItemKey, WorkItemStatus
from harvester.services.coordinator import (
    Coordinator,
    HttpSeedTrigger,
    LocalSeedTrigger,
    build_seed_trigger,
    health_score,
    health_status,
)
from harvester.services.state_store import MessageLogEntry

KEY = WorkItemKey("FL", "33101", "real_estate", "FL_DBPR")
SOURCE_TYPES = ("FL_DBPR", "TX_TREC", "CA_DRE", "WA_DOL")


def _coordinator(runtime, trigger=None, **overrides) -> Coordinator:
    settings = runtime.settings.model_copy(update=overrides)
    return Coordinator(
        runtime.store,
        runtime.queue,
        trigger or LocalSeedTrigger(runtime.seeder, "test"),
        settings,
    )


async def _log_attempt(store, status: AttemptStatus, finished_at) -> None:
    await store.record_message(
        MessageLogEntry(
            message_id=uuid.uuid4(),
            work_item_key=KEY,
            attempt_number=1,
            status=status,
            started_at=finished_at - timedelta(seconds=1),
            finished_at=finished_at,
        )
    )


async def _pause_schedules(store) -> None:
    for source_type in SOURCE_TYPES:
        await store.set_schedule(source_type, enabled=False)


def test_health_score_components() -> None:
    assert health_score(0.0, 1.0, 0.5, False) == 1.0
    assert health_score(0.05, 1.0, 0.5, False) == pytest.approx(0.75)
    assert health_score(0.2, 1.0, 0.5, False) == 0.0
    assert health_score(0.0, 0.5, 0.5, False) == pytest.approx(0.5)
    assert health_score(0.0, 1.0, 0.9, False) == pytest.approx(0.8)
    assert health_score(0.0, 1.0, 0.0, False) == pytest.approx(0.9)
    assert health_score(0.0, 1.0, 0.5, True) == pytest.approx(0.7)


def test_health_status_thresholds() -> None:
    assert health_status(0.95) == "healthy"
    assert health_status(0.8) == "degraded"
    assert health_status(0.6) == "degraded"
    assert health_status(0.5) == "critical"


def test_low_water_mark_seeds_every_enabled_source(run) -> None:
    async def scenario(runtime):
        now = utcnow()
        report = await _coordinator(runtime).run_once(now)
        due = await runtime.store.due_schedules(now)
        return report, due

    report, due = run(scenario)

    assert list(report.seeded) == ["low_water_mark"]
    assert report.seeded["low_water_mark"].queued == 20
    assert due == []


def test_low_water_mark_skips_disabled_sources(run) -> None:
    async def scenario(runtime):
        await runtime.store.set_schedule("CA_DRE", enabled=False)
        await runtime.store.set_schedule("WA_DOL", enabled=False)
        report = await _coordinator(runtime).run_once()
        return report, await runtime.store.status_summary()

    report, summary = run(scenario)

    assert report.seeded["low_water_mark"].queued == 10
    assert set(summary) == {"FL_DBPR", "TX_TREC"}


def test_due_schedule_triggers_seed_above_low_water_mark(run) -> None:
    async def scenario(runtime):
        now = utcnow()
        for source_type in ("FL_DBPR", "TX_TREC", "CA_DRE"):
            await runtime.store.mark_schedule_run(source_type, now - timedelta(hours=1))
        report = await _coordinator(runtime, queue_low_water_mark=0).run_once(now)
        again = await _coordinator(runtime, queue_low_water_mark=0).run_once(now)
        return report, again

    report, again = run(scenario)

    assert list(report.seeded) == ["WA_DOL"]
    assert report.seeded["WA_DOL"].queued == 5
    assert again.seeded == {}


def test_alerts_for_errors_stale_workers_and_overflow(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        now = utcnow()
        await _pause_schedules(store)
        for locality in ("33101", "33109", "33139", "33140"):
            await store.upsert_work_item(
                WorkItemKey("FL", locality, "real_estate", "FL_DBPR"), WorkItemStatus.QUEUED
            )
        await _log_attempt(store, AttemptStatus.COMPLETED, now - timedelta(minutes=5))
        await _log_attempt(store, AttemptStatus.RETRYING, now - timedelta(minutes=4))
        await _log_attempt(store, AttemptStatus.FAILED, now - timedelta(minutes=3))
        await store.record_heartbeat("consumer-a", "consumer", now=now)
        await store.record_heartbeat("consumer-b", "consumer", now=now - timedelta(minutes=20))

        report = await _coordinator(runtime, queue_low_water_mark=0, queue_max_depth=3).run_once(now)
        return report, await store.list_alerts()

    report, stored = run(scenario)

    types = {alert.alert_type: alert for alert in report.alerts}
    assert set(types) == {"high_error_rate", "stale_workers", "queue_overflow"}
    assert types["high_error_rate"].severity == AlertSeverity.CRITICAL
    assert types["stale_workers"].context == {"workers": ["consumer-b"]}
    assert types["queue_overflow"].severity == AlertSeverity.MEDIUM
    assert report.queue_depth == 4
    assert report.error_rate == pytest.approx(2 / 3)
    assert report.status == "critical"
    assert {alert.alert_type for alert in stored} == set(types)


def test_queue_stale_needs_a_previous_finish(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        now = utcnow()
        await _pause_schedules(store)
        await store.upsert_work_item(KEY, WorkItemStatus.QUEUED)
        coordinator = _coordinator(runtime, queue_low_water_mark=0)

        before = await coordinator.run_once(now)
        await _log_attempt(store, AttemptStatus.COMPLETED, now - timedelta(hours=2))
        after = await coordinator.run_once(now)
        return before, after

    before, after = run(scenario)

    assert [a.alert_type for a in before.alerts] == []
    assert [a.alert_type for a in after.alerts] == ["queue_stale"]


def test_healthy_pipeline_reports_no_alerts(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        now = utcnow()
        await _pause_schedules(store)
        for locality in ("33101", "33109"):
            await store.upsert_work_item(
                WorkItemKey("FL", locality, "real_estate", "FL_DBPR"), WorkItemStatus.QUEUED
            )
        await _log_attempt(store, AttemptStatus.COMPLETED, now - timedelta(minutes=1))
        await store.record_heartbeat("consumer-a", "consumer", now=now)
        report = await _coordinator(runtime, queue_low_water_mark=0, queue_max_depth=100).run_once(now)
        return report, await store.list_heartbeats("coordinator")

    report, [heartbeat] = run(scenario)

    assert report.alerts == []
    assert report.health_score == pytest.approx(1.0)
    assert report.status == "healthy"
    assert heartbeat.status == "healthy"
    assert heartbeat.context["queue_depth"] == 2


def test_stopped_worker_is_neither_stale_nor_counted(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        now = utcnow()
        await _pause_schedules(store)
        await store.upsert_work_item(KEY, WorkItemStatus.QUEUED)
        await _log_attempt(store, AttemptStatus.COMPLETED, now - timedelta(minutes=1))
        await store.record_heartbeat("consumer-a", "consumer", now=now)
        await store.record_heartbeat("consumer-b", "consumer", status="stopped", now=now - timedelta(days=3))
        return await _coordinator(runtime, queue_low_water_mark=0, queue_max_depth=100).run_once(now)

    report = run(scenario)

    assert report.alerts == []
    assert report.health_score == pytest.approx(1.0)
    assert report.status == "healthy"


def test_failed_http_trigger_becomes_alert(run, monkeypatch) -> None:
    trigger = HttpSeedTrigger("http://control.internal/api/v1/seed")

    async def server_error(payload):
        return httpx.Response(500, text="boom", request=httpx.Request("POST", trigger.url))

    monkeypatch.setattr(trigger, "_post", server_error)

    async def scenario(runtime):
        return await _coordinator(runtime, trigger=trigger).run_once()

    report = run(scenario)

    assert report.seeded == {}
    [alert] = [a for a in report.alerts if a.alert_type == "seed_trigger_failed"]
    assert alert.severity == AlertSeverity.HIGH
    assert "HTTP 500" in alert.message


def test_http_trigger_reads_seed_counts(monkeypatch) -> None:
    trigger = HttpSeedTrigger("http://control.internal/api/v1/seed", mode="production")
    sent = []

    async def accepted(payload):
        sent.append(payload)
        return httpx.Response(
            202,
            json={"queued": 7, "skipped": 3, "errors": 0},
            request=httpx.Request("POST", trigger.url),
        )

    monkeypatch.setattr(trigger, "_post", accepted)

    result = asyncio.run(trigger.trigger(["TX_TREC"]))

    assert result.as_dict() == {"queued": 7, "skipped": 3, "errors": 0}
    assert sent == [{"mode": "production", "sources": ["TX_TREC"]}]


def test_build_seed_trigger_prefers_remote_url(settings) -> None:
    assert isinstance(build_seed_trigger(None, settings), LocalSeedTrigger)

    remote = settings.model_copy(update={"seed_trigger_url": "http://control.internal/api/v1/seed"})
    trigger = build_seed_trigger(None, remote)

    assert isinstance(trigger, HttpSeedTrigger)
    assert trigger.url == "http://control.internal/api/v1/seed"
