import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from harvester.core.clock import as_utc
from harvester.core.exceptions import EntityNotFoundException
from harvester.extractor.models import LicenseRecord
from harvester.models import AttemptStatus, ScrapedRecord, WorkItemKey, WorkItemStatus
from harvester.services.state_store import MessageLogEntry, WorkItemFilter

KEY = WorkItemKey("FL", "33101", "real_estate", "FL_DBPR")
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_upsert_work_item_keeps_one_row_per_identity(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(KEY, WorkItemStatus.QUEUED, queued_at=NOW)
        await store.upsert_work_item(KEY, WorkItemStatus.COMPLETED, completed_at=NOW)
        item = await store.get_work_item(KEY)
        counts = await store.count_work_items_by_status()
        return item, counts

    item, counts = run(scenario)

    assert item.status == WorkItemStatus.COMPLETED
    assert as_utc(item.queued_at) == NOW
    assert item.key == KEY
    assert counts == {"completed": 1}


def test_find_work_items_filters(run) -> None:
    other = WorkItemKey("FL", "33109", "real_estate", "FL_DBPR")
    texas = WorkItemKey("TX", "75001", "real_estate", "TX_TREC")

    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(KEY, WorkItemStatus.COMPLETED, completed_at=NOW - timedelta(days=1))
        await store.upsert_work_item(other, WorkItemStatus.COMPLETED, completed_at=NOW - timedelta(days=10))
        await store.upsert_work_item(texas, WorkItemStatus.QUEUED)

        fresh = await store.find_work_items(
            WorkItemFilter(statuses=[WorkItemStatus.COMPLETED], completed_after=NOW - timedelta(days=7))
        )
        florida = await store.find_work_items(WorkItemFilter(source_type="FL_DBPR"))
        queued = await store.find_work_items(WorkItemFilter(statuses=[WorkItemStatus.QUEUED]))
        return fresh, florida, queued

    fresh, florida, queued = run(scenario)

    assert fresh == {KEY}
    assert florida == {KEY, other}
    assert queued == {texas}


def test_claim_work_item_counts_attempts_and_blocks_second_claim(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(KEY, WorkItemStatus.QUEUED)
        first = await store.claim_work_item(KEY, stale_before=NOW - timedelta(minutes=5), now=NOW)
        second = await store.claim_work_item(KEY, stale_before=NOW - timedelta(minutes=5), now=NOW)
        # A processing item older than the visibility timeout can be reclaimed
        reclaimed = await store.claim_work_item(
            KEY, stale_before=NOW + timedelta(minutes=1), now=NOW + timedelta(minutes=6)
        )
        return first, second, reclaimed, await store.get_work_item(KEY)

    first, second, reclaimed, item = run(scenario)

    assert first == 1
    assert second is None
    assert reclaimed == 2
    assert item.status == WorkItemStatus.PROCESSING


def test_claim_refuses_completed_item(run) -> None:
    async def scenario(runtime):
        await runtime.store.upsert_work_item(KEY, WorkItemStatus.COMPLETED)
        return await runtime.store.claim_work_item(KEY, stale_before=NOW)

    assert run(scenario) is None


def test_save_results_does_not_duplicate_records(run) -> None:
    record = LicenseRecord(name="Maria Lopez", license_number="SL3310100", license_status="Active")
    refreshed = LicenseRecord(name="Maria Lopez", license_number="SL3310100", license_status="Inactive",
                              phone="305-555-0100")

    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(KEY, WorkItemStatus.PROCESSING)
        first = await store.save_results(KEY, [record], now=NOW)
        second = await store.save_results(KEY, [refreshed], now=NOW + timedelta(days=8))
        item = await store.get_work_item(KEY)
        return first, second, await store.count_scraped_records(), item

    first, second, total, item = run(scenario)

    assert (first, second) == (1, 1)
    assert total == 1
    assert item.status == WorkItemStatus.COMPLETED
    assert item.last_result_count == 1
    assert as_utc(item.completed_at) == NOW + timedelta(days=8)


def test_upsert_scraped_record_updates_scraped_at(run) -> None:
    record = LicenseRecord(name="James Carter", license_number="SL3310101")

    async def scenario(runtime):
        store = runtime.store
        await store.upsert_scraped_record(KEY, record, scraped_at=NOW)
        await store.upsert_scraped_record(KEY, record, scraped_at=NOW + timedelta(hours=1))
        async with store.session_factory() as session:
            return list((await session.scalars(select(ScrapedRecord))).all())

    rows = run(scenario)

    assert len(rows) == 1
    assert as_utc(rows[0].scraped_at) == NOW + timedelta(hours=1)
    assert rows[0].raw_data["license_number"] == "SL3310101"


def test_record_failure_retry_then_terminal(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(KEY, WorkItemStatus.PROCESSING)
        await store.record_failure(KEY, "timeout", NOW + timedelta(minutes=1), terminal=False)
        retrying = await store.get_work_item(KEY)
        await store.record_failure(KEY, "timeout", NOW + timedelta(hours=1), terminal=True)
        failed = await store.get_work_item(KEY)
        return retrying, failed

    retrying, failed = run(scenario)

    assert retrying.status == WorkItemStatus.QUEUED
    assert retrying.consecutive_failures == 0
    assert failed.status == WorkItemStatus.FAILED
    assert failed.consecutive_failures == 1
    assert as_utc(failed.next_retry_at) == NOW + timedelta(hours=1)


def test_try_acquire_never_exceeds_ceiling_under_concurrency(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.configure_rate_limit("FL_DBPR", 3)
        results = await asyncio.gather(*(store.try_acquire("FL_DBPR", now=NOW) for _ in range(10)))
        limit = await store.get_rate_limit("FL_DBPR")
        return results, limit

    results, limit = run(scenario)

    assert sum(results) == 3
    assert limit.count_in_window == 3
    assert limit.total_requests == 3
    assert limit.total_denied == 7


def test_try_acquire_opens_new_window(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.configure_rate_limit("TX_TREC", 2)
        first = [await store.try_acquire("TX_TREC", now=NOW) for _ in range(3)]
        later = await store.try_acquire("TX_TREC", now=NOW + timedelta(seconds=1))
        return first, later

    first, later = run(scenario)

    assert first == [True, True, False]
    assert later is True


def test_slow_source_window_spans_several_seconds(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.configure_rate_limit("CA_DRE", 0.5)
        return [
            await store.try_acquire("CA_DRE", now=NOW),
            await store.try_acquire("CA_DRE", now=NOW + timedelta(seconds=1)),
            await store.try_acquire("CA_DRE", now=NOW + timedelta(seconds=2)),
        ]

    assert run(scenario) == [True, False, True]


def test_throttle_blocks_until_expiry(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.throttle("FL_DBPR", NOW + timedelta(minutes=30), "bot_detected")
        blocked = await store.try_acquire("FL_DBPR", now=NOW)
        released = await store.try_acquire("FL_DBPR", now=NOW + timedelta(minutes=31))
        limit = await store.get_rate_limit("FL_DBPR")
        return blocked, released, limit

    blocked, released, limit = run(scenario)

    assert blocked is False
    assert released is True
    assert limit.is_throttled is False


def test_get_rate_limit_unknown_source(run) -> None:
    async def scenario(runtime):
        with pytest.raises(EntityNotFoundException):
            await runtime.store.get_rate_limit("NV_RED")

    run(scenario)


def test_bootstrap_creates_rows_for_every_source(run) -> None:
    async def scenario(runtime):
        return await runtime.store.list_schedules(), await runtime.store.list_rate_limits()

    schedules, limits = run(scenario)

    assert {s.source_type for s in schedules} == {"FL_DBPR", "TX_TREC", "CA_DRE", "WA_DOL"}
    assert {limit.source_type for limit in limits} == {"FL_DBPR", "TX_TREC", "CA_DRE", "WA_DOL"}


def test_due_schedules_respect_cadence(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.mark_schedule_run("FL_DBPR", NOW - timedelta(days=1))
        await store.mark_schedule_run("TX_TREC", NOW - timedelta(days=8))
        await store.set_schedule("CA_DRE", enabled=False)
        return {s.source_type for s in await store.due_schedules(NOW)}

    assert run(scenario) == {"TX_TREC", "WA_DOL"}


def test_attempt_stats_ignore_skips(run) -> None:
    def entry(status, minutes_ago):
        finished = NOW - timedelta(minutes=minutes_ago)
        return MessageLogEntry(
            message_id=uuid.uuid4(),
            work_item_key=KEY,
            attempt_number=1,
            status=status,
            started_at=finished - timedelta(seconds=2),
            finished_at=finished,
        )

    async def scenario(runtime):
        store = runtime.store
        for status, minutes_ago in (
            (AttemptStatus.COMPLETED, 5),
            (AttemptStatus.RETRYING, 10),
            (AttemptStatus.FAILED, 15),
            (AttemptStatus.SKIPPED, 1),
            (AttemptStatus.COMPLETED, 120),
        ):
            await store.record_message(entry(status, minutes_ago))
        return await store.attempt_stats(NOW - timedelta(hours=1)), await store.list_messages(KEY)

    (total, failed), messages = run(scenario)

    assert (total, failed) == (3, 2)
    assert len(messages) == 5
    assert messages[0].duration_ms == 2000


def test_stale_workers(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.record_heartbeat("consumer-a", "consumer", now=NOW)
        await store.record_heartbeat("consumer-b", "consumer", now=NOW - timedelta(minutes=10))
        await store.record_heartbeat("coordinator", "coordinator", now=NOW - timedelta(hours=1))
        return await store.stale_workers(NOW - timedelta(minutes=5))

    assert [w.worker_id for w in run(scenario)] == ["consumer-b"]


def test_stopped_workers_are_not_stale(run) -> None:
    async def scenario(runtime):
        store = runtime.store
        await store.record_heartbeat("consumer-a", "consumer", status="stopped", now=NOW - timedelta(days=3))
        await store.record_heartbeat("consumer-b", "consumer", status="degraded", now=NOW - timedelta(days=3))
        return await store.stale_workers(NOW - timedelta(minutes=5))

    assert [w.worker_id for w in run(scenario)] == ["consumer-b"]


def test_expire_work_item_only_fails_items_in_flight(run) -> None:
    done = WorkItemKey("FL", "33109", "real_estate", "FL_DBPR")

    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(KEY, WorkItemStatus.PROCESSING, started_at=NOW)
        await store.upsert_work_item(done, WorkItemStatus.COMPLETED, completed_at=NOW)
        retry_at = NOW + timedelta(hours=1)
        expired = await store.expire_work_item(KEY, "Exceeded 10 deliveries", retry_at)
        untouched = await store.expire_work_item(done, "Exceeded 10 deliveries", retry_at)
        return expired, untouched, await store.get_work_item(KEY), await store.get_work_item(done)

    expired, untouched, item, done_item = run(scenario)

    assert (expired, untouched) == (True, False)
    assert item.status == WorkItemStatus.FAILED
    assert item.last_error == "Exceeded 10 deliveries"
    assert item.consecutive_failures == 1
    assert as_utc(item.next_retry_at) == NOW + timedelta(hours=1)
    assert done_item.status == WorkItemStatus.COMPLETED
