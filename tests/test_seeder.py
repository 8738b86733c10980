from datetime import datetime, timedelta, timezone

import pytest

from harvester.core.exceptions import QueueUnavailableException, ValidationException
from harvester.models import WorkItemKey, WorkItemStatus
from harvester.services.state_store import WorkItemFilter

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_seed_is_idempotent(run) -> None:
    async def scenario(runtime):
        first = await runtime.seeder.seed("test", sources=["FL_DBPR"], now=NOW)
        second = await runtime.seeder.seed("test", sources=["FL_DBPR"], now=NOW)
        return first, second, await runtime.queue.depth()

    first, second, depth = run(scenario)

    assert first.as_dict() == {"queued": 5, "skipped": 0, "errors": 0}
    assert second.as_dict() == {"queued": 0, "skipped": 5, "errors": 0}
    assert depth == 5


def test_seed_all_sources(run) -> None:
    async def scenario(runtime):
        result = await runtime.seeder.seed("test", now=NOW)
        counts = await runtime.store.count_work_items_by_status()
        return result, counts

    result, counts = run(scenario)

    assert result.queued == 20
    assert counts == {"queued": 20}


def test_seed_several_professions(run) -> None:
    async def scenario(runtime):
        return await runtime.seeder.seed(
            "test", sources=["TX_TREC"], professions=["real_estate", "appraiser"], now=NOW
        )

    assert run(scenario).queued == 10


def test_unknown_source_is_rejected(run) -> None:
    async def scenario(runtime):
        with pytest.raises(ValidationException) as exc_info:
            await runtime.seeder.seed("test", sources=["FL_DBPR", "NV_RED"])
        return exc_info.value, await runtime.queue.depth()

    error, depth = run(scenario)

    assert error.details == {"field_errors": {"sources": ["Unknown source type: NV_RED"]}}
    assert depth == 0


def test_publish_failure_leaves_items_unqueued(run, monkeypatch) -> None:
    async def scenario(runtime):
        async def broken_send(message, delay_seconds=0.0):
            raise QueueUnavailableException("Failed to publish message")

        with monkeypatch.context() as patch:
            patch.setattr(runtime.queue, "send", broken_send)
            failed = await runtime.seeder.seed("test", sources=["CA_DRE"], now=NOW)

        unqueued = await runtime.store.find_work_items(
            WorkItemFilter(statuses=[WorkItemStatus.UNQUEUED])
        )
        retried = await runtime.seeder.seed("test", sources=["CA_DRE"], now=NOW)
        return failed, unqueued, retried, await runtime.queue.depth()

    failed, unqueued, retried, depth = run(scenario)

    assert failed.as_dict() == {"queued": 0, "skipped": 0, "errors": 5}
    assert len(unqueued) == 5
    assert retried.queued == 5
    assert depth == 5


def test_publish_retries_transient_errors(run, monkeypatch) -> None:
    async def scenario(runtime):
        send = runtime.queue.send
        calls = []

        async def flaky_send(message, delay_seconds=0.0):
            calls.append(message)
            if len(calls) == 1:
                raise QueueUnavailableException("Failed to publish message")
            return await send(message, delay_seconds)

        monkeypatch.setattr(runtime.queue, "send", flaky_send)
        result = await runtime.seeder.seed("test", sources=["FL_DBPR"], now=NOW)
        return result, len(calls)

    result, calls = run(scenario)

    assert result.as_dict() == {"queued": 5, "skipped": 0, "errors": 0}
    assert calls == 6


def test_completed_items_refresh_after_age(run) -> None:
    key = WorkItemKey("FL", "33101", "real_estate", "FL_DBPR")
    stale = WorkItemKey("FL", "33109", "real_estate", "FL_DBPR")

    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(key, WorkItemStatus.COMPLETED, completed_at=NOW - timedelta(days=2))
        await store.upsert_work_item(stale, WorkItemStatus.COMPLETED, completed_at=NOW - timedelta(days=9))
        result = await runtime.seeder.seed("test", sources=["FL_DBPR"], now=NOW)
        return result, await store.get_work_item(key), await store.get_work_item(stale)

    result, fresh_item, stale_item = run(scenario)

    assert result.as_dict() == {"queued": 4, "skipped": 1, "errors": 0}
    assert fresh_item.status == WorkItemStatus.COMPLETED
    assert stale_item.status == WorkItemStatus.QUEUED
    assert stale_item.attempt_count == 0


def test_failed_items_wait_for_next_retry(run) -> None:
    exhausted = WorkItemKey("TX", "75001", "real_estate", "TX_TREC")
    cooled = WorkItemKey("TX", "75201", "real_estate", "TX_TREC")
    partial = WorkItemKey("TX", "75202", "real_estate", "TX_TREC")

    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(exhausted, WorkItemStatus.FAILED, attempt_count=4,
                                     next_retry_at=NOW + timedelta(hours=1))
        await store.upsert_work_item(cooled, WorkItemStatus.FAILED, attempt_count=4,
                                     next_retry_at=NOW - timedelta(minutes=1))
        await store.upsert_work_item(partial, WorkItemStatus.FAILED, attempt_count=2,
                                     next_retry_at=NOW + timedelta(hours=1))
        result = await runtime.seeder.seed("test", sources=["TX_TREC"], now=NOW)
        return result, await store.get_work_item(exhausted), await store.get_work_item(cooled)

    result, exhausted_item, cooled_item = run(scenario)

    assert result.as_dict() == {"queued": 4, "skipped": 1, "errors": 0}
    assert exhausted_item.status == WorkItemStatus.FAILED
    assert cooled_item.status == WorkItemStatus.QUEUED


def test_force_requeues_finished_items_but_not_in_flight(run) -> None:
    completed = WorkItemKey("CA", "90210", "real_estate", "CA_DRE")
    unsupported = WorkItemKey("CA", "90211", "real_estate", "CA_DRE")
    processing = WorkItemKey("CA", "90212", "real_estate", "CA_DRE")

    async def scenario(runtime):
        store = runtime.store
        await store.upsert_work_item(completed, WorkItemStatus.COMPLETED, completed_at=NOW)
        await store.mark_unsupported(unsupported, "No search form")
        await store.upsert_work_item(processing, WorkItemStatus.PROCESSING, started_at=NOW)

        normal = await runtime.seeder.seed("test", sources=["CA_DRE"], now=NOW)
        forced = await runtime.seeder.seed("test", sources=["CA_DRE"], force=True, now=NOW)
        return normal, forced, await store.get_work_item(unsupported), await store.get_work_item(processing)

    normal, forced, unsupported_item, processing_item = run(scenario)

    assert normal.as_dict() == {"queued": 2, "skipped": 3, "errors": 0}
    # The first run's queued items are in flight now, so only the two finished ones move
    assert forced.as_dict() == {"queued": 2, "skipped": 3, "errors": 0}
    assert unsupported_item.status == WorkItemStatus.QUEUED
    assert processing_item.status == WorkItemStatus.PROCESSING


def test_processing_item_past_visibility_timeout_is_requeued(run) -> None:
    stuck = WorkItemKey("CA", "90210", "real_estate", "CA_DRE")
    busy = WorkItemKey("CA", "90211", "real_estate", "CA_DRE")

    async def scenario(runtime):
        store = runtime.store
        timeout = timedelta(seconds=runtime.settings.queue_visibility_timeout)
        await store.upsert_work_item(stuck, WorkItemStatus.PROCESSING, started_at=NOW - timeout * 2)
        await store.upsert_work_item(busy, WorkItemStatus.PROCESSING, started_at=NOW - timeout / 2)
        result = await runtime.seeder.seed("test", sources=["CA_DRE"], now=NOW)
        return result, await store.get_work_item(stuck), await store.get_work_item(busy)

    result, stuck_item, busy_item = run(scenario)

    assert result.as_dict() == {"queued": 4, "skipped": 1, "errors": 0}
    assert stuck_item.status == WorkItemStatus.QUEUED
    assert stuck_item.attempt_count == 0
    assert busy_item.status == WorkItemStatus.PROCESSING
