import uuid
from datetime import datetime, timedelta, timezone

import pytest

from harvester.core.clock import utcnow
from harvester.core.exceptions import EntityNotFoundException
from harvester.db.session import get_db_context
from harvester.models import QueueEntry, WorkItemKey
from harvester.schemas.messages import ScrapeMessage
from harvester.services.queue import DatabaseQueue

KEY = WorkItemKey("TX", "75001", "real_estate", "TX_TREC")


def _message() -> ScrapeMessage:
    return ScrapeMessage.for_key(KEY, datetime(2026, 10, 19, tzinfo=timezone.utc))


def test_received_message_is_hidden_until_acked(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        message_id = await queue.send(_message())
        first = await queue.receive_batch(10)
        hidden = await queue.receive_batch(10)
        acked = await queue.ack(first[0])
        return message_id, first, hidden, acked, await queue.depth()

    message_id, first, hidden, acked, depth = run(scenario)

    assert [m.id for m in first] == [message_id]
    assert first[0].body.key == KEY
    assert first[0].deliveries == 1
    assert hidden == []
    assert acked is True
    assert depth == 0


def test_lease_expires_after_visibility_timeout(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        await queue.send(_message())
        first = await queue.receive_batch(1)
        later = utcnow() + timedelta(seconds=queue.visibility_timeout + 1)
        again = await queue.receive_batch(1, now=later)
        stale_ack = await queue.ack(first[0])
        return again, stale_ack

    again, stale_ack = run(scenario)

    assert again[0].deliveries == 2
    assert stale_ack is False


def test_retry_makes_message_visible_again(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        await queue.send(_message())
        [message] = await queue.receive_batch(1)
        await queue.retry(message, delay_seconds=0)
        return await queue.receive_batch(1)

    [redelivered] = run(scenario)

    assert redelivered.deliveries == 2


def test_delayed_send(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        await queue.send(_message(), delay_seconds=60)
        now = await queue.receive_batch(1)
        later = await queue.receive_batch(1, now=utcnow() + timedelta(seconds=61))
        return now, later

    now, later = run(scenario)

    assert now == []
    assert len(later) == 1


def test_dead_letter_keeps_diagnostics(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        await queue.send(_message())
        [message] = await queue.receive_batch(1)
        await queue.dead_letter(message, "selector not found", {"strategy": "direct_url"})
        return await queue.list_dead_letters(), await queue.depth(), await queue.count_dead_letters()

    entries, depth, open_count = run(scenario)

    assert depth == 0
    assert open_count == 1
    assert entries[0].work_item_key == str(KEY)
    assert entries[0].source_type == "TX_TREC"
    assert entries[0].diagnostics == {"strategy": "direct_url"}


def test_message_over_delivery_ceiling_is_dead_lettered(run) -> None:
    async def scenario(runtime):
        queue = DatabaseQueue(runtime.store.session_factory, queue_name="ceiling",
                              visibility_timeout=0, max_deliveries=2)
        await queue.send(_message())
        deliveries = [len(await queue.receive_batch(1)) for _ in range(3)]
        return deliveries, await queue.list_dead_letters()

    deliveries, entries = run(scenario)

    assert deliveries == [1, 1, 0]
    assert entries[0].diagnostics == {"reason": "max_deliveries"}
    assert entries[0].deliveries == 2


def test_malformed_message_goes_straight_to_dead_letter(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        async with get_db_context(runtime.store.session_factory) as session:
            session.add(
                QueueEntry(
                    id=uuid.uuid4(),
                    queue_name=queue.queue_name,
                    body={"jurisdiction": "Texas"},
                    enqueued_at=utcnow(),
                    visible_at=utcnow(),
                    deliveries=0,
                )
            )
        return await queue.receive_batch(10), await queue.list_dead_letters()

    received, entries = run(scenario)

    assert received == []
    assert entries[0].error_message.startswith("Malformed message")
    assert entries[0].work_item_key is None


def test_attempt_follows_deliveries(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        await queue.send(_message())
        [first] = await queue.receive_batch(1)
        await queue.retry(first, 0)
        [second] = await queue.receive_batch(1)
        await queue.release(second, 0)
        [third] = await queue.receive_batch(1)
        return first, second, third

    first, second, third = run(scenario)

    assert (first.body.attempt, first.deliveries) == (1, 1)
    assert (second.body.attempt, second.deliveries) == (2, 2)
    # A released delivery is handed out again under the same attempt
    assert (third.body.attempt, third.deliveries) == (2, 2)


def test_release_never_reaches_delivery_ceiling(run) -> None:
    async def scenario(runtime):
        queue = DatabaseQueue(runtime.store.session_factory, queue_name="released",
                              visibility_timeout=0, max_deliveries=2)
        await queue.send(_message())
        for _ in range(5):
            [message] = await queue.receive_batch(1)
            assert await queue.release(message, 0)
        [message] = await queue.receive_batch(1)
        return message, await queue.list_dead_letters()

    message, entries = run(scenario)

    assert message.deliveries == 1
    assert entries == []


def test_release_with_lost_lease_is_refused(run) -> None:
    async def scenario(runtime):
        queue = DatabaseQueue(runtime.store.session_factory, visibility_timeout=0)
        await queue.send(_message())
        [stale] = await queue.receive_batch(1)
        [current] = await queue.receive_batch(1)
        return await queue.release(stale, 0), current.deliveries

    released, deliveries = run(scenario)

    assert released is False
    assert deliveries == 2


def test_delivery_ceiling_reports_expired_message(run) -> None:
    expired: list[tuple[ScrapeMessage, str]] = []

    async def on_expired(message: ScrapeMessage, reason: str) -> None:
        expired.append((message, reason))

    async def scenario(runtime):
        queue = DatabaseQueue(runtime.store.session_factory, queue_name="ceiling",
                              visibility_timeout=0, max_deliveries=2, on_expired=on_expired)
        await queue.send(_message())
        for _ in range(3):
            await queue.receive_batch(1)
        return await queue.list_dead_letters()

    [entry] = run(scenario)

    [(message, reason)] = expired
    assert message.key == KEY
    assert reason == "Exceeded 2 deliveries without acknowledgement"
    assert entry.error_message == reason
    assert entry.body["attempt"] == 2


def test_resolved_dead_letter_leaves_open_count(run) -> None:
    async def scenario(runtime):
        queue = runtime.queue
        await queue.send(_message())
        [message] = await queue.receive_batch(1)
        await queue.dead_letter(message, "selector not found")
        [entry] = await queue.list_dead_letters()
        resolved = await queue.resolve_dead_letter(entry.id, "ops@example.com", "Selector fixed")
        return (
            resolved,
            await queue.list_dead_letters(),
            await queue.list_dead_letters(include_resolved=True),
            await queue.count_dead_letters(),
        )

    resolved, open_entries, all_entries, open_count = run(scenario)

    assert resolved.resolved is True
    assert resolved.resolved_by == "ops@example.com"
    assert resolved.resolution_notes == "Selector fixed"
    assert resolved.resolved_at is not None
    assert open_entries == []
    assert [e.id for e in all_entries] == [resolved.id]
    assert open_count == 0


def test_resolve_unknown_dead_letter(run) -> None:
    async def scenario(runtime):
        with pytest.raises(EntityNotFoundException):
            await runtime.queue.resolve_dead_letter(uuid.uuid4(), "ops@example.com")

    run(scenario)
