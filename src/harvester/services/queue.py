"""
Durable scrape queue backed by the database.

At-least-once delivery with batched receives, a visibility lease per
received message, delayed redelivery and a dead-letter table. The queue
never decides whether work is done; the work item status in the state
store does.

Receiving is a compare-and-swap on each candidate row's lease token, so
concurrent consumers never lease the same visible message.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvester.core.clock import as_utc, utcnow
from harvester.core.exceptions import EntityNotFoundException, QueueUnavailableException
from harvester.core.logging import get_logger
from harvester.db.session import get_db_context
from harvester.models import DeadLetter, QueueEntry
from harvester.schemas.messages import ScrapeMessage

logger = get_logger(__name__)

MAX_BATCH_SIZE = 10

ExpiredHandler = Callable[[ScrapeMessage, str], Awaitable[None]]


@dataclass
class ReceivedMessage:
    """A leased message. ``deliveries`` counts this delivery and ``body.attempt`` mirrors it."""

    id: uuid.UUID
    body: ScrapeMessage
    raw_body: dict[str, Any]
    deliveries: int
    lease_token: uuid.UUID
    enqueued_at: datetime


class DatabaseQueue:
    """
    Queue stored in the ``scrape_queue`` and ``dead_letter_queue`` tables.

    Args:
        session_factory: Session factory for the queue database
        queue_name: Logical queue name, several queues may share the table
        visibility_timeout: Seconds a received message stays hidden
        max_deliveries: Deliveries after which a message is dead-lettered
            without being handed out again
        on_expired: Called with the payload and reason after a message is
            dead-lettered for hitting ``max_deliveries``
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue_name: str = "scrape-jobs",
        visibility_timeout: float = 300.0,
        max_deliveries: int = 10,
        on_expired: ExpiredHandler | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.queue_name = queue_name
        self.visibility_timeout = visibility_timeout
        self.max_deliveries = max_deliveries
        self.on_expired = on_expired

    async def send(self, message: ScrapeMessage, delay_seconds: float = 0.0) -> uuid.UUID:
        """Publish a message; returns its id."""
        now = utcnow()
        entry = QueueEntry(
            id=uuid.uuid4(),
            queue_name=self.queue_name,
            body=message.model_dump(mode="json"),
            enqueued_at=now,
            visible_at=now + timedelta(seconds=delay_seconds),
            deliveries=0,
        )
        try:
            async with get_db_context(self.session_factory) as session:
                session.add(entry)
        except SQLAlchemyError as e:
            raise QueueUnavailableException("Failed to publish message", {"error": str(e)}) from e
        return entry.id

    async def receive_batch(self, max_messages: int = MAX_BATCH_SIZE,
                            now: datetime | None = None) -> list[ReceivedMessage]:
        """
        Lease up to ``max_messages`` visible messages, oldest first.

        Messages already delivered ``max_deliveries`` times are moved to the
        dead-letter table instead of being returned.
        """
        now = now or utcnow()
        max_messages = max(1, min(max_messages, MAX_BATCH_SIZE))

        async with self.session_factory() as session:
            candidates = (
                await session.scalars(
                    select(QueueEntry)
                    .where(QueueEntry.queue_name == self.queue_name, QueueEntry.visible_at <= now)
                    .order_by(QueueEntry.enqueued_at)
                    .limit(max_messages * 2)
                )
            ).all()

        received: list[ReceivedMessage] = []
        for entry in candidates:
            if len(received) >= max_messages:
                break
            if entry.deliveries >= self.max_deliveries:
                await self._expire(entry, now)
                continue
            message = await self._lease(entry, now)
            if message is not None:
                received.append(message)
        return received

    async def _lease(self, entry: QueueEntry, now: datetime) -> ReceivedMessage | None:
        token = uuid.uuid4()
        stmt = (
            update(QueueEntry)
            .where(
                QueueEntry.id == entry.id,
                QueueEntry.deliveries == entry.deliveries,
                QueueEntry.visible_at <= now,
            )
            .values(
                lease_token=token,
                deliveries=QueueEntry.deliveries + 1,
                visible_at=now + timedelta(seconds=self.visibility_timeout),
            )
            .execution_options(synchronize_session=False)
        )
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(stmt)
        if result.rowcount != 1:
            # Another consumer leased it first
            return None

        try:
            body = ScrapeMessage.model_validate({**entry.body, "attempt": entry.deliveries + 1})
        except ValidationError as e:
            logger.error("Malformed queue message", message_id=str(entry.id), error=str(e))
            await self._move_to_dead_letter(entry.id, token, f"Malformed message: {e}", {})
            return None

        return ReceivedMessage(
            id=entry.id,
            body=body,
            raw_body=entry.body,
            deliveries=entry.deliveries + 1,
            lease_token=token,
            enqueued_at=as_utc(entry.enqueued_at),
        )

    async def _expire(self, entry: QueueEntry, now: datetime) -> None:
        """Dead-letter a message that hit the delivery ceiling without being acknowledged."""
        token = uuid.uuid4()
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == entry.id, QueueEntry.visible_at <= now)
                .values(lease_token=token)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            return

        logger.warning(
            "Message exceeded delivery ceiling",
            message_id=str(entry.id),
            deliveries=entry.deliveries,
        )
        reason = f"Exceeded {self.max_deliveries} deliveries without acknowledgement"
        moved = await self._move_to_dead_letter(entry.id, token, reason, {"reason": "max_deliveries"})
        if not moved or self.on_expired is None:
            return
        try:
            message = ScrapeMessage.model_validate(entry.body)
        except ValidationError:
            return
        await self.on_expired(message, reason)

    async def ack(self, message: ReceivedMessage) -> bool:
        """Delete a leased message. Returns False if the lease was lost."""
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                delete(QueueEntry)
                .where(QueueEntry.id == message.id, QueueEntry.lease_token == message.lease_token)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            logger.warning("Ack for expired lease", message_id=str(message.id))
            return False
        return True

    async def retry(self, message: ReceivedMessage, delay_seconds: float) -> bool:
        """Release a leased message for redelivery after ``delay_seconds``."""
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == message.id, QueueEntry.lease_token == message.lease_token)
                .values(visible_at=utcnow() + timedelta(seconds=delay_seconds), lease_token=None)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def release(self, message: ReceivedMessage, delay_seconds: float) -> bool:
        """
        Hand a leased message back without counting the delivery.

        Used when the consumer could not start work at all (rate limited),
        so the message does not creep toward ``max_deliveries``.
        """
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == message.id, QueueEntry.lease_token == message.lease_token)
                .values(
                    visible_at=utcnow() + timedelta(seconds=delay_seconds),
                    lease_token=None,
                    # Leasing incremented it, so this never goes below zero
                    deliveries=QueueEntry.deliveries - 1,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def dead_letter(
        self,
        message: ReceivedMessage,
        error_message: str,
        diagnostics: dict[str, Any] | None = None,
    ) -> bool:
        """Move a leased message to the dead-letter table (this also acknowledges it)."""
        return await self._move_to_dead_letter(message.id, message.lease_token, error_message, diagnostics or {})

    async def _move_to_dead_letter(
        self,
        message_id: uuid.UUID,
        lease_token: uuid.UUID,
        error_message: str,
        diagnostics: dict[str, Any],
    ) -> bool:
        async with get_db_context(self.session_factory) as session:
            entry = await session.scalar(
                select(QueueEntry).where(QueueEntry.id == message_id, QueueEntry.lease_token == lease_token)
            )
            if entry is None:
                return False
            body = dict(entry.body or {})
            if "attempt" in body:
                body["attempt"] = max(entry.deliveries, 1)
            work_item_key = None
            if all(body.get(k) for k in ("jurisdiction", "locality_code", "profession", "source_type")):
                work_item_key = (
                    f"{body['jurisdiction']}:{body['locality_code']}:{body['profession']}:{body['source_type']}"
                )
            session.add(
                DeadLetter(
                    message_id=entry.id,
                    queue_name=entry.queue_name,
                    body=body,
                    work_item_key=work_item_key,
                    source_type=body.get("source_type"),
                    error_message=error_message,
                    diagnostics=diagnostics,
                    deliveries=entry.deliveries,
                    failed_at=utcnow(),
                )
            )
            await session.delete(entry)
        logger.warning("Message dead-lettered", message_id=str(message_id), error=error_message)
        return True

    async def depth(self) -> int:
        """Messages in the queue, visible or leased."""
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count(QueueEntry.id)).where(QueueEntry.queue_name == self.queue_name)
            ) or 0

    async def list_dead_letters(self, include_resolved: bool = False, limit: int = 100) -> list[DeadLetter]:
        query = select(DeadLetter).where(DeadLetter.queue_name == self.queue_name)
        if not include_resolved:
            query = query.where(DeadLetter.resolved.is_(False))
        query = query.order_by(DeadLetter.failed_at.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())

    async def resolve_dead_letter(
        self,
        dead_letter_id: uuid.UUID,
        resolved_by: str,
        notes: str | None = None,
    ) -> DeadLetter:
        """Mark a dead letter as handled by an operator; it drops out of the open count."""
        async with get_db_context(self.session_factory) as session:
            entry = await session.get(DeadLetter, dead_letter_id)
            if entry is None or entry.queue_name != self.queue_name:
                raise EntityNotFoundException("DeadLetter", str(dead_letter_id))
            entry.resolved = True
            entry.resolved_at = utcnow()
            entry.resolved_by = resolved_by
            entry.resolution_notes = notes
        logger.info("Dead letter resolved", dead_letter_id=str(dead_letter_id), resolved_by=resolved_by)
        return entry

    async def count_dead_letters(self) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count(DeadLetter.id)).where(
                    DeadLetter.queue_name == self.queue_name,
                    DeadLetter.resolved.is_(False),
                )
            ) or 0
