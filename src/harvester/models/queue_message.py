"""
QueueMessageLog model - append-only audit row per delivery attempt.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from harvester.db.base import Base, enum_column


class AttemptStatus(str, enum.Enum):
    """Outcome recorded for one delivery attempt."""

    COMPLETED = "completed"
    EMPTY = "empty"
    RETRYING = "retrying"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"
    RATE_LIMITED = "rate_limited"
    SKIPPED = "skipped"


FAILED_ATTEMPT_STATUSES = frozenset({AttemptStatus.RETRYING, AttemptStatus.FAILED})


class QueueMessageLog(Base):
    """
    One delivery attempt of a queue message.

    Rows are inserted once and never updated.
    """

    __tablename__ = "queue_messages"

    message_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    work_item_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AttemptStatus] = mapped_column(
        enum_column(AttemptStatus, "attemptstatus"),
        nullable=False,
        index=True,
    )

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    result_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stored_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    worker_version: Mapped[str | None] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<QueueMessageLog({self.work_item_key}#{self.attempt_number}, {self.status.value})>"
