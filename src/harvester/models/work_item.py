"""
WorkItem model - one unit of scraping work.

A work item is identified by jurisdiction, locality, profession and source
type. Its status column is the authoritative record of whether the job has
been done and when it may be done again; the queue only carries delivery
state.
"""

import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from harvester.db.base import Base, TimestampMixin, enum_column


class WorkItemStatus(str, enum.Enum):
    """Lifecycle status of a work item."""

    UNQUEUED = "unqueued"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


ACTIVE_STATUSES = frozenset({WorkItemStatus.QUEUED, WorkItemStatus.PROCESSING})
TERMINAL_STATUSES = frozenset(
    {WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.UNSUPPORTED}
)


@dataclass(frozen=True)
class WorkItemKey:
    """Natural identity of a work item."""

    jurisdiction: str
    locality_code: str
    profession: str
    source_type: str

    def __str__(self) -> str:
        return f"{self.jurisdiction}:{self.locality_code}:{self.profession}:{self.source_type}"

    @classmethod
    def parse(cls, value: str) -> "WorkItemKey":
        jurisdiction, locality_code, profession, source_type = value.split(":", 3)
        return cls(jurisdiction, locality_code, profession, source_type)


class WorkItem(Base, TimestampMixin):
    """
    Persisted status of one (jurisdiction, locality, profession, source) job.

    Attributes:
        status: Current lifecycle status
        attempt_count: Attempts made in the current queue cycle
        consecutive_failures: Failed cycles in a row, drives re-seed backoff
        next_retry_at: Earliest time a retry or re-seed may happen
        last_result_count: Records found by the last completed attempt
    """

    __tablename__ = "work_items"
    __table_args__ = (
        UniqueConstraint(
            "jurisdiction",
            "locality_code",
            "profession",
            "source_type",
            name="uq_work_items_identity",
        ),
    )

    # Identity
    jurisdiction: Mapped[str] = mapped_column(String(2), nullable=False, index=True)
    locality_code: Mapped[str] = mapped_column(String(20), nullable=False)
    profession: Mapped[str] = mapped_column(String(50), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Status
    status: Mapped[WorkItemStatus] = mapped_column(
        enum_column(WorkItemStatus, "workitemstatus"),
        default=WorkItemStatus.UNQUEUED,
        nullable=False,
        index=True,
    )
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    # Attempts
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_result_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Timeline
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def key(self) -> WorkItemKey:
        return WorkItemKey(self.jurisdiction, self.locality_code, self.profession, self.source_type)

    def __repr__(self) -> str:
        return f"<WorkItem({self.key}, status={self.status.value})>"
