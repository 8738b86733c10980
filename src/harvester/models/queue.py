"""
Queue storage models - in-flight messages and the dead-letter channel.

Rows in ``scrape_queue`` only describe delivery state; once a message is
acknowledged the row is gone.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from harvester.db.base import Base, JSONType


class QueueEntry(Base):
    """A message waiting for, or leased to, a consumer."""

    __tablename__ = "scrape_queue"

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    body: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    visible_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lease_token: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)


class DeadLetter(Base):
    """A message that exhausted its retries, kept for manual inspection."""

    __tablename__ = "dead_letter_queue"

    message_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, unique=True)
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    body: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    work_item_key: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    source_type: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnostics: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    deliveries: Mapped[int] = mapped_column(Integer, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Manual resolution
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
