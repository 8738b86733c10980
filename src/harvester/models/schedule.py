"""
Schedule model - refresh cadence per source type.
"""

from datetime import datetime, timedelta

from sqlalchemy import Boolean, DateTime, Interval, String
from sqlalchemy.orm import Mapped, mapped_column

from harvester.core.clock import as_utc
from harvester.db.base import Base, TimestampMixin


class Schedule(Base, TimestampMixin):
    """How often the coordinator re-enumerates a source."""

    __tablename__ = "schedule"

    source_type: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    cadence: Mapped[timedelta] = mapped_column(Interval, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def is_due(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        last_run = as_utc(self.last_run_at)
        return last_run is None or last_run + self.cadence <= now

    def __repr__(self) -> str:
        return f"<Schedule({self.source_type}, every {self.cadence})>"
