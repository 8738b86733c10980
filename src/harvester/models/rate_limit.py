"""
RateLimit model - shared request budget for one source type.

Every consumer instance admits requests through the same row, so the
ceiling holds across processes.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from harvester.db.base import Base, TimestampMixin


class RateLimit(Base, TimestampMixin):
    """Windowed request counter for a source type."""

    __tablename__ = "rate_limits"

    source_type: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    requests_per_second: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)

    # Current window
    window_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    count_in_window: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Throttling (set when a source pushes back)
    is_throttled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    throttled_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    throttle_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifetime counters
    total_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_denied: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def min_interval(self) -> float:
        """Minimum spacing between requests implied by the ceiling."""
        return 1.0 / self.requests_per_second

    def __repr__(self) -> str:
        return f"<RateLimit({self.source_type}, rps={self.requests_per_second})>"


def window_length(requests_per_second: float) -> float:
    """Window in seconds: one second, or longer for sub-1 rps sources."""
    return max(1.0, 1.0 / requests_per_second)


def window_ceiling(requests_per_second: float) -> int:
    """Admissions allowed per window."""
    return max(1, int(requests_per_second * window_length(requests_per_second)))
