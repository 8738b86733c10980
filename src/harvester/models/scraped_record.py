"""
ScrapedRecord model - a harvested license holder.

Deduplicated on (source_type, source_license_id); re-scraping a license
updates the existing row.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from harvester.db.base import Base, JSONType, TimestampMixin


class ScrapedRecord(Base, TimestampMixin):
    """
    A licensed professional found on an external registry.

    Attributes:
        source_license_id: License number as published by the registry
        locality: Locality code (ZIP) the record was found under
        raw_data: Extracted fields as returned by the extraction strategy
    """

    __tablename__ = "scraped_records"
    __table_args__ = (
        UniqueConstraint("source_type", "source_license_id", name="uq_scraped_records_source_license"),
    )

    source_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    source_license_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    locality: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    jurisdiction: Mapped[str] = mapped_column(String(2), nullable=False, index=True)
    profession: Mapped[str] = mapped_column(String(50), nullable=False)

    # Contact fields
    license_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    raw_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    scraped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ScrapedRecord({self.source_type}:{self.source_license_id}, {self.name!r})>"
