"""
Queue message payload.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from harvester.models.work_item import WorkItemKey


class ScrapeMessage(BaseModel):
    """Application payload carried by the scrape queue."""

    jurisdiction: str = Field(min_length=2, max_length=2)
    locality_code: str = Field(min_length=1)
    profession: str = Field(min_length=1)
    source_type: str = Field(min_length=1)
    enqueued_at: datetime
    attempt: int = Field(default=1, ge=1)

    @property
    def key(self) -> WorkItemKey:
        return WorkItemKey(self.jurisdiction, self.locality_code, self.profession, self.source_type)

    @classmethod
    def for_key(cls, key: WorkItemKey, enqueued_at: datetime) -> "ScrapeMessage":
        return cls(
            jurisdiction=key.jurisdiction,
            locality_code=key.locality_code,
            profession=key.profession,
            source_type=key.source_type,
            enqueued_at=enqueued_at,
        )
