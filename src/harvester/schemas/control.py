"""
Control surface schemas: seed trigger, status and dead letters.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from harvester.models.worker_health import AlertSeverity
from harvester.schemas.common import BaseSchema


class SeedRequest(BaseModel):
    """Request body for triggering a seed run."""

    mode: Literal["test", "production"] = "test"
    sources: list[str] | None = Field(
        default=None,
        description="Source types to seed (e.g. FL_DBPR); all registered sources when omitted",
    )
    professions: list[str] | None = None
    force: bool = Field(default=False, description="Queue items even if recently completed")


class SeedResponse(BaseModel):
    """Counts produced by one seed run."""

    queued: int = 0
    skipped: int = 0
    errors: int = 0


class RateLimitResponse(BaseSchema):
    """Current rate-limit state of a source."""

    source_type: str
    requests_per_second: float
    window_start: datetime | None = None
    count_in_window: int
    is_throttled: bool
    throttled_until: datetime | None = None
    total_requests: int
    total_denied: int


class SourceStatusResponse(BaseModel):
    """Work item counts for one source."""

    source_type: str
    counts: dict[str, int] = Field(default_factory=dict)
    total: int = 0
    rate_limit: RateLimitResponse | None = None


class StatusResponse(BaseModel):
    """Aggregate pipeline status."""

    sources: list[SourceStatusResponse]
    queue_depth: int
    open_dead_letters: int


class DeadLetterResponse(BaseSchema):
    """A dead-lettered message."""

    id: UUID
    message_id: UUID
    work_item_key: str | None = None
    source_type: str | None = None
    error_message: str | None = None
    diagnostics: dict[str, Any] = Field(default_factory=dict)
    deliveries: int
    failed_at: datetime
    resolved: bool
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None


class ResolveDeadLetterRequest(BaseModel):
    """Operator sign-off on a dead-lettered message."""

    resolved_by: str = Field(min_length=1, max_length=100)
    notes: str | None = None


class AlertResponse(BaseSchema):
    """An alert raised by the coordinator."""

    alert_type: str
    severity: AlertSeverity
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
