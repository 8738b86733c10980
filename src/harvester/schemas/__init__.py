"""
Pydantic schemas for the control API and the queue payload.
"""

from harvester.schemas.common import BaseSchema, ErrorResponse, HealthResponse
from harvester.schemas.control import (
    AlertResponse,
    DeadLetterResponse,
    RateLimitResponse,
    ResolveDeadLetterRequest,
    SeedRequest,
    SeedResponse,
    SourceStatusResponse,
    StatusResponse,
)
from harvester.schemas.messages import ScrapeMessage

__all__ = [
    "AlertResponse",
    "BaseSchema",
    "DeadLetterResponse",
    "ErrorResponse",
    "HealthResponse",
    "RateLimitResponse",
    "ResolveDeadLetterRequest",
    "ScrapeMessage",
    "SeedRequest",
    "SeedResponse",
    "SourceStatusResponse",
    "StatusResponse",
]
