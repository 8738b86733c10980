"""
SQLAlchemy models for the harvester state store.

Import all models here so they're registered with Base.metadata.
"""

from harvester.models.queue import DeadLetter, QueueEntry
from harvester.models.queue_message import AttemptStatus, QueueMessageLog
from harvester.models.rate_limit import RateLimit
from harvester.models.schedule import Schedule
from harvester.models.scraped_record import ScrapedRecord
from harvester.models.work_item import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    WorkItem,
    WorkItemKey,
    WorkItemStatus,
)
from harvester.models.worker_health import AlertSeverity, CoordinatorAlert, WorkerHeartbeat

__all__ = [
    "ACTIVE_STATUSES",
    "AlertSeverity",
    "AttemptStatus",
    "CoordinatorAlert",
    "DeadLetter",
    "QueueEntry",
    "QueueMessageLog",
    "RateLimit",
    "Schedule",
    "ScrapedRecord",
    "TERMINAL_STATUSES",
    "WorkItem",
    "WorkItemKey",
    "WorkItemStatus",
    "WorkerHeartbeat",
]
