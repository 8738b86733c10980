"""
Worker health models - heartbeats and coordinator alerts.
"""

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from harvester.db.base import Base, JSONType, enum_column


class AlertSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Heartbeat status written by a worker that shut down cleanly
STOPPED = "stopped"


class WorkerHeartbeat(Base):
    """Latest heartbeat of a consumer or coordinator process."""

    __tablename__ = "worker_health"

    worker_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    worker_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="healthy")
    last_heartbeat: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)


class CoordinatorAlert(Base):
    """Alert derived by the coordinator from queue and worker health."""

    __tablename__ = "coordinator_alerts"

    alert_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[AlertSeverity] = mapped_column(
        enum_column(AlertSeverity, "alertseverity"),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
