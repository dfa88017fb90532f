from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AlertType = Literal[
    "SCRAPE_FAILURE",
    "CONSECUTIVE_FAILURES",
    "EVENT_COUNT_ANOMALY",
    "FIELD_FILL_DROP",
    "STRUCTURE_CHANGE",
    "UNMATCHED_TAGS",
    "SOURCE_KENNEL_MISMATCH",
]
AlertSeverity = Literal["INFO", "WARNING", "CRITICAL"]
AlertStatus = Literal["OPEN", "ACKNOWLEDGED", "SNOOZED", "RESOLVED"]


class AlertOut(BaseModel):
    id: str
    source_id: str
    scrape_log_id: str | None = None
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus
    title: str
    details: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    snoozed_until: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime
    updated_at: datetime


class AlertSnoozeRequest(BaseModel):
    hours: float = Field(gt=0, le=24 * 90)


class AlertResolveRequest(BaseModel):
    resolved_by: str | None = None


class AlertsResolvedOut(BaseModel):
    resolved: int
