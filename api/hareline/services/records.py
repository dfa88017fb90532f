from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

SourceHealth = Literal["HEALTHY", "DEGRADED", "FAILING", "UNKNOWN"]
EventStatus = Literal["CONFIRMED", "CANCELLED"]
ScrapeStatus = Literal["RUNNING", "SUCCESS", "FAILED"]

ACTIVE_ALERT_STATUSES = ("OPEN", "ACKNOWLEDGED")
UNRESOLVED_ALERT_STATUSES = ("OPEN", "ACKNOWLEDGED", "SNOOZED")


@dataclass(slots=True)
class SourceRecord:
    id: str
    name: str
    type: str
    trust_level: int = 5
    url: str | None = None
    health_status: SourceHealth = "UNKNOWN"
    last_scrape_at: datetime | None = None
    last_success_at: datetime | None = None


@dataclass(slots=True)
class KennelRecord:
    id: str
    short_name: str
    full_name: str | None = None
    region: str | None = None


@dataclass(slots=True)
class RawEventRecord:
    id: str
    source_id: str
    fingerprint: str
    raw_data: dict[str, Any]
    processed: bool = False
    event_id: str | None = None
    scraped_at: datetime | None = None


@dataclass(slots=True)
class EventRecord:
    id: str
    kennel_id: str
    date: date
    date_utc: datetime
    timezone: str | None
    trust_level: int
    run_number: int | None = None
    title: str | None = None
    description: str | None = None
    hares: str | None = None
    location_name: str | None = None
    location_url: str | None = None
    start_time: str | None = None
    source_url: str | None = None
    status: EventStatus = "CONFIRMED"
    is_series_parent: bool = False
    parent_event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class EventLinkRecord:
    id: str
    event_id: str
    url: str
    label: str
    source_id: str | None = None


@dataclass(slots=True)
class ScrapeLogRecord:
    id: str
    source_id: str
    status: ScrapeStatus
    started_at: datetime
    forced: bool = False
    completed_at: datetime | None = None
    duration_ms: int | None = None
    events_found: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_skipped: int = 0
    events_blocked: int = 0
    events_cancelled: int = 0
    unmatched_tags: list[str] = field(default_factory=list)
    blocked_tags: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error_details: dict[str, Any] | None = None
    fill_rate_title: int | None = None
    fill_rate_location: int | None = None
    fill_rate_hares: int | None = None
    fill_rate_start_time: int | None = None
    fill_rate_run_number: int | None = None
    structure_hash: str | None = None
    sample_blocked: list[dict[str, Any]] = field(default_factory=list)
    sample_skipped: list[dict[str, Any]] = field(default_factory=list)
    diagnostic_context: dict[str, Any] | None = None


@dataclass(slots=True)
class AlertRecord:
    id: str
    source_id: str
    type: str
    severity: str
    status: str
    title: str
    details: str | None
    created_at: datetime
    updated_at: datetime
    scrape_log_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    snoozed_until: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
