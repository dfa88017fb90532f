from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from hareline.services.records import (
    AlertRecord,
    EventLinkRecord,
    EventRecord,
    KennelRecord,
    RawEventRecord,
    ScrapeLogRecord,
    SourceRecord,
    UNRESOLVED_ALERT_STATUSES,
)
from hareline.services.repository import RepositoryConflictError, RepositoryNotFoundError

EventMerge = Callable[[EventRecord], dict[str, Any]]


class CatalogStore(Protocol):
    """Persistence operations the ingestion pipeline depends on."""

    async def get_source(self, source_id: str) -> SourceRecord | None: ...

    async def list_linked_kennel_ids(self, source_id: str) -> set[str]: ...

    async def find_kennel_id_by_short_name(self, short_name: str, *, source_id: str | None = None) -> str | None: ...

    async def find_kennel_id_by_alias(self, alias: str) -> str | None: ...

    async def get_kennel(self, kennel_id: str) -> KennelRecord | None: ...

    async def update_source_health(
        self,
        source_id: str,
        *,
        health_status: str,
        last_scrape_at: datetime,
        last_success_at: datetime | None = None,
    ) -> None: ...

    async def find_raw_event(self, source_id: str, fingerprint: str) -> RawEventRecord | None: ...

    async def create_raw_event(self, source_id: str, fingerprint: str, raw_data: dict[str, Any]) -> RawEventRecord: ...

    async def mark_raw_event_processed(self, raw_event_id: str, event_id: str) -> None: ...

    async def delete_raw_events(self, source_id: str) -> int: ...

    async def find_event_ids_with_other_sources(self, event_ids: list[str], source_id: str) -> set[str]: ...

    async def get_event(self, event_id: str) -> EventRecord | None: ...

    async def upsert_event(
        self,
        *,
        kennel_id: str,
        event_date: date,
        create: dict[str, Any],
        merge: EventMerge,
    ) -> tuple[EventRecord, bool]: ...

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> None: ...

    async def list_events_by_ids(self, event_ids: list[str]) -> list[EventRecord]: ...

    async def mark_series(self, parent_id: str, child_ids: list[str]) -> None: ...

    async def list_confirmed_events(self, kennel_ids: Iterable[str], start: date, end: date) -> list[EventRecord]: ...

    async def cancel_events(self, event_ids: list[str]) -> int: ...

    async def add_event_link(self, event_id: str, url: str, label: str, source_id: str | None) -> bool: ...

    async def create_scrape_log(self, source_id: str, *, forced: bool) -> ScrapeLogRecord: ...

    async def update_scrape_log(self, log_id: str, changes: dict[str, Any]) -> None: ...

    async def list_recent_scrape_logs(
        self,
        source_id: str,
        *,
        exclude_id: str | None,
        limit: int,
        status: str | None = None,
    ) -> list[ScrapeLogRecord]: ...

    async def get_alert(self, alert_id: str) -> AlertRecord | None: ...

    async def find_alert(self, source_id: str, alert_type: str, statuses: Iterable[str]) -> AlertRecord | None: ...

    async def list_alerts(
        self,
        *,
        source_id: str | None = None,
        alert_type: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[AlertRecord]: ...

    async def create_alert(self, **fields: Any) -> AlertRecord: ...

    async def update_alert(self, alert_id: str, changes: dict[str, Any]) -> AlertRecord: ...


class InMemoryStore:
    """Process-local store used when no database is configured, and by tests."""

    def __init__(self) -> None:
        self.sources: dict[str, SourceRecord] = {}
        self.kennels: dict[str, KennelRecord] = {}
        self.aliases: list[tuple[str, str]] = []
        self.source_kennels: set[tuple[str, str]] = set()
        self.raw_events: dict[str, RawEventRecord] = {}
        self.events: dict[str, EventRecord] = {}
        self.event_links: dict[str, EventLinkRecord] = {}
        self.scrape_logs: dict[str, ScrapeLogRecord] = {}
        self.alerts: dict[str, AlertRecord] = {}
        self.lookups = 0
        self._event_lock = asyncio.Lock()

    # Seeding helpers for bootstrap and tests.

    def add_source(self, source_id: str, *, name: str | None = None, source_type: str = "HTML_SCRAPER", trust_level: int = 5) -> SourceRecord:
        source = SourceRecord(id=source_id, name=name or source_id, type=source_type, trust_level=trust_level)
        self.sources[source_id] = source
        return source

    def add_kennel(self, kennel_id: str, short_name: str, *, region: str | None = None) -> KennelRecord:
        kennel = KennelRecord(id=kennel_id, short_name=short_name, region=region)
        self.kennels[kennel_id] = kennel
        return kennel

    def add_alias(self, kennel_id: str, alias: str) -> None:
        self.aliases.append((kennel_id, alias))

    def link_kennel(self, source_id: str, kennel_id: str) -> None:
        self.source_kennels.add((source_id, kennel_id))

    # Sources and kennels.

    async def get_source(self, source_id: str) -> SourceRecord | None:
        return self.sources.get(source_id)

    async def list_linked_kennel_ids(self, source_id: str) -> set[str]:
        return {kennel_id for linked_source, kennel_id in self.source_kennels if linked_source == source_id}

    async def find_kennel_id_by_short_name(self, short_name: str, *, source_id: str | None = None) -> str | None:
        self.lookups += 1
        wanted = short_name.casefold()
        linked = await self.list_linked_kennel_ids(source_id) if source_id else None
        for kennel in sorted(self.kennels.values(), key=lambda row: row.id):
            if kennel.short_name.casefold() != wanted:
                continue
            if linked is not None and kennel.id not in linked:
                continue
            return kennel.id
        return None

    async def find_kennel_id_by_alias(self, alias: str) -> str | None:
        self.lookups += 1
        wanted = alias.casefold()
        for kennel_id, value in self.aliases:
            if value.casefold() == wanted:
                return kennel_id
        return None

    async def get_kennel(self, kennel_id: str) -> KennelRecord | None:
        return self.kennels.get(kennel_id)

    async def update_source_health(
        self,
        source_id: str,
        *,
        health_status: str,
        last_scrape_at: datetime,
        last_success_at: datetime | None = None,
    ) -> None:
        source = self._require(self.sources, source_id, "source")
        source.health_status = health_status  # type: ignore[assignment]
        source.last_scrape_at = last_scrape_at
        if last_success_at is not None:
            source.last_success_at = last_success_at

    # Raw events.

    async def find_raw_event(self, source_id: str, fingerprint: str) -> RawEventRecord | None:
        for raw_event in self.raw_events.values():
            if raw_event.source_id == source_id and raw_event.fingerprint == fingerprint:
                return raw_event
        return None

    async def create_raw_event(self, source_id: str, fingerprint: str, raw_data: dict[str, Any]) -> RawEventRecord:
        if await self.find_raw_event(source_id, fingerprint) is not None:
            raise RepositoryConflictError(f"raw event already exists for fingerprint {fingerprint}")
        raw_event = RawEventRecord(
            id=str(uuid4()),
            source_id=source_id,
            fingerprint=fingerprint,
            raw_data=copy.deepcopy(raw_data),
            scraped_at=_now(),
        )
        self.raw_events[raw_event.id] = raw_event
        return raw_event

    async def mark_raw_event_processed(self, raw_event_id: str, event_id: str) -> None:
        raw_event = self._require(self.raw_events, raw_event_id, "raw event")
        raw_event.processed = True
        raw_event.event_id = event_id

    async def delete_raw_events(self, source_id: str) -> int:
        doomed = [raw_id for raw_id, row in self.raw_events.items() if row.source_id == source_id]
        for raw_id in doomed:
            del self.raw_events[raw_id]
        return len(doomed)

    async def find_event_ids_with_other_sources(self, event_ids: list[str], source_id: str) -> set[str]:
        wanted = set(event_ids)
        return {
            row.event_id
            for row in self.raw_events.values()
            if row.event_id in wanted and row.source_id != source_id
        }

    # Canonical events.

    async def get_event(self, event_id: str) -> EventRecord | None:
        event = self.events.get(event_id)
        return replace(event) if event is not None else None

    async def upsert_event(
        self,
        *,
        kennel_id: str,
        event_date: date,
        create: dict[str, Any],
        merge: EventMerge,
    ) -> tuple[EventRecord, bool]:
        async with self._event_lock:
            existing = next(
                (row for row in self.events.values() if row.kennel_id == kennel_id and row.date == event_date),
                None,
            )
            now = _now()
            if existing is None:
                fields = {key: value for key, value in create.items() if key not in {"kennel_id", "date"}}
                event = EventRecord(
                    id=str(uuid4()),
                    kennel_id=kennel_id,
                    date=event_date,
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
                self.events[event.id] = event
                return replace(event), True

            changes = merge(replace(existing))
            if changes:
                self._apply(existing, changes)
                existing.updated_at = now
            return replace(existing), False

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> None:
        event = self._require(self.events, event_id, "event")
        self._apply(event, changes)
        event.updated_at = _now()

    async def list_events_by_ids(self, event_ids: list[str]) -> list[EventRecord]:
        rows = [replace(self.events[event_id]) for event_id in set(event_ids) if event_id in self.events]
        return sorted(rows, key=lambda row: (row.date, row.id))

    async def mark_series(self, parent_id: str, child_ids: list[str]) -> None:
        parent = self._require(self.events, parent_id, "event")
        parent.is_series_parent = True
        for child_id in child_ids:
            self._require(self.events, child_id, "event").parent_event_id = parent_id

    async def list_confirmed_events(self, kennel_ids: Iterable[str], start: date, end: date) -> list[EventRecord]:
        wanted = set(kennel_ids)
        return [
            replace(row)
            for row in self.events.values()
            if row.kennel_id in wanted and row.status == "CONFIRMED" and start <= row.date <= end
        ]

    async def cancel_events(self, event_ids: list[str]) -> int:
        cancelled = 0
        now = _now()
        for event_id in event_ids:
            event = self.events.get(event_id)
            if event is None or event.status == "CANCELLED":
                continue
            event.status = "CANCELLED"
            event.updated_at = now
            cancelled += 1
        return cancelled

    async def add_event_link(self, event_id: str, url: str, label: str, source_id: str | None) -> bool:
        for link in self.event_links.values():
            if link.event_id == event_id and link.url == url:
                return False
        link = EventLinkRecord(id=str(uuid4()), event_id=event_id, url=url, label=label, source_id=source_id)
        self.event_links[link.id] = link
        return True

    async def list_event_links(self, event_id: str) -> list[EventLinkRecord]:
        return [link for link in self.event_links.values() if link.event_id == event_id]

    # Scrape logs.

    async def create_scrape_log(self, source_id: str, *, forced: bool) -> ScrapeLogRecord:
        log = ScrapeLogRecord(id=str(uuid4()), source_id=source_id, status="RUNNING", started_at=_now(), forced=forced)
        self.scrape_logs[log.id] = log
        return replace(log)

    async def update_scrape_log(self, log_id: str, changes: dict[str, Any]) -> None:
        self._apply(self._require(self.scrape_logs, log_id, "scrape log"), changes)

    async def list_recent_scrape_logs(
        self,
        source_id: str,
        *,
        exclude_id: str | None,
        limit: int,
        status: str | None = None,
    ) -> list[ScrapeLogRecord]:
        rows = [
            row
            for row in reversed(list(self.scrape_logs.values()))
            if row.source_id == source_id
            and row.id != exclude_id
            and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: row.started_at, reverse=True)
        return [replace(row) for row in rows[:limit]]

    # Alerts.

    async def get_alert(self, alert_id: str) -> AlertRecord | None:
        alert = self.alerts.get(alert_id)
        return replace(alert) if alert is not None else None

    async def find_alert(self, source_id: str, alert_type: str, statuses: Iterable[str]) -> AlertRecord | None:
        matches = await self.list_alerts(source_id=source_id, alert_type=alert_type, statuses=statuses)
        return matches[0] if matches else None

    async def list_alerts(
        self,
        *,
        source_id: str | None = None,
        alert_type: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[AlertRecord]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            row
            for row in self.alerts.values()
            if (source_id is None or row.source_id == source_id)
            and (alert_type is None or row.type == alert_type)
            and (wanted is None or row.status in wanted)
        ]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return [replace(row) for row in rows]

    async def create_alert(self, **fields: Any) -> AlertRecord:
        now = _now()
        fields.setdefault("status", "OPEN")
        if fields["status"] in UNRESOLVED_ALERT_STATUSES and any(
            alert.source_id == fields["source_id"]
            and alert.type == fields["type"]
            and alert.status in UNRESOLVED_ALERT_STATUSES
            for alert in self.alerts.values()
        ):
            raise RepositoryConflictError("source already has an unresolved alert of this type")
        alert = AlertRecord(id=str(uuid4()), created_at=now, updated_at=now, **fields)
        self.alerts[alert.id] = alert
        return replace(alert)

    async def update_alert(self, alert_id: str, changes: dict[str, Any]) -> AlertRecord:
        alert = self._require(self.alerts, alert_id, "alert")
        self._apply(alert, changes)
        alert.updated_at = _now()
        return replace(alert)

    @staticmethod
    def _apply(record: Any, changes: dict[str, Any]) -> None:
        for key, value in changes.items():
            if not hasattr(record, key):
                raise AttributeError(f"{type(record).__name__} has no field {key}")
            setattr(record, key, copy.deepcopy(value))

    @staticmethod
    def _require(table: dict[str, Any], key: str, label: str) -> Any:
        row = table.get(key)
        if row is None:
            raise RepositoryNotFoundError(f"{label} not found: {key}")
        return row


def _now() -> datetime:
    return datetime.now(timezone.utc)


STORE = InMemoryStore()
