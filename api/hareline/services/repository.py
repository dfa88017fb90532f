from __future__ import annotations

import json
from dataclasses import fields
from datetime import date, datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Callable, Iterable

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc  # type: ignore[import-untyped]

from hareline.core.config import get_settings
from hareline.services.records import (
    AlertRecord,
    EventLinkRecord,
    EventRecord,
    KennelRecord,
    RawEventRecord,
    ScrapeLogRecord,
    SourceRecord,
)

if TYPE_CHECKING:
    from hareline.services.store import CatalogStore


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


def _columns(record_type: type) -> tuple[str, ...]:
    return tuple(item.name for item in fields(record_type))


SOURCE_COLUMNS = _columns(SourceRecord)
KENNEL_COLUMNS = _columns(KennelRecord)
RAW_EVENT_COLUMNS = _columns(RawEventRecord)
EVENT_COLUMNS = _columns(EventRecord)
EVENT_LINK_COLUMNS = _columns(EventLinkRecord)
SCRAPE_LOG_COLUMNS = _columns(ScrapeLogRecord)
ALERT_COLUMNS = _columns(AlertRecord)

SCRAPE_LOG_JSON_COLUMNS = {"error_details", "sample_blocked", "sample_skipped", "diagnostic_context"}
ALERT_JSON_COLUMNS = {"context"}
RAW_EVENT_JSON_COLUMNS = {"raw_data"}

# Columns the database assigns; never written from a change set.
_SERVER_COLUMNS = {"id", "created_at", "updated_at"}


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Sources and kennels.

    async def get_source(self, source_id: str) -> SourceRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_select(SOURCE_COLUMNS)} from sources where id = $1", source_id)
        return SourceRecord(**dict(row)) if row else None

    async def list_linked_kennel_ids(self, source_id: str) -> set[str]:
        pool = await self._get_pool()
        rows = await pool.fetch("select kennel_id from source_kennels where source_id = $1", source_id)
        return {row["kennel_id"] for row in rows}

    async def find_kennel_id_by_short_name(self, short_name: str, *, source_id: str | None = None) -> str | None:
        pool = await self._get_pool()
        if source_id:
            return await pool.fetchval(
                """
                select k.id
                from kennels k
                join source_kennels sk on sk.kennel_id = k.id
                where sk.source_id = $2 and lower(k.short_name) = lower($1)
                order by k.id
                limit 1
                """,
                short_name,
                source_id,
            )
        return await pool.fetchval(
            "select id from kennels where lower(short_name) = lower($1) order by id limit 1",
            short_name,
        )

    async def find_kennel_id_by_alias(self, alias: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            "select kennel_id from kennel_aliases where lower(alias) = lower($1) order by kennel_id limit 1",
            alias,
        )

    async def get_kennel(self, kennel_id: str) -> KennelRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_select(KENNEL_COLUMNS)} from kennels where id = $1", kennel_id)
        return KennelRecord(**dict(row)) if row else None

    async def update_source_health(
        self,
        source_id: str,
        *,
        health_status: str,
        last_scrape_at: datetime,
        last_success_at: datetime | None = None,
    ) -> None:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update sources
            set
              health_status = $2,
              last_scrape_at = $3,
              last_success_at = coalesce($4, last_success_at)
            where id = $1
            """,
            source_id,
            health_status,
            last_scrape_at,
            last_success_at,
        )
        if _affected(status) == 0:
            raise RepositoryNotFoundError(f"source not found: {source_id}")

    # Raw events.

    async def find_raw_event(self, source_id: str, fingerprint: str) -> RawEventRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_select(RAW_EVENT_COLUMNS)} from raw_events where source_id = $1 and fingerprint = $2",
            source_id,
            fingerprint,
        )
        return self._raw_event_from_row(row) if row else None

    async def create_raw_event(self, source_id: str, fingerprint: str, raw_data: dict[str, Any]) -> RawEventRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into raw_events (source_id, fingerprint, raw_data)
            values ($1, $2, $3::jsonb)
            on conflict (source_id, fingerprint) do nothing
            returning {_select(RAW_EVENT_COLUMNS)}
            """,
            source_id,
            fingerprint,
            json.dumps(raw_data),
        )
        if row is None:
            raise RepositoryConflictError(f"raw event already exists for fingerprint {fingerprint}")
        return self._raw_event_from_row(row)

    async def mark_raw_event_processed(self, raw_event_id: str, event_id: str) -> None:
        pool = await self._get_pool()
        status = await pool.execute(
            "update raw_events set processed = true, event_id = $2 where id = $1",
            raw_event_id,
            event_id,
        )
        if _affected(status) == 0:
            raise RepositoryNotFoundError(f"raw event not found: {raw_event_id}")

    async def delete_raw_events(self, source_id: str) -> int:
        pool = await self._get_pool()
        return _affected(await pool.execute("delete from raw_events where source_id = $1", source_id))

    async def find_event_ids_with_other_sources(self, event_ids: list[str], source_id: str) -> set[str]:
        if not event_ids:
            return set()
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select distinct event_id
            from raw_events
            where event_id = any($1::text[]) and source_id <> $2
            """,
            event_ids,
            source_id,
        )
        return {row["event_id"] for row in rows}

    # Canonical events.

    async def get_event(self, event_id: str) -> EventRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_select(EVENT_COLUMNS)} from events where id = $1", event_id)
        return EventRecord(**dict(row)) if row else None

    async def upsert_event(
        self,
        *,
        kennel_id: str,
        event_date: date,
        create: dict[str, Any],
        merge: Callable[[EventRecord], dict[str, Any]],
    ) -> tuple[EventRecord, bool]:
        """Insert the (kennel, date) event or apply ``merge`` to the locked existing row.

        Two concurrent writers for the same key serialize on the row lock; the
        loser of an insert race re-reads and merges instead.
        """
        pool = await self._get_pool()
        select_for_update = f"select {_select(EVENT_COLUMNS)} from events where kennel_id = $1 and date = $2 for update"
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(select_for_update, kennel_id, event_date)
                if row is None:
                    values = {key: value for key, value in create.items() if key not in {"kennel_id", "date"}}
                    columns = ["kennel_id", "date", *_checked(values, EVENT_COLUMNS)]
                    placeholders = ", ".join(f"${index}" for index in range(1, len(columns) + 1))
                    row = await conn.fetchrow(
                        f"""
                        insert into events ({", ".join(columns)})
                        values ({placeholders})
                        on conflict (kennel_id, date) do nothing
                        returning {_select(EVENT_COLUMNS)}
                        """,
                        kennel_id,
                        event_date,
                        *values.values(),
                    )
                    if row is not None:
                        return EventRecord(**dict(row)), True
                    row = await conn.fetchrow(select_for_update, kennel_id, event_date)
                    if row is None:
                        raise RepositoryConflictError("failed to resolve existing event after conflict")

                existing = EventRecord(**dict(row))
                changes = merge(existing)
                if not changes:
                    return existing, False
                assignments, params = _assignments(changes, EVENT_COLUMNS, start=2)
                updated = await conn.fetchrow(
                    f"""
                    update events
                    set {assignments}, updated_at = now()
                    where id = $1
                    returning {_select(EVENT_COLUMNS)}
                    """,
                    existing.id,
                    *params,
                )
                return EventRecord(**dict(updated)), False

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> None:
        if not changes:
            return
        pool = await self._get_pool()
        assignments, params = _assignments(changes, EVENT_COLUMNS, start=2)
        status = await pool.execute(
            f"update events set {assignments}, updated_at = now() where id = $1",
            event_id,
            *params,
        )
        if _affected(status) == 0:
            raise RepositoryNotFoundError(f"event not found: {event_id}")

    async def list_events_by_ids(self, event_ids: list[str]) -> list[EventRecord]:
        if not event_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {_select(EVENT_COLUMNS)} from events where id = any($1::text[]) order by date, id",
            list(set(event_ids)),
        )
        return [EventRecord(**dict(row)) for row in rows]

    async def mark_series(self, parent_id: str, child_ids: list[str]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.execute(
                    "update events set is_series_parent = true, updated_at = now() where id = $1",
                    parent_id,
                )
                if _affected(status) == 0:
                    raise RepositoryNotFoundError(f"event not found: {parent_id}")
                if child_ids:
                    await conn.execute(
                        "update events set parent_event_id = $1, updated_at = now() where id = any($2::text[])",
                        parent_id,
                        child_ids,
                    )

    async def list_confirmed_events(self, kennel_ids: Iterable[str], start: date, end: date) -> list[EventRecord]:
        wanted = list(kennel_ids)
        if not wanted:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_select(EVENT_COLUMNS)}
            from events
            where kennel_id = any($1::text[])
              and status = 'CONFIRMED'
              and date between $2 and $3
            order by date, id
            """,
            wanted,
            start,
            end,
        )
        return [EventRecord(**dict(row)) for row in rows]

    async def cancel_events(self, event_ids: list[str]) -> int:
        if not event_ids:
            return 0
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update events
            set status = 'CANCELLED', updated_at = now()
            where id = any($1::text[]) and status <> 'CANCELLED'
            """,
            event_ids,
        )
        return _affected(status)

    async def add_event_link(self, event_id: str, url: str, label: str, source_id: str | None) -> bool:
        pool = await self._get_pool()
        inserted = await pool.fetchval(
            """
            insert into event_links (event_id, url, label, source_id)
            values ($1, $2, $3, $4)
            on conflict (event_id, url) do nothing
            returning id
            """,
            event_id,
            url,
            label,
            source_id,
        )
        return inserted is not None

    async def list_event_links(self, event_id: str) -> list[EventLinkRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {_select(EVENT_LINK_COLUMNS)} from event_links where event_id = $1 order by id",
            event_id,
        )
        return [EventLinkRecord(**dict(row)) for row in rows]

    # Scrape logs.

    async def create_scrape_log(self, source_id: str, *, forced: bool) -> ScrapeLogRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into scrape_logs (source_id, status, forced)
            values ($1, 'RUNNING', $2)
            returning {_select(SCRAPE_LOG_COLUMNS)}
            """,
            source_id,
            forced,
        )
        return self._scrape_log_from_row(row)

    async def update_scrape_log(self, log_id: str, changes: dict[str, Any]) -> None:
        if not changes:
            return
        pool = await self._get_pool()
        assignments, params = _assignments(changes, SCRAPE_LOG_COLUMNS, start=2, json_columns=SCRAPE_LOG_JSON_COLUMNS)
        status = await pool.execute(f"update scrape_logs set {assignments} where id = $1", log_id, *params)
        if _affected(status) == 0:
            raise RepositoryNotFoundError(f"scrape log not found: {log_id}")

    async def list_recent_scrape_logs(
        self,
        source_id: str,
        *,
        exclude_id: str | None,
        limit: int,
        status: str | None = None,
    ) -> list[ScrapeLogRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_select(SCRAPE_LOG_COLUMNS)}
            from scrape_logs
            where source_id = $1
              and ($2::text is null or id <> $2)
              and ($3::text is null or status = $3)
            order by started_at desc, seq desc
            limit $4
            """,
            source_id,
            exclude_id,
            status,
            max(0, limit),
        )
        return [self._scrape_log_from_row(row) for row in rows]

    # Alerts.

    async def get_alert(self, alert_id: str) -> AlertRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_select(ALERT_COLUMNS)} from alerts where id = $1", alert_id)
        return self._alert_from_row(row) if row else None

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
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_select(ALERT_COLUMNS)}
            from alerts
            where ($1::text is null or source_id = $1)
              and ($2::text is null or type = $2)
              and ($3::text[] is null or status = any($3::text[]))
            order by created_at desc, id
            """,
            source_id,
            alert_type,
            list(statuses) if statuses is not None else None,
        )
        return [self._alert_from_row(row) for row in rows]

    async def create_alert(self, **values: Any) -> AlertRecord:
        values.setdefault("status", "OPEN")
        columns = _checked(values, ALERT_COLUMNS)
        params = [_encode(column, values[column], ALERT_JSON_COLUMNS) for column in columns]
        placeholders = ", ".join(
            f"${index}::jsonb" if column in ALERT_JSON_COLUMNS else f"${index}"
            for index, column in enumerate(columns, start=1)
        )
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into alerts ({", ".join(columns)})
                values ({placeholders})
                returning {_select(ALERT_COLUMNS)}
                """,
                *params,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("source already has an unresolved alert of this type") from exc
        return self._alert_from_row(row)

    async def update_alert(self, alert_id: str, changes: dict[str, Any]) -> AlertRecord:
        pool = await self._get_pool()
        assignments, params = _assignments(changes, ALERT_COLUMNS, start=2, json_columns=ALERT_JSON_COLUMNS)
        row = await pool.fetchrow(
            f"""
            update alerts
            set {assignments}, updated_at = now()
            where id = $1
            returning {_select(ALERT_COLUMNS)}
            """,
            alert_id,
            *params,
        )
        if row is None:
            raise RepositoryNotFoundError(f"alert not found: {alert_id}")
        return self._alert_from_row(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("HARELINE_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _raw_event_from_row(cls, row: asyncpg.Record) -> RawEventRecord:
        data = dict(row)
        data["raw_data"] = cls._coerce_json_dict(data["raw_data"])
        return RawEventRecord(**data)

    @classmethod
    def _scrape_log_from_row(cls, row: asyncpg.Record) -> ScrapeLogRecord:
        data = dict(row)
        data["error_details"] = cls._coerce_json_dict(data["error_details"]) or None
        data["diagnostic_context"] = cls._coerce_json_dict(data["diagnostic_context"]) or None
        data["sample_blocked"] = cls._coerce_json_list(data["sample_blocked"])
        data["sample_skipped"] = cls._coerce_json_list(data["sample_skipped"])
        data["unmatched_tags"] = list(data["unmatched_tags"] or [])
        data["blocked_tags"] = list(data["blocked_tags"] or [])
        data["errors"] = list(data["errors"] or [])
        return ScrapeLogRecord(**data)

    @classmethod
    def _alert_from_row(cls, row: asyncpg.Record) -> AlertRecord:
        data = dict(row)
        data["context"] = cls._coerce_json_dict(data["context"])
        return AlertRecord(**data)

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}

    @staticmethod
    def _coerce_json_list(value: Any) -> list[Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if isinstance(value, list):
            return value
        return []


def _select(columns: Iterable[str]) -> str:
    return ", ".join(columns)


def _checked(values: dict[str, Any], allowed: tuple[str, ...]) -> list[str]:
    unknown = sorted(set(values) - set(allowed) | (set(values) & _SERVER_COLUMNS))
    if unknown:
        raise RepositoryValidationError(f"unknown or read-only columns: {', '.join(unknown)}")
    return list(values)


def _assignments(
    changes: dict[str, Any],
    allowed: tuple[str, ...],
    *,
    start: int,
    json_columns: set[str] | frozenset[str] = frozenset(),
) -> tuple[str, list[Any]]:
    columns = _checked(changes, allowed)
    clauses = []
    params = []
    for offset, column in enumerate(columns):
        cast = "::jsonb" if column in json_columns else ""
        clauses.append(f"{column} = ${start + offset}{cast}")
        params.append(_encode(column, changes[column], json_columns))
    return ", ".join(clauses), params


def _encode(column: str, value: Any, json_columns: set[str] | frozenset[str]) -> Any:
    if column in json_columns and value is not None:
        return json.dumps(value)
    return value


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


@lru_cache
def get_repository() -> CatalogStore:
    settings = get_settings()
    if not settings.database_url:
        from hareline.services.store import STORE

        return STORE
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
