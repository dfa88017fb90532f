from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from opentelemetry import trace

from hareline.core.config import Settings, get_settings
from hareline.core.urls import same_url
from hareline.pipeline.dates import compose_utc_start, parse_event_date, region_timezone, utc_noon
from hareline.pipeline.fingerprint import generate_fingerprint
from hareline.pipeline.kennel_resolver import KennelResolver
from hareline.schemas.events import ExternalLink, RawEventData
from hareline.services.records import EventRecord
from hareline.services.store import CatalogStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Adapter attribute -> canonical event column. Present-but-empty values clear the column.
TEXT_FIELD_COLUMNS = (
    ("title", "title"),
    ("description", "description"),
    ("hares", "hares"),
    ("location", "location_name"),
    ("location_url", "location_url"),
)


@dataclass(slots=True)
class EventSample:
    reason: str
    kennel_tag: str
    event: dict[str, Any]
    suggested_action: str | None = None


@dataclass(slots=True)
class MergeResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    blocked: int = 0
    unmatched_tags: list[str] = field(default_factory=list)
    blocked_tags: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    event_errors: int = 0
    merge_error_details: list[dict[str, Any]] = field(default_factory=list)
    sample_blocked: list[EventSample] = field(default_factory=list)
    sample_skipped: list[EventSample] = field(default_factory=list)

    def samples_as_json(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        return [asdict(row) for row in self.sample_blocked], [asdict(row) for row in self.sample_skipped]


@dataclass(slots=True)
class _RunContext:
    source_id: str
    trust_level: int
    linked_kennel_ids: set[str]
    result: MergeResult
    region_cache: dict[str, str] = field(default_factory=dict)
    series_groups: dict[str, list[str]] = field(default_factory=dict)


def build_trust_update(
    existing: EventRecord,
    incoming: RawEventData,
    *,
    trust_level: int,
    timezone_name: str,
) -> dict[str, Any]:
    """Changes to apply to ``existing`` for an incoming item, or ``{}`` when outranked.

    Equal trust overwrites, so the most recent of equally trusted sources wins.
    Fields the adapter never set are left alone; fields it set to ``None`` or
    an empty string are cleared.
    """
    if trust_level < existing.trust_level:
        return {}

    provided = incoming.model_fields_set
    changes: dict[str, Any] = {"trust_level": trust_level, "timezone": timezone_name}
    for attribute, column in TEXT_FIELD_COLUMNS:
        if attribute in provided:
            changes[column] = _clean_text(getattr(incoming, attribute))

    if incoming.run_number is not None:
        changes["run_number"] = incoming.run_number
    start_time = _clean_text(incoming.start_time)
    if start_time:
        changes["start_time"] = start_time
    if not existing.source_url and incoming.source_url:
        changes["source_url"] = incoming.source_url

    effective_start = changes.get("start_time", existing.start_time)
    changes["date_utc"] = compose_utc_start(existing.date, effective_start, timezone_name) or utc_noon(existing.date)
    return changes


class MergeEngine:
    def __init__(
        self,
        store: CatalogStore,
        *,
        resolver: KennelResolver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver if resolver is not None else KennelResolver(store)
        self.settings = settings or get_settings()

    async def process(
        self,
        source_id: str,
        raw_events: Sequence[RawEventData | Mapping[str, Any]],
    ) -> MergeResult:
        """Merge one batch of adapter output for a source into the canonical catalog."""
        source = await self.store.get_source(source_id)
        trust_level = source.trust_level if source is not None else self.settings.default_trust_level
        ctx = _RunContext(
            source_id=source_id,
            trust_level=trust_level,
            linked_kennel_ids=await self.store.list_linked_kennel_ids(source_id),
            result=MergeResult(),
        )
        self.resolver.clear_cache()

        with tracer.start_as_current_span("merge.process") as span:
            span.set_attribute("source.id", source_id)
            span.set_attribute("merge.batch_size", len(raw_events))
            for item in raw_events:
                await self._process_one(item, ctx)
            await self._link_series(ctx.series_groups)

        result = ctx.result
        logger.info(
            "merge complete source_id=%s created=%s updated=%s skipped=%s blocked=%s unmatched=%s errors=%s",
            source_id,
            result.created,
            result.updated,
            result.skipped,
            result.blocked,
            len(result.unmatched_tags),
            result.event_errors,
        )
        return result

    async def _process_one(self, item: RawEventData | Mapping[str, Any], ctx: _RunContext) -> None:
        fingerprint: str | None = None
        try:
            event = item if isinstance(item, RawEventData) else RawEventData.model_validate(item)
            fingerprint = generate_fingerprint(event)

            existing_raw = await self.store.find_raw_event(ctx.source_id, fingerprint)
            if existing_raw is not None:
                ctx.result.skipped += 1
                if existing_raw.processed and existing_raw.event_id:
                    await self._refresh_processed_duplicate(event, existing_raw.event_id, ctx)
                elif not existing_raw.processed:
                    await self._sample_unprocessed_duplicate(event, ctx)
                return

            raw_event = await self.store.create_raw_event(ctx.source_id, fingerprint, event.snapshot())

            kennel_id = await self._resolve_and_guard(event, ctx)
            if kennel_id is None:
                return

            event_id = await self._upsert_canonical_event(event, kennel_id, ctx)
            await self.store.mark_raw_event_processed(raw_event.id, event_id)
            await self._record_external_links(event_id, event.external_links, ctx)

            if event.series_id:
                ctx.series_groups.setdefault(event.series_id, []).append(event_id)
        except Exception as exc:
            event_date, kennel_tag = _describe(item)
            logger.exception("merge error source_id=%s date=%s kennel_tag=%s", ctx.source_id, event_date, kennel_tag)
            ctx.result.event_errors += 1
            limit = self.settings.max_merge_errors
            if len(ctx.result.errors) < limit:
                ctx.result.errors.append(f"{event_date}/{kennel_tag}: {exc}")
            if len(ctx.result.merge_error_details) < limit:
                ctx.result.merge_error_details.append({"fingerprint": fingerprint, "reason": str(exc)})

    async def _resolve_and_guard(self, event: RawEventData, ctx: _RunContext) -> str | None:
        if not event.kennel_tag.strip():
            raise ValueError("kennel tag is empty")
        resolved = await self.resolver.resolve(event.kennel_tag, ctx.source_id)
        if not resolved.matched or not resolved.kennel_id:
            if event.kennel_tag not in ctx.result.unmatched_tags:
                ctx.result.unmatched_tags.append(event.kennel_tag)
            self._add_unmatched_sample(event, ctx)
            return None

        if resolved.kennel_id not in ctx.linked_kennel_ids:
            ctx.result.blocked += 1
            if event.kennel_tag not in ctx.result.blocked_tags:
                ctx.result.blocked_tags.append(event.kennel_tag)
            await self._add_blocked_sample(event, resolved.kennel_id, ctx)
            return None

        return resolved.kennel_id

    async def _upsert_canonical_event(self, event: RawEventData, kennel_id: str, ctx: _RunContext) -> str:
        event_date = parse_event_date(event.date)
        timezone_name = await self._kennel_timezone(kennel_id, ctx)
        start_time = _clean_text(event.start_time)
        create = {
            "date_utc": compose_utc_start(event_date, start_time, timezone_name) or utc_noon(event_date),
            "timezone": timezone_name,
            "trust_level": ctx.trust_level,
            "run_number": event.run_number,
            "title": _clean_text(event.title),
            "description": _clean_text(event.description),
            "hares": _clean_text(event.hares),
            "location_name": _clean_text(event.location),
            "location_url": _clean_text(event.location_url),
            "start_time": start_time,
            "source_url": event.source_url,
        }
        previous: list[EventRecord] = []

        def merge(existing: EventRecord) -> dict[str, Any]:
            previous.append(existing)
            return build_trust_update(existing, event, trust_level=ctx.trust_level, timezone_name=timezone_name)

        record, created = await self.store.upsert_event(
            kennel_id=kennel_id,
            event_date=event_date,
            create=create,
            merge=merge,
        )
        if created:
            ctx.result.created += 1
            return record.id

        ctx.result.updated += 1
        recorded_url = previous[0].source_url if previous else record.source_url
        if event.source_url and recorded_url and not same_url(event.source_url, recorded_url):
            await self.store.add_event_link(record.id, event.source_url, "Source", ctx.source_id)
        return record.id

    async def _refresh_processed_duplicate(self, event: RawEventData, event_id: str, ctx: _RunContext) -> None:
        resolved = await self.resolver.resolve(event.kennel_tag, ctx.source_id)
        if resolved.matched and resolved.kennel_id and resolved.kennel_id in ctx.linked_kennel_ids:
            timezone_name = await self._kennel_timezone(resolved.kennel_id, ctx)
            composed = compose_utc_start(parse_event_date(event.date), _clean_text(event.start_time), timezone_name)
            if composed is not None:
                current = await self.store.get_event(event_id)
                if current is not None and ctx.trust_level >= current.trust_level:
                    if current.date_utc != composed or current.timezone != timezone_name:
                        await self.store.update_event(event_id, {"date_utc": composed, "timezone": timezone_name})
        await self._record_external_links(event_id, event.external_links, ctx)

    async def _sample_unprocessed_duplicate(self, event: RawEventData, ctx: _RunContext) -> None:
        limit = self.settings.max_diagnostic_samples
        if len(ctx.result.sample_skipped) >= limit and len(ctx.result.sample_blocked) >= limit:
            return
        resolved = await self.resolver.resolve(event.kennel_tag, ctx.source_id)
        if not resolved.matched or not resolved.kennel_id:
            self._add_unmatched_sample(event, ctx)
        elif resolved.kennel_id not in ctx.linked_kennel_ids:
            await self._add_blocked_sample(event, resolved.kennel_id, ctx)

    def _add_unmatched_sample(self, event: RawEventData, ctx: _RunContext) -> None:
        if len(ctx.result.sample_skipped) >= self.settings.max_diagnostic_samples:
            return
        ctx.result.sample_skipped.append(
            EventSample(
                reason="UNMATCHED_TAG",
                kennel_tag=event.kennel_tag,
                event=event.snapshot(),
                suggested_action=f'Create kennel or alias for "{event.kennel_tag}"',
            )
        )

    async def _add_blocked_sample(self, event: RawEventData, kennel_id: str, ctx: _RunContext) -> None:
        if len(ctx.result.sample_blocked) >= self.settings.max_diagnostic_samples:
            return
        kennel = await self.store.get_kennel(kennel_id)
        ctx.result.sample_blocked.append(
            EventSample(
                reason="SOURCE_KENNEL_MISMATCH",
                kennel_tag=event.kennel_tag,
                event=event.snapshot(),
                suggested_action=f"Link {kennel.short_name if kennel else kennel_id} to this source",
            )
        )

    async def _record_external_links(self, event_id: str, links: list[ExternalLink], ctx: _RunContext) -> None:
        for link in links:
            await self.store.add_event_link(event_id, link.url, link.label, ctx.source_id)

    async def _kennel_timezone(self, kennel_id: str, ctx: _RunContext) -> str:
        region = ctx.region_cache.get(kennel_id)
        if region is None:
            kennel = await self.store.get_kennel(kennel_id)
            region = (kennel.region if kennel else None) or ""
            ctx.region_cache[kennel_id] = region
        return region_timezone(region)

    async def _link_series(self, series_groups: dict[str, list[str]]) -> None:
        for series_id, event_ids in series_groups.items():
            unique_ids = list(dict.fromkeys(event_ids))
            if len(unique_ids) < 2:
                continue
            try:
                members = await self.store.list_events_by_ids(unique_ids)
                if len(members) < 2:
                    continue
                ordered = sorted(members, key=lambda row: (row.date, row.id))
                await self.store.mark_series(ordered[0].id, [row.id for row in ordered[1:]])
            except Exception:
                logger.exception("series linking failed series_id=%s", series_id)


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _describe(item: RawEventData | Mapping[str, Any]) -> tuple[str, str]:
    if isinstance(item, RawEventData):
        return item.date, item.kennel_tag
    if isinstance(item, Mapping):
        return str(item.get("date", "?")), str(item.get("kennelTag", item.get("kennel_tag", "?")))
    return "?", "?"
