from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from opentelemetry import trace

from hareline.core.config import Settings, get_settings
from hareline.pipeline.alerts import AlertLifecycleManager
from hareline.pipeline.fill_rates import compute_fill_rates
from hareline.pipeline.health import HealthInput, analyze_health
from hareline.pipeline.merge import MergeEngine
from hareline.pipeline.reconcile import reconcile_stale_events
from hareline.schemas.events import ScrapeResult
from hareline.services.records import SourceHealth, SourceRecord
from hareline.services.repository import RepositoryNotFoundError
from hareline.services.store import CatalogStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class SourceAdapter(Protocol):
    async def fetch(self, source: SourceRecord, *, days: int) -> ScrapeResult: ...


class PushedScrapeAdapter:
    """Adapter over a result an external connector already fetched and posted to us."""

    def __init__(self, result: ScrapeResult) -> None:
        self.result = result

    async def fetch(self, source: SourceRecord, *, days: int) -> ScrapeResult:
        return self.result


@dataclass(slots=True)
class ScrapeSourceResult:
    success: bool
    scrape_log_id: str
    forced: bool
    health_status: SourceHealth
    events_found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    blocked: int = 0
    cancelled: int = 0
    unmatched_tags: list[str] = field(default_factory=list)
    blocked_tags: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


async def scrape_source(
    store: CatalogStore,
    source_id: str,
    adapter: SourceAdapter,
    days: int | None = None,
    force: bool = False,
    settings: Settings | None = None,
) -> ScrapeSourceResult:
    """Run one fetch, merge, reconcile and health pass for a source.

    Raises ``RepositoryNotFoundError`` for an unknown source. Any later failure
    is recorded on the scrape log and the source, never raised.
    """
    settings = settings or get_settings()
    window_days = days or settings.scrape_window_days

    source = await store.get_source(source_id)
    if source is None:
        raise RepositoryNotFoundError(f"source not found: {source_id}")

    started = time.monotonic()
    scrape_log = await store.create_scrape_log(source_id, forced=force)

    with tracer.start_as_current_span("scrape.run") as span:
        span.set_attribute("source.id", source_id)
        span.set_attribute("scrape.forced", force)
        span.set_attribute("scrape.days", window_days)
        try:
            return await _run(store, source, scrape_log.id, adapter, window_days, force, settings, started)
        except Exception as exc:
            logger.exception("scrape failed source_id=%s scrape_log_id=%s", source_id, scrape_log.id)
            span.record_exception(exc)
            message = str(exc) or type(exc).__name__
            await store.update_scrape_log(
                scrape_log.id,
                {
                    "status": "FAILED",
                    "completed_at": datetime.now(timezone.utc),
                    "duration_ms": _elapsed_ms(started),
                    "errors": [message],
                },
            )
            await store.update_source_health(
                source_id,
                health_status="FAILING",
                last_scrape_at=datetime.now(timezone.utc),
            )
            return ScrapeSourceResult(
                success=False,
                scrape_log_id=scrape_log.id,
                forced=force,
                health_status="FAILING",
                errors=[message],
            )


async def _run(
    store: CatalogStore,
    source: SourceRecord,
    scrape_log_id: str,
    adapter: SourceAdapter,
    window_days: int,
    force: bool,
    settings: Settings,
    started: float,
) -> ScrapeSourceResult:
    if force:
        deleted = await store.delete_raw_events(source.id)
        logger.info("forced scrape cleared raw events source_id=%s deleted=%s", source.id, deleted)

    scrape_result = await adapter.fetch(source, days=window_days)
    fetch_failed = bool(scrape_result.errors)

    engine = MergeEngine(store, settings=settings)
    with tracer.start_as_current_span("scrape.merge"):
        merge_result = await engine.process(source.id, scrape_result.events)
    fill_rates = compute_fill_rates(scrape_result.events)

    cancelled = 0
    if settings.reconcile_enabled and not fetch_failed and scrape_result.events:
        with tracer.start_as_current_span("scrape.reconcile"):
            reconciled = await reconcile_stale_events(
                store,
                source.id,
                scrape_result.events,
                window_days,
                resolver=engine.resolver,
            )
        cancelled = reconciled.cancelled

    error_details: dict[str, Any] | None = None
    if scrape_result.error_details is not None or merge_result.merge_error_details:
        error_details = (
            scrape_result.error_details.model_dump() if scrape_result.error_details is not None else {}
        )
        error_details.setdefault("fetch", [])
        error_details.setdefault("parse", [])
        error_details["merge"] = list(error_details.get("merge") or []) + merge_result.merge_error_details

    errors = list(scrape_result.errors) + merge_result.errors
    sample_blocked, sample_skipped = merge_result.samples_as_json()
    completed_at = datetime.now(timezone.utc)
    await store.update_scrape_log(
        scrape_log_id,
        {
            "status": "FAILED" if fetch_failed else "SUCCESS",
            "completed_at": completed_at,
            "duration_ms": _elapsed_ms(started),
            "events_found": len(scrape_result.events),
            "events_created": merge_result.created,
            "events_updated": merge_result.updated,
            "events_skipped": merge_result.skipped,
            "events_blocked": merge_result.blocked,
            "events_cancelled": cancelled,
            "unmatched_tags": merge_result.unmatched_tags,
            "blocked_tags": merge_result.blocked_tags,
            "errors": errors,
            "error_details": error_details,
            "fill_rate_title": fill_rates.title,
            "fill_rate_location": fill_rates.location,
            "fill_rate_hares": fill_rates.hares,
            "fill_rate_start_time": fill_rates.start_time,
            "fill_rate_run_number": fill_rates.run_number,
            "structure_hash": scrape_result.structure_hash,
            "sample_blocked": sample_blocked,
            "sample_skipped": sample_skipped,
            "diagnostic_context": scrape_result.diagnostic_context,
        },
    )

    with tracer.start_as_current_span("scrape.health"):
        analysis = await analyze_health(
            store,
            source.id,
            scrape_log_id,
            HealthInput(
                events_found=len(scrape_result.events),
                scrape_failed=fetch_failed,
                errors=list(scrape_result.errors),
                unmatched_tags=merge_result.unmatched_tags,
                blocked_tags=merge_result.blocked_tags,
                fill_rates=fill_rates,
                structure_hash=scrape_result.structure_hash,
            ),
            baseline_runs=settings.health_baseline_runs,
            failure_window=settings.health_failure_window,
        )
        alerts = AlertLifecycleManager(store)
        await alerts.persist(source.id, scrape_log_id, analysis.alerts)
        for alert_type in analysis.resolve_types:
            await alerts.auto_resolve(source.id, alert_type)

    await store.update_source_health(
        source.id,
        health_status=analysis.health_status,
        last_scrape_at=completed_at,
        last_success_at=None if fetch_failed else completed_at,
    )

    logger.info(
        "scrape complete source_id=%s status=%s found=%s created=%s updated=%s cancelled=%s health=%s",
        source.id,
        "FAILED" if fetch_failed else "SUCCESS",
        len(scrape_result.events),
        merge_result.created,
        merge_result.updated,
        cancelled,
        analysis.health_status,
    )
    return ScrapeSourceResult(
        success=True,
        scrape_log_id=scrape_log_id,
        forced=force,
        health_status=analysis.health_status,
        events_found=len(scrape_result.events),
        created=merge_result.created,
        updated=merge_result.updated,
        skipped=merge_result.skipped,
        blocked=merge_result.blocked,
        cancelled=cancelled,
        unmatched_tags=merge_result.unmatched_tags,
        blocked_tags=merge_result.blocked_tags,
        errors=errors,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
