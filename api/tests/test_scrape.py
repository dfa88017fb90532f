import asyncio

import pytest

from hareline.pipeline.scrape import PushedScrapeAdapter, scrape_source
from hareline.schemas.events import RawEventData, ScrapeResult
from hareline.services.records import SourceRecord
from hareline.services.repository import RepositoryNotFoundError
from hareline.services.store import InMemoryStore


class ExplodingAdapter:
    async def fetch(self, source: SourceRecord, *, days: int) -> ScrapeResult:
        raise RuntimeError("connection reset")


def _store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_source("src-site")
    store.add_kennel("k-nych3", "NYCH3", region="New York City, NY")
    store.link_kennel("src-site", "k-nych3")
    return store


def _result(*dates: str, errors: list[str] | None = None, structure_hash: str | None = None) -> ScrapeResult:
    return ScrapeResult(
        events=[RawEventData(date=value, kennel_tag="NYCH3", title=f"Trail {value}") for value in dates],
        errors=errors or [],
        structure_hash=structure_hash,
    )


def test_successful_scrape_records_log_and_health() -> None:
    store = _store()

    result = asyncio.run(scrape_source(store, "src-site", PushedScrapeAdapter(_result("2026-11-01", "2026-11-08"))))

    assert result.success
    assert result.created == 2
    assert result.health_status == "HEALTHY"
    log = store.scrape_logs[result.scrape_log_id]
    assert log.status == "SUCCESS"
    assert log.events_found == 2
    assert log.events_created == 2
    assert log.fill_rate_title == 100
    assert log.completed_at is not None
    source = store.sources["src-site"]
    assert source.health_status == "HEALTHY"
    assert source.last_success_at is not None


def test_adapter_errors_mark_log_failed_but_still_merge() -> None:
    store = _store()

    result = asyncio.run(
        scrape_source(store, "src-site", PushedScrapeAdapter(_result("2026-11-01", errors=["page 2 timed out"])))
    )

    assert result.success
    assert result.created == 1
    assert result.health_status == "FAILING"
    assert store.scrape_logs[result.scrape_log_id].status == "FAILED"
    assert store.sources["src-site"].last_success_at is None
    assert [alert.type for alert in store.alerts.values()] == ["SCRAPE_FAILURE"]


def test_unexpected_failure_is_captured_not_raised() -> None:
    store = _store()

    result = asyncio.run(scrape_source(store, "src-site", ExplodingAdapter()))

    assert not result.success
    assert result.errors == ["connection reset"]
    assert store.scrape_logs[result.scrape_log_id].status == "FAILED"
    assert store.sources["src-site"].health_status == "FAILING"


def test_unknown_source_raises() -> None:
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(scrape_source(_store(), "missing", PushedScrapeAdapter(_result())))


def test_force_reprocesses_previously_seen_items() -> None:
    store = _store()
    adapter = PushedScrapeAdapter(_result("2026-11-01"))
    asyncio.run(scrape_source(store, "src-site", adapter))

    normal = asyncio.run(scrape_source(store, "src-site", adapter))
    forced = asyncio.run(scrape_source(store, "src-site", adapter, force=True))

    assert normal.skipped == 1
    assert forced.skipped == 0
    assert forced.updated == 1
    assert forced.forced
    assert store.scrape_logs[forced.scrape_log_id].forced


def test_scrape_cancels_events_the_source_dropped() -> None:
    store = _store()
    asyncio.run(scrape_source(store, "src-site", PushedScrapeAdapter(_result("2026-11-01", "2026-11-08"))))

    result = asyncio.run(scrape_source(store, "src-site", PushedScrapeAdapter(_result("2026-11-01")), days=3650))

    assert result.cancelled == 1
    statuses = {event.date.isoformat(): event.status for event in store.events.values()}
    assert statuses == {"2026-11-01": "CONFIRMED", "2026-11-08": "CANCELLED"}


def test_structure_alert_auto_resolves_when_hash_returns() -> None:
    store = _store()
    dates = ("2026-11-01", "2026-11-08")
    asyncio.run(scrape_source(store, "src-site", PushedScrapeAdapter(_result(*dates, structure_hash="a"))))
    asyncio.run(scrape_source(store, "src-site", PushedScrapeAdapter(_result(*dates, structure_hash="b"))))

    structure = [alert for alert in store.alerts.values() if alert.type == "STRUCTURE_CHANGE"]
    assert len(structure) == 1
    assert structure[0].status == "OPEN"

    asyncio.run(scrape_source(store, "src-site", PushedScrapeAdapter(_result(*dates, structure_hash="b"))))

    assert store.alerts[structure[0].id].status == "RESOLVED"
    assert store.alerts[structure[0].id].details.endswith("[Auto-resolved: structure stabilized on subsequent scrape]")
