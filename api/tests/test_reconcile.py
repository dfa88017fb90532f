import asyncio
from datetime import date, datetime, timedelta, timezone

from hareline.pipeline.dates import utc_noon
from hareline.pipeline.reconcile import reconcile_stale_events
from hareline.schemas.events import RawEventData
from hareline.services.store import InMemoryStore

NOW = datetime(2026, 5, 1, 15, 0, tzinfo=timezone.utc)


def _store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_source("src-site")
    store.add_source("src-calendar")
    store.add_kennel("k-nych3", "NYCH3")
    store.add_kennel("k-boh3", "BoH3")
    store.link_kennel("src-site", "k-nych3")
    return store


def _seed_event(store: InMemoryStore, kennel_id: str, event_date: date, *, raw_sources: tuple[str, ...]) -> str:
    record, _ = asyncio.run(
        store.upsert_event(
            kennel_id=kennel_id,
            event_date=event_date,
            create={"date_utc": utc_noon(event_date), "timezone": "America/New_York", "trust_level": 5},
            merge=lambda existing: {},
        )
    )
    for index, source_id in enumerate(raw_sources):
        raw = asyncio.run(store.create_raw_event(source_id, f"{record.id}-{index}", {"date": event_date.isoformat()}))
        asyncio.run(store.mark_raw_event_processed(raw.id, record.id))
    return record.id


def test_orphaned_event_is_cancelled() -> None:
    store = _store()
    kept = _seed_event(store, "k-nych3", date(2026, 5, 9), raw_sources=("src-site",))
    orphan = _seed_event(store, "k-nych3", date(2026, 5, 16), raw_sources=("src-site",))
    scraped = [RawEventData(date="2026-05-09", kennel_tag="NYCH3")]

    result = asyncio.run(reconcile_stale_events(store, "src-site", scraped, 90, now=NOW))

    assert result.cancelled == 1
    assert result.cancelled_event_ids == [orphan]
    assert store.events[orphan].status == "CANCELLED"
    assert store.events[kept].status == "CONFIRMED"

    again = asyncio.run(reconcile_stale_events(store, "src-site", scraped, 90, now=NOW))

    assert again.cancelled == 0
    assert again.cancelled_event_ids == []


def test_event_backed_by_another_source_survives() -> None:
    store = _store()
    shared = _seed_event(store, "k-nych3", date(2026, 5, 16), raw_sources=("src-site", "src-calendar"))

    result = asyncio.run(reconcile_stale_events(store, "src-site", [], 90, now=NOW))

    assert result.cancelled == 0
    assert store.events[shared].status == "CONFIRMED"


def test_events_outside_window_or_unlinked_kennels_are_untouched() -> None:
    store = _store()
    far_future = _seed_event(store, "k-nych3", (NOW + timedelta(days=120)).date(), raw_sources=("src-site",))
    other_kennel = _seed_event(store, "k-boh3", date(2026, 5, 16), raw_sources=("src-site",))

    result = asyncio.run(reconcile_stale_events(store, "src-site", [], 90, now=NOW))

    assert result.cancelled == 0
    assert store.events[far_future].status == "CONFIRMED"
    assert store.events[other_kennel].status == "CONFIRMED"


def test_source_without_linked_kennels_reconciles_nothing() -> None:
    store = _store()
    _seed_event(store, "k-boh3", date(2026, 5, 16), raw_sources=("src-calendar",))

    result = asyncio.run(reconcile_stale_events(store, "src-calendar", [], 90, now=NOW))

    assert result.cancelled == 0
    assert result.cancelled_event_ids == []
