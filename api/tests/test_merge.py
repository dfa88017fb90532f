import asyncio
from datetime import date, datetime, timezone

from hareline.pipeline.merge import MergeEngine, build_trust_update
from hareline.schemas.events import RawEventData
from hareline.services.records import EventRecord
from hareline.services.store import InMemoryStore


def _store(trust_level: int = 5) -> InMemoryStore:
    store = InMemoryStore()
    store.add_source("src-site", trust_level=trust_level)
    store.add_source("src-calendar", trust_level=3)
    store.add_kennel("k-nych3", "NYCH3", region="New York City, NY")
    store.add_kennel("k-boh3", "BoH3", region="Boston, MA")
    store.link_kennel("src-site", "k-nych3")
    store.link_kennel("src-calendar", "k-nych3")
    return store


def _event(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "date": "2026-03-14",
        "kennelTag": "NYCH3",
        "runNumber": 2100,
        "title": "Pi Day Trail",
        "hares": "Just Simon",
        "location": "Central Park",
        "startTime": "14:00",
        "sourceUrl": "https://hashnyc.com/events/2100",
    }
    payload.update(overrides)
    return payload


def _only_event(store: InMemoryStore) -> EventRecord:
    assert len(store.events) == 1
    return next(iter(store.events.values()))


def test_process_creates_canonical_event_and_marks_raw_processed() -> None:
    store = _store()

    result = asyncio.run(MergeEngine(store).process("src-site", [_event()]))

    assert result.created == 1
    assert result.updated == 0
    event = _only_event(store)
    assert event.kennel_id == "k-nych3"
    assert event.date == date(2026, 3, 14)
    assert event.title == "Pi Day Trail"
    assert event.location_name == "Central Park"
    assert event.trust_level == 5
    assert event.timezone == "America/New_York"
    # 14:00 EDT
    assert event.date_utc == datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)

    raw = next(iter(store.raw_events.values()))
    assert raw.processed
    assert raw.event_id == event.id
    assert raw.raw_data["kennelTag"] == "NYCH3"


def test_event_without_start_time_is_anchored_at_utc_noon() -> None:
    store = _store()
    event = _event()
    del event["startTime"]

    asyncio.run(MergeEngine(store).process("src-site", [event]))

    assert _only_event(store).date_utc == datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def test_reprocessing_same_batch_skips_duplicates() -> None:
    store = _store()
    engine = MergeEngine(store)
    batch = [_event(), _event(date="2026-03-21", runNumber=2101, title="Equinox Trail")]

    first = asyncio.run(engine.process("src-site", batch))
    second = asyncio.run(engine.process("src-site", batch))

    assert first.created == 2
    assert second.created == 0
    assert second.updated == 0
    assert second.skipped == 2
    assert len(store.events) == 2
    assert len(store.raw_events) == 2


def test_processed_duplicate_refreshes_start_instant() -> None:
    store = _store()
    engine = MergeEngine(store)

    asyncio.run(engine.process("src-site", [_event()]))
    result = asyncio.run(engine.process("src-site", [_event(startTime="19:30")]))

    assert result.skipped == 1
    assert _only_event(store).date_utc == datetime(2026, 3, 14, 23, 30, tzinfo=timezone.utc)


def test_unmatched_tag_is_recorded_with_sample() -> None:
    store = _store()

    result = asyncio.run(MergeEngine(store).process("src-site", [_event(kennelTag="Mystery Kennel")]))

    assert result.unmatched_tags == ["Mystery Kennel"]
    assert result.created == 0
    assert store.events == {}
    assert len(result.sample_skipped) == 1
    sample = result.sample_skipped[0]
    assert sample.reason == "UNMATCHED_TAG"
    assert sample.suggested_action == 'Create kennel or alias for "Mystery Kennel"'
    raw = next(iter(store.raw_events.values()))
    assert not raw.processed


def test_kennel_not_linked_to_source_is_blocked() -> None:
    store = _store()

    result = asyncio.run(MergeEngine(store).process("src-site", [_event(kennelTag="BoH3")]))

    assert result.blocked == 1
    assert result.blocked_tags == ["BoH3"]
    assert store.events == {}
    assert result.sample_blocked[0].suggested_action == "Link BoH3 to this source"


def test_blocked_tag_is_recorded_once_per_batch() -> None:
    store = _store()
    batch = [_event(kennelTag="BoH3"), _event(kennelTag="BoH3", date="2026-03-21", runNumber=2101)]

    result = asyncio.run(MergeEngine(store).process("src-site", batch))

    assert result.blocked == 2
    assert result.blocked_tags == ["BoH3"]
    assert store.events == {}


def test_diagnostic_samples_are_capped() -> None:
    store = _store()
    batch = [_event(kennelTag=f"Mystery {index}", runNumber=index) for index in range(6)]

    result = asyncio.run(MergeEngine(store).process("src-site", batch))

    assert len(result.unmatched_tags) == 6
    assert len(result.sample_skipped) == 3


def test_lower_trust_source_cannot_overwrite_but_counts_update() -> None:
    store = _store(trust_level=8)
    asyncio.run(MergeEngine(store).process("src-site", [_event()]))

    result = asyncio.run(
        MergeEngine(store).process("src-calendar", [_event(title="Calendar Title", location="Somewhere Else")])
    )

    assert result.updated == 1
    event = _only_event(store)
    assert event.title == "Pi Day Trail"
    assert event.location_name == "Central Park"
    assert event.trust_level == 8


def test_equal_or_higher_trust_overwrites_present_fields_only() -> None:
    store = _store()
    asyncio.run(MergeEngine(store).process("src-site", [_event()]))

    update = {"date": "2026-03-14", "kennelTag": "NYCH3", "title": "Renamed Trail", "hares": None}
    asyncio.run(MergeEngine(store).process("src-site", [update]))

    event = _only_event(store)
    assert event.title == "Renamed Trail"
    assert event.hares is None
    # absent from the update, kept as is
    assert event.location_name == "Central Park"
    assert event.run_number == 2100
    assert event.start_time == "14:00"


def test_differing_source_url_is_kept_as_link() -> None:
    store = _store()
    asyncio.run(MergeEngine(store).process("src-site", [_event()]))

    asyncio.run(
        MergeEngine(store).process(
            "src-calendar",
            [_event(title="Calendar Copy", sourceUrl="https://calendar.example.com/e/1")],
        )
    )

    event = _only_event(store)
    assert event.source_url == "https://hashnyc.com/events/2100"
    links = asyncio.run(store.list_event_links(event.id))
    assert [(link.url, link.label) for link in links] == [("https://calendar.example.com/e/1", "Source")]


def test_external_links_are_attached_once() -> None:
    store = _store()
    event = _event(externalLinks=[{"url": "https://maps.example.com/x", "label": "Map"}])

    engine = MergeEngine(store)
    asyncio.run(engine.process("src-site", [event]))
    asyncio.run(engine.process("src-site", [event]))

    links = asyncio.run(store.list_event_links(_only_event(store).id))
    assert [(link.url, link.label) for link in links] == [("https://maps.example.com/x", "Map")]


def test_series_members_link_to_earliest_event() -> None:
    store = _store()
    batch = [
        _event(date="2026-06-03", runNumber=None, title="Campout Day 3", seriesId="campout"),
        _event(date="2026-06-01", runNumber=None, title="Campout Day 1", seriesId="campout"),
        _event(date="2026-06-02", runNumber=None, title="Campout Day 2", seriesId="campout"),
    ]

    asyncio.run(MergeEngine(store).process("src-site", batch))

    by_date = {event.date: event for event in store.events.values()}
    parent = by_date[date(2026, 6, 1)]
    assert parent.is_series_parent
    assert by_date[date(2026, 6, 2)].parent_event_id == parent.id
    assert by_date[date(2026, 6, 3)].parent_event_id == parent.id
    assert parent.parent_event_id is None


def test_bad_item_is_reported_and_batch_continues() -> None:
    store = _store()

    result = asyncio.run(
        MergeEngine(store).process("src-site", [_event(date="not-a-date"), _event(date="2026-03-21")])
    )

    assert result.created == 1
    assert result.event_errors == 1
    assert result.errors[0].startswith("not-a-date/NYCH3: ")
    assert len(result.merge_error_details) == 1


def test_build_trust_update_returns_nothing_when_outranked() -> None:
    existing = EventRecord(
        id="e1",
        kennel_id="k",
        date=date(2026, 3, 14),
        date_utc=datetime(2026, 3, 14, 12, tzinfo=timezone.utc),
        timezone="America/New_York",
        trust_level=9,
    )
    incoming = RawEventData(date="2026-03-14", kennel_tag="X", title="New")

    assert build_trust_update(existing, incoming, trust_level=4, timezone_name="America/New_York") == {}
    changes = build_trust_update(existing, incoming, trust_level=9, timezone_name="America/New_York")
    assert changes["title"] == "New"
    assert "hares" not in changes


def test_blank_kennel_tag_is_a_merge_error_not_an_unmatched_tag() -> None:
    store = _store()

    result = asyncio.run(MergeEngine(store).process("src-site", [_event(kennelTag="   "), _event(date="2026-03-21")]))

    assert result.unmatched_tags == []
    assert result.sample_skipped == []
    assert result.event_errors == 1
    assert result.errors[0].endswith("kennel tag is empty")
    assert result.created == 1
