from hareline.pipeline.fill_rates import FieldFillRates, compute_fill_rates
from hareline.schemas.events import RawEventData


def test_compute_fill_rates_counts_populated_fields() -> None:
    events = [
        RawEventData(date="2026-03-01", kennel_tag="A", title="One", location="Park", run_number=1),
        RawEventData(date="2026-03-02", kennel_tag="A", title="Two", hares="Someone"),
        RawEventData(date="2026-03-03", kennel_tag="A", title="", start_time="19:00"),
    ]

    rates = compute_fill_rates(events)

    assert rates == FieldFillRates(title=67, location=33, hares=33, start_time=33, run_number=33)


def test_compute_fill_rates_rounds_half_up() -> None:
    events = [RawEventData(date="2026-03-01", kennel_tag="A", title="x")] + [
        RawEventData(date="2026-03-01", kennel_tag="A") for _ in range(7)
    ]

    assert compute_fill_rates(events).title == 13


def test_compute_fill_rates_of_empty_batch_is_zero() -> None:
    assert compute_fill_rates([]) == FieldFillRates()
