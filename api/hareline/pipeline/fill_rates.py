from __future__ import annotations

from dataclasses import asdict, dataclass

from hareline.schemas.events import RawEventData


@dataclass(slots=True)
class FieldFillRates:
    """Per-field population percentages (0-100) for one batch of scraped events."""

    title: int = 0
    location: int = 0
    hares: int = 0
    start_time: int = 0
    run_number: int = 0

    def as_context(self) -> dict[str, int]:
        return asdict(self)


TRACKED_FIELDS = ("title", "location", "hares", "start_time", "run_number")


def compute_fill_rates(events: list[RawEventData]) -> FieldFillRates:
    if not events:
        return FieldFillRates()

    total = len(events)

    def pct(count: int) -> int:
        # round half up
        return int(count * 100 / total + 0.5)

    return FieldFillRates(
        title=pct(sum(1 for event in events if event.title)),
        location=pct(sum(1 for event in events if event.location)),
        hares=pct(sum(1 for event in events if event.hares)),
        start_time=pct(sum(1 for event in events if event.start_time)),
        run_number=pct(sum(1 for event in events if event.run_number is not None)),
    )
