from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from hareline.pipeline.fill_rates import TRACKED_FIELDS, FieldFillRates
from hareline.schemas.alerts import AlertSeverity, AlertType
from hareline.services.records import ScrapeLogRecord, SourceHealth
from hareline.services.store import CatalogStore

logger = logging.getLogger(__name__)

BASELINE_RUNS = 10
FAILURE_WINDOW = 3

# Fill-rate drop: only fields normally at least this full are watched...
FILL_RATE_WATCH_MIN = 50
# ...and only a fall of more than this many points alerts.
FILL_RATE_DROP_POINTS = 30

# Structure change counts as quality-affecting beyond these thresholds.
STRUCTURE_EVENT_DROP_PCT = 20
STRUCTURE_FILL_DROP_POINTS = 15


@dataclass(slots=True)
class AlertCandidate:
    type: AlertType
    severity: AlertSeverity
    title: str
    details: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class HealthInput:
    events_found: int
    scrape_failed: bool
    errors: list[str] = field(default_factory=list)
    unmatched_tags: list[str] = field(default_factory=list)
    blocked_tags: list[str] = field(default_factory=list)
    fill_rates: FieldFillRates = field(default_factory=FieldFillRates)
    structure_hash: str | None = None


@dataclass(slots=True)
class HealthAnalysis:
    health_status: SourceHealth
    alerts: list[AlertCandidate] = field(default_factory=list)
    resolve_types: list[AlertType] = field(default_factory=list)


def check_scrape_failure(health_input: HealthInput) -> AlertCandidate | None:
    if not health_input.scrape_failed:
        return None
    return AlertCandidate(
        type="SCRAPE_FAILURE",
        severity="WARNING",
        title="Scrape failed",
        details="; ".join(health_input.errors[:5]),
        context={"errorMessages": health_input.errors[:10], "consecutiveCount": 1},
    )


def check_consecutive_failures(health_input: HealthInput, recent_all: list[ScrapeLogRecord]) -> AlertCandidate | None:
    if not health_input.scrape_failed:
        return None
    previous_failures = sum(1 for row in recent_all if row.status == "FAILED")
    if previous_failures < 2:
        return None
    return AlertCandidate(
        type="CONSECUTIVE_FAILURES",
        severity="CRITICAL",
        title=f"{previous_failures + 1} consecutive scrape failures",
        details=(
            "Multiple consecutive scrapes have failed. "
            "The source may be down or its format may have changed."
        ),
        context={"errorMessages": health_input.errors[:10], "consecutiveCount": previous_failures + 1},
    )


def check_event_count_anomaly(health_input: HealthInput, baseline: list[ScrapeLogRecord]) -> AlertCandidate | None:
    if not baseline:
        return None
    average = sum(row.events_found for row in baseline) / len(baseline)
    window = len(baseline)

    if health_input.events_found == 0 and average > 0:
        return AlertCandidate(
            type="EVENT_COUNT_ANOMALY",
            severity="CRITICAL",
            title="Zero events found",
            details=(
                f"Expected ~{_round(average)} events based on rolling average of last {window} scrapes, but found 0."
            ),
            context={"currentCount": 0, "baselineAvg": _round(average), "baselineWindow": window, "dropPercent": 100},
        )

    if average > 5 and health_input.events_found < average * 0.5:
        drop_pct = _round((average - health_input.events_found) / average * 100)
        return AlertCandidate(
            type="EVENT_COUNT_ANOMALY",
            severity="WARNING",
            title=f"Event count dropped {drop_pct}%",
            details=(
                f"Found {health_input.events_found} events vs rolling average of "
                f"{_round(average)} (last {window} scrapes)."
            ),
            context={
                "currentCount": health_input.events_found,
                "baselineAvg": _round(average),
                "baselineWindow": window,
                "dropPercent": drop_pct,
            },
        )
    return None


def check_field_fill_drops(health_input: HealthInput, baseline: list[ScrapeLogRecord]) -> list[AlertCandidate]:
    alerts: list[AlertCandidate] = []
    for name in TRACKED_FIELDS:
        rates = _fill_rates(baseline, name)
        if not rates:
            continue
        average = sum(rates) / len(rates)
        current = getattr(health_input.fill_rates, name)
        if average >= FILL_RATE_WATCH_MIN and average - current > FILL_RATE_DROP_POINTS:
            alerts.append(
                AlertCandidate(
                    type="FIELD_FILL_DROP",
                    severity="WARNING",
                    title=f"{name} fill rate dropped from {_round(average)}% to {current}%",
                    details=(
                        f'The "{name}" field was populated in ~{_round(average)}% of events on average '
                        f"but is now at {current}%."
                    ),
                    context={"field": name, "currentRate": current, "baselineAvg": _round(average)},
                )
            )
    return alerts


def check_structural_change(
    health_input: HealthInput,
    baseline: list[ScrapeLogRecord],
) -> tuple[AlertCandidate | None, bool]:
    """Compare the page structure hash with the latest recorded one.

    Returns ``(candidate, stable)``; ``stable`` is true when the hash matches
    the baseline again, which closes any open structure alert.
    """
    if not health_input.structure_hash:
        return None, False

    previous_hash = next((row.structure_hash for row in baseline if row.structure_hash), None)
    if previous_hash is None:
        return None, False
    if previous_hash == health_input.structure_hash:
        return None, True

    previous_count = _round(sum(row.events_found for row in baseline) / len(baseline))
    fill_baseline = {name: _average_fill_rate(baseline, name) for name in TRACKED_FIELDS}
    event_drop_pct = (
        _round((previous_count - health_input.events_found) / previous_count * 100) if previous_count > 0 else 0
    )
    max_fill_drop = max(
        (
            value - getattr(health_input.fill_rates, name)
            for name, value in fill_baseline.items()
            if value >= FILL_RATE_WATCH_MIN
        ),
        default=0,
    )
    impacted = event_drop_pct > STRUCTURE_EVENT_DROP_PCT or max_fill_drop > STRUCTURE_FILL_DROP_POINTS

    if impacted:
        title = "Page structure changed: data quality may be affected"
        details = (
            f"Structural fingerprint changed and scrape quality has degraded. Event count: "
            f"{previous_count} -> {health_input.events_found}. Investigate the source page for template changes."
        )
    else:
        title = "Page structure changed (no impact on data quality)"
        details = (
            f"Structural fingerprint changed but event extraction is working normally. Event count: "
            f"{previous_count} -> {health_input.events_found}."
        )

    candidate = AlertCandidate(
        type="STRUCTURE_CHANGE",
        severity="WARNING" if impacted else "INFO",
        title=title,
        details=details,
        context={
            "previousHash": previous_hash,
            "currentHash": health_input.structure_hash,
            "previousEventCount": previous_count,
            "currentEventCount": health_input.events_found,
            "fillRateBaseline": fill_baseline,
            "fillRateCurrent": health_input.fill_rates.as_context(),
            "qualityImpacted": impacted,
        },
    )
    return candidate, False


def check_unmatched_tags(health_input: HealthInput, baseline: list[ScrapeLogRecord]) -> AlertCandidate | None:
    if not health_input.unmatched_tags:
        return None
    known = {tag for row in baseline for tag in row.unmatched_tags}
    novel = [tag for tag in health_input.unmatched_tags if tag not in known]
    if not novel:
        return None
    plural = "s" if len(novel) != 1 else ""
    return AlertCandidate(
        type="UNMATCHED_TAGS",
        severity="INFO",
        title=f"{len(novel)} new unmatched kennel tag{plural}",
        details=f"New tags: {', '.join(novel)}. These need alias mapping in the kennel resolver.",
        context={"tags": novel},
    )


def check_source_kennel_mismatch(health_input: HealthInput) -> AlertCandidate | None:
    if not health_input.blocked_tags:
        return None
    count = len(health_input.blocked_tags)
    plural = "s" if count != 1 else ""
    return AlertCandidate(
        type="SOURCE_KENNEL_MISMATCH",
        severity="WARNING",
        title=f"{count} kennel tag{plural} blocked: not linked to source",
        details=(
            f"Tags [{', '.join(health_input.blocked_tags)}] resolved to valid kennels "
            "but are not linked to this source."
        ),
        context={"tags": list(health_input.blocked_tags)},
    )


def derive_health_status(health_input: HealthInput, alerts: list[AlertCandidate]) -> SourceHealth:
    if health_input.scrape_failed or any(alert.severity == "CRITICAL" for alert in alerts):
        return "FAILING"
    if any(alert.severity == "WARNING" for alert in alerts):
        return "DEGRADED"
    return "HEALTHY"


def evaluate_health(
    health_input: HealthInput,
    baseline: list[ScrapeLogRecord],
    recent_all: list[ScrapeLogRecord],
) -> HealthAnalysis:
    """Run every check against already loaded history; no I/O."""
    alerts: list[AlertCandidate] = []
    resolve_types: list[AlertType] = []

    for candidate in (check_scrape_failure(health_input), check_consecutive_failures(health_input, recent_all)):
        if candidate is not None:
            alerts.append(candidate)

    if not health_input.scrape_failed and baseline:
        count_alert = check_event_count_anomaly(health_input, baseline)
        if count_alert is not None:
            alerts.append(count_alert)
        alerts.extend(check_field_fill_drops(health_input, baseline))
        structure_alert, structure_stable = check_structural_change(health_input, baseline)
        if structure_alert is not None:
            alerts.append(structure_alert)
        if structure_stable:
            resolve_types.append("STRUCTURE_CHANGE")
        unmatched_alert = check_unmatched_tags(health_input, baseline)
        if unmatched_alert is not None:
            alerts.append(unmatched_alert)

    mismatch_alert = check_source_kennel_mismatch(health_input)
    if mismatch_alert is not None:
        alerts.append(mismatch_alert)

    return HealthAnalysis(
        health_status=derive_health_status(health_input, alerts),
        alerts=alerts,
        resolve_types=resolve_types,
    )


async def analyze_health(
    store: CatalogStore,
    source_id: str,
    scrape_log_id: str,
    health_input: HealthInput,
    *,
    baseline_runs: int = BASELINE_RUNS,
    failure_window: int = FAILURE_WINDOW,
) -> HealthAnalysis:
    baseline = await store.list_recent_scrape_logs(
        source_id,
        exclude_id=scrape_log_id,
        limit=baseline_runs,
        status="SUCCESS",
    )
    recent_all = await store.list_recent_scrape_logs(source_id, exclude_id=scrape_log_id, limit=failure_window)
    analysis = evaluate_health(health_input, baseline, recent_all)
    logger.info(
        "health analyzed source_id=%s status=%s alerts=%s baseline_runs=%s",
        source_id,
        analysis.health_status,
        ",".join(alert.type for alert in analysis.alerts) or "-",
        len(baseline),
    )
    return analysis


def _fill_rates(logs: list[ScrapeLogRecord], name: str) -> list[int]:
    return [value for row in logs if (value := getattr(row, f"fill_rate_{name}")) is not None]


def _average_fill_rate(logs: list[ScrapeLogRecord], name: str) -> int:
    rates = _fill_rates(logs, name)
    if not rates:
        return 0
    return _round(sum(rates) / len(rates))


def _round(value: float) -> int:
    # half up, matching how percentages are shown to operators
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)
