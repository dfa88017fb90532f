from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from hareline.pipeline.health import AlertCandidate
from hareline.services.records import ACTIVE_ALERT_STATUSES, AlertRecord
from hareline.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from hareline.services.store import CatalogStore

logger = logging.getLogger(__name__)

AUTO_RESOLVE_STRUCTURE_NOTE = "[Auto-resolved: structure stabilized on subsequent scrape]"
MAX_SNOOZE_HOURS = 24 * 90


@dataclass(slots=True)
class PersistCounts:
    created: int = 0
    updated: int = 0
    reopened: int = 0
    suppressed: int = 0


class AlertLifecycleManager:
    """Keeps at most one active alert per (source, type) and applies operator transitions."""

    def __init__(self, store: CatalogStore) -> None:
        self.store = store

    async def persist(
        self,
        source_id: str,
        scrape_log_id: str | None,
        candidates: list[AlertCandidate],
        now: datetime | None = None,
    ) -> PersistCounts:
        current = now or datetime.now(timezone.utc)
        counts = PersistCounts()
        for candidate in candidates:
            refreshed = {
                "title": candidate.title,
                "details": candidate.details,
                "severity": candidate.severity,
                "scrape_log_id": scrape_log_id,
                "context": dict(candidate.context),
            }

            active = await self.store.find_alert(source_id, candidate.type, ACTIVE_ALERT_STATUSES)
            if active is not None:
                await self.store.update_alert(active.id, refreshed)
                counts.updated += 1
                continue

            snoozed = await self.store.find_alert(source_id, candidate.type, ("SNOOZED",))
            if snoozed is not None:
                if snoozed.snoozed_until is not None and snoozed.snoozed_until < current:
                    await self.store.update_alert(
                        snoozed.id,
                        {**refreshed, "status": "OPEN", "snoozed_until": None},
                    )
                    counts.reopened += 1
                else:
                    counts.suppressed += 1
                continue

            try:
                await self.store.create_alert(
                    source_id=source_id,
                    type=candidate.type,
                    severity=candidate.severity,
                    status="OPEN",
                    title=candidate.title,
                    details=candidate.details,
                    scrape_log_id=scrape_log_id,
                    context=dict(candidate.context),
                )
            except RepositoryConflictError:
                # A concurrent run opened the alert between our lookup and insert.
                raced = await self.store.find_alert(source_id, candidate.type, ACTIVE_ALERT_STATUSES)
                if raced is None:
                    counts.suppressed += 1
                else:
                    await self.store.update_alert(raced.id, refreshed)
                    counts.updated += 1
                continue
            counts.created += 1

        if candidates:
            logger.info(
                "alerts persisted source_id=%s created=%s updated=%s reopened=%s suppressed=%s",
                source_id,
                counts.created,
                counts.updated,
                counts.reopened,
                counts.suppressed,
            )
        return counts

    async def auto_resolve(self, source_id: str, alert_type: str, note: str = AUTO_RESOLVE_STRUCTURE_NOTE) -> int:
        alerts = await self.store.list_alerts(
            source_id=source_id,
            alert_type=alert_type,
            statuses=ACTIVE_ALERT_STATUSES,
        )
        resolved_at = datetime.now(timezone.utc)
        for alert in alerts:
            details = f"{alert.details} {note}" if alert.details else note
            await self.store.update_alert(
                alert.id,
                {"status": "RESOLVED", "resolved_at": resolved_at, "details": details},
            )
        if alerts:
            logger.info("alerts auto-resolved source_id=%s type=%s count=%s", source_id, alert_type, len(alerts))
        return len(alerts)

    async def acknowledge(self, alert_id: str) -> AlertRecord:
        alert = await self._require(alert_id)
        if alert.status != "OPEN":
            raise RepositoryConflictError("alert is not open")
        return await self.store.update_alert(alert_id, {"status": "ACKNOWLEDGED"})

    async def snooze(self, alert_id: str, hours: float, now: datetime | None = None) -> AlertRecord:
        if hours <= 0 or hours > MAX_SNOOZE_HOURS:
            raise RepositoryValidationError(f"hours must be in (0, {MAX_SNOOZE_HOURS}]")
        alert = await self._require(alert_id)
        if alert.status == "RESOLVED":
            raise RepositoryConflictError("alert is already resolved")
        snoozed_until = (now or datetime.now(timezone.utc)) + timedelta(hours=hours)
        return await self.store.update_alert(alert_id, {"status": "SNOOZED", "snoozed_until": snoozed_until})

    async def resolve(self, alert_id: str, resolved_by: str | None = None) -> AlertRecord:
        alert = await self._require(alert_id)
        if alert.status == "RESOLVED":
            raise RepositoryConflictError("alert is already resolved")
        return await self.store.update_alert(
            alert_id,
            {"status": "RESOLVED", "resolved_at": datetime.now(timezone.utc), "resolved_by": resolved_by},
        )

    async def resolve_all_for_source(self, source_id: str, resolved_by: str | None = None) -> int:
        if await self.store.get_source(source_id) is None:
            raise RepositoryNotFoundError("source not found")
        alerts = await self.store.list_alerts(source_id=source_id, statuses=ACTIVE_ALERT_STATUSES)
        resolved_at = datetime.now(timezone.utc)
        for alert in alerts:
            await self.store.update_alert(
                alert.id,
                {"status": "RESOLVED", "resolved_at": resolved_at, "resolved_by": resolved_by},
            )
        return len(alerts)

    async def _require(self, alert_id: str) -> AlertRecord:
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise RepositoryNotFoundError("alert not found")
        return alert
