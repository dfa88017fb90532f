from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from hareline.pipeline.dates import parse_event_date
from hareline.pipeline.kennel_resolver import KennelResolver
from hareline.schemas.events import RawEventData
from hareline.services.store import CatalogStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileResult:
    cancelled: int = 0
    cancelled_event_ids: list[str] = field(default_factory=list)


async def reconcile_stale_events(
    store: CatalogStore,
    source_id: str,
    scraped_events: list[RawEventData],
    window_days: int,
    *,
    resolver: KennelResolver | None = None,
    now: datetime | None = None,
) -> ReconcileResult:
    """Cancel confirmed events the source no longer reports, unless another source backs them.

    Only events for kennels linked to the source and dated within
    ``window_days`` of ``now`` are considered.
    """
    resolver = resolver or KennelResolver(store)
    current = now or datetime.now(timezone.utc)

    scraped_keys: set[tuple[str, date]] = set()
    for event in scraped_events:
        resolved = await resolver.resolve(event.kennel_tag, source_id)
        if not resolved.matched or not resolved.kennel_id:
            continue
        try:
            scraped_keys.add((resolved.kennel_id, parse_event_date(event.date)))
        except ValueError:
            logger.warning("reconcile skipped unparseable date=%s kennel_tag=%s", event.date, event.kennel_tag)

    linked_kennel_ids = await store.list_linked_kennel_ids(source_id)
    if not linked_kennel_ids:
        return ReconcileResult()

    window = timedelta(days=window_days)
    candidates = await store.list_confirmed_events(
        linked_kennel_ids,
        (current - window).date(),
        (current + window).date(),
    )
    orphaned = [event for event in candidates if (event.kennel_id, event.date) not in scraped_keys]
    if not orphaned:
        return ReconcileResult()

    corroborated = await store.find_event_ids_with_other_sources([event.id for event in orphaned], source_id)
    cancelled_event_ids = [event.id for event in orphaned if event.id not in corroborated]
    if cancelled_event_ids:
        await store.cancel_events(cancelled_event_ids)
        logger.info(
            "reconcile cancelled source_id=%s cancelled=%s corroborated=%s",
            source_id,
            len(cancelled_event_ids),
            len(orphaned) - len(cancelled_event_ids),
        )

    return ReconcileResult(cancelled=len(cancelled_event_ids), cancelled_event_ids=cancelled_event_ids)
