from __future__ import annotations

import hashlib

from hareline.schemas.events import RawEventData


def generate_fingerprint(event: RawEventData) -> str:
    """Stable content hash used to detect re-fetches of an already seen item."""
    seed = "|".join(
        [
            event.date,
            event.kennel_tag,
            str(event.run_number) if event.run_number is not None else "",
            event.title or "",
        ]
    )
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()
