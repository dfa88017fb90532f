from __future__ import annotations

import re
from dataclasses import dataclass

from hareline.services.store import CatalogStore


@dataclass(frozen=True, slots=True)
class ResolveResult:
    kennel_id: str | None
    matched: bool


UNMATCHED = ResolveResult(kennel_id=None, matched=False)

# Evaluated top to bottom, first match wins: multi-word and specific patterns
# must stay ahead of the short generic ones they would otherwise shadow.
KENNEL_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern), short_name)
    for pattern, short_name in (
        (r"ballbuster|bobbh3|b3h4", "BoBBH3"),
        (r"queens black knights", "QBK"),
        (r"(?:new amsterdam)|(?:^nass)", "NAH3"),
        (r"long island|lunatics", "LIL"),
        (r"staten island", "SI"),
        (r"drinking practice", "Drinking Practice (NYC)"),
        (r"knickerbocker", "Knick"),
        (r"pink taco|pt2h3", "Pink Taco"),
        (r"^(?:brooklyn|brh3)", "BrH3"),
        (r"naww", "NAWWH3"),
        (r"^nah3", "NAH3"),
        (r"^(?:nyc|nych3)", "NYCH3"),
        (r"^(?:boston hash|bh3|boh3)", "BoH3"),
        (r"moon|moom", "Bos Moon"),
        (r"beantown", "Beantown"),
        (r"queens", "QBK"),
        (r"knick", "Knick"),
        (r"lil", "LIL"),
        (r"columbia", "Columbia"),
        (r"ggfm", "GGFM"),
        (r"harriettes", "Harriettes"),
        (r"(?:si hash)|(?:^si$)", "SI"),
        (r"special", "Special (NYC)"),
        (r"ben franklin|bfm", "BFM"),
        (r"philly|hashphilly", "Philly H3"),
        (r"(?:^ch3)|(?:chicago)", "CH3"),
        (r"asssh3|all seasons summit shiggy", "ASSSH3"),
        (r"(?:summit full moon)|(?:^sfm$)", "SFM"),
        (r"summit", "Summit"),
        (r"rumson", "Rumson"),
    )
)


def map_kennel_tag(tag: str) -> str | None:
    """Map a free-text tag to a canonical short name using the ordered pattern table."""
    normalized = tag.strip().lower()
    for pattern, short_name in KENNEL_PATTERNS:
        if pattern.search(normalized):
            return short_name
    return None


class ResolverCache:
    """Resolution results for one pipeline run, keyed by (lowercased tag, source id)."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str | None], ResolveResult] = {}

    def get(self, tag: str, source_id: str | None) -> ResolveResult | None:
        return self._entries.get((tag, source_id))

    def put(self, tag: str, source_id: str | None, result: ResolveResult) -> None:
        self._entries[(tag, source_id)] = result

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class KennelResolver:
    def __init__(self, store: CatalogStore, cache: ResolverCache | None = None) -> None:
        self.store = store
        self.cache = cache if cache is not None else ResolverCache()

    def clear_cache(self) -> None:
        self.cache.clear()

    async def resolve(self, tag: str, source_id: str | None = None) -> ResolveResult:
        """Resolve a raw kennel tag to a kennel id.

        Order: exact short name (scoped to the source's linked kennels first),
        alias, then the pattern table with the exact/alias lookups retried
        against the mapped name.
        """
        normalized = tag.strip()
        if not normalized:
            return UNMATCHED

        cache_key = normalized.lower()
        cached = self.cache.get(cache_key, source_id)
        if cached is not None:
            return cached

        result = (
            await self._resolve_name(normalized, source_id)
            or await self._resolve_via_pattern(normalized, source_id)
            or UNMATCHED
        )
        self.cache.put(cache_key, source_id, result)
        return result

    async def _resolve_name(self, name: str, source_id: str | None) -> ResolveResult | None:
        if source_id:
            kennel_id = await self.store.find_kennel_id_by_short_name(name, source_id=source_id)
            if kennel_id:
                return ResolveResult(kennel_id=kennel_id, matched=True)

        kennel_id = await self.store.find_kennel_id_by_short_name(name)
        if kennel_id:
            return ResolveResult(kennel_id=kennel_id, matched=True)

        kennel_id = await self.store.find_kennel_id_by_alias(name)
        if kennel_id:
            return ResolveResult(kennel_id=kennel_id, matched=True)
        return None

    async def _resolve_via_pattern(self, name: str, source_id: str | None) -> ResolveResult | None:
        mapped = map_kennel_tag(name)
        if not mapped:
            return None
        return await self._resolve_name(mapped, source_id)
