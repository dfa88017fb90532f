from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _AdapterModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ExternalLink(_AdapterModel):
    url: str
    label: str = "Link"


class RawEventData(_AdapterModel):
    """One item as reported by a source adapter, before kennel resolution."""

    date: str
    kennel_tag: str
    run_number: int | None = None
    title: str | None = None
    description: str | None = None
    hares: str | None = None
    location: str | None = None
    location_url: str | None = None
    start_time: str | None = None
    source_url: str | None = None
    series_id: str | None = None
    external_links: list[ExternalLink] = Field(default_factory=list)

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class ErrorDetails(_AdapterModel):
    fetch: list[dict[str, Any]] = Field(default_factory=list)
    parse: list[dict[str, Any]] = Field(default_factory=list)
    merge: list[dict[str, Any]] = Field(default_factory=list)


class ScrapeResult(_AdapterModel):
    events: list[RawEventData] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    error_details: ErrorDetails | None = None
    structure_hash: str | None = None
    diagnostic_context: dict[str, Any] | None = None


class ScrapeResultIn(ScrapeResult):
    force: bool = False
    days: int | None = Field(default=None, ge=1, le=3650)


class ScrapeRunOut(BaseModel):
    success: bool
    scrape_log_id: str
    forced: bool
    health_status: str
    events_found: int
    created: int
    updated: int
    skipped: int
    blocked: int
    cancelled: int
    unmatched_tags: list[str] = Field(default_factory=list)
    blocked_tags: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
