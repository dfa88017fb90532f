from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from hareline.pipeline.alerts import AlertLifecycleManager
from hareline.pipeline.scrape import PushedScrapeAdapter, scrape_source
from hareline.schemas.alerts import AlertOut, AlertResolveRequest, AlertsResolvedOut, AlertStatus, AlertType
from hareline.schemas.events import ScrapeResult, ScrapeResultIn, ScrapeRunOut
from hareline.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.post("/{source_id}/scrape-results", response_model=ScrapeRunOut)
async def ingest_scrape_results(
    source_id: str,
    payload: ScrapeResultIn,
    repository=Depends(get_repository),
) -> ScrapeRunOut:
    # exclude_unset keeps "field absent" distinct from "field cleared" for each event
    pushed = payload.model_dump(exclude={"force", "days"}, exclude_unset=True)
    adapter = PushedScrapeAdapter(ScrapeResult.model_validate(pushed))
    try:
        result = await scrape_source(repository, source_id, adapter, days=payload.days, force=payload.force)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ScrapeRunOut(**asdict(result))


@router.get("/{source_id}/alerts", response_model=list[AlertOut])
async def list_source_alerts(
    source_id: str,
    repository=Depends(get_repository),
    alert_status: list[AlertStatus] | None = Query(default=None, alias="status"),
    alert_type: AlertType | None = Query(default=None, alias="type"),
) -> list[AlertOut]:
    try:
        if await repository.get_source(source_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="source not found")
        alerts = await repository.list_alerts(source_id=source_id, alert_type=alert_type, statuses=alert_status)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [AlertOut(**asdict(alert)) for alert in alerts]


@router.post("/{source_id}/alerts/resolve-all", response_model=AlertsResolvedOut)
async def resolve_all_source_alerts(
    source_id: str,
    payload: AlertResolveRequest,
    repository=Depends(get_repository),
) -> AlertsResolvedOut:
    try:
        resolved = await AlertLifecycleManager(repository).resolve_all_for_source(source_id, payload.resolved_by)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return AlertsResolvedOut(resolved=resolved)
