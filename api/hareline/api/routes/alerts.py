from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from hareline.pipeline.alerts import AlertLifecycleManager
from hareline.schemas.alerts import AlertOut, AlertResolveRequest, AlertSnoozeRequest
from hareline.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def _http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc))
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/{alert_id}", response_model=AlertOut)
async def get_alert(alert_id: str, repository=Depends(get_repository)) -> AlertOut:
    try:
        alert = await repository.get_alert(alert_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="alert not found")
    return AlertOut(**asdict(alert))


@router.post("/{alert_id}/acknowledge", response_model=AlertOut)
async def acknowledge_alert(alert_id: str, repository=Depends(get_repository)) -> AlertOut:
    try:
        alert = await AlertLifecycleManager(repository).acknowledge(alert_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return AlertOut(**asdict(alert))


@router.post("/{alert_id}/snooze", response_model=AlertOut)
async def snooze_alert(alert_id: str, payload: AlertSnoozeRequest, repository=Depends(get_repository)) -> AlertOut:
    try:
        alert = await AlertLifecycleManager(repository).snooze(alert_id, payload.hours)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return AlertOut(**asdict(alert))


@router.post("/{alert_id}/resolve", response_model=AlertOut)
async def resolve_alert(alert_id: str, payload: AlertResolveRequest, repository=Depends(get_repository)) -> AlertOut:
    try:
        alert = await AlertLifecycleManager(repository).resolve(alert_id, payload.resolved_by)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return AlertOut(**asdict(alert))
