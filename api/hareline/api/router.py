from fastapi import APIRouter

from hareline.api.routes import alerts, health, sources

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sources.router, prefix="/sources", tags=["ingestion"])
api_router.include_router(alerts.router, prefix="/alerts", tags=["alerts"])
