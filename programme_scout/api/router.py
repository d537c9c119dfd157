from fastapi import APIRouter, Depends

from programme_scout.api.routes import discoveries, health, scans
from programme_scout.core.security import require_api_key

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(
    discoveries.router,
    prefix="/discoveries",
    tags=["review"],
    dependencies=[Depends(require_api_key)],
)
api_router.include_router(scans.router, prefix="/scans", tags=["scans"], dependencies=[Depends(require_api_key)])
