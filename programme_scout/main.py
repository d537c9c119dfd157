from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from programme_scout.api.router import api_router
from programme_scout.core.config import Settings, get_settings
from programme_scout.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from programme_scout.services.repository import get_repository

logger = logging.getLogger(__name__)


async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "%s %s -> %s in %.0fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the review API; tracing and the repository pool live for the app's lifespan."""
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.telemetry = setup_telemetry(settings)
        try:
            yield
        finally:
            shutdown_telemetry(app.state.telemetry)
            await get_repository().close()
            get_repository.cache_clear()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.middleware("http")(log_requests)
    app.include_router(api_router)
    return app


app = create_app()
