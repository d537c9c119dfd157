from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends

from programme_scout.api.errors import http_error
from programme_scout.core.config import Settings, get_settings
from programme_scout.jobs.discovery import run_scan
from programme_scout.schemas.discovery import DiscoveryMetrics, ScanRequest
from programme_scout.services.browser import open_browser
from programme_scout.services.llm import OpenAIDiscoveryClient
from programme_scout.services.repository import RepositoryError, get_repository

router = APIRouter()

ScanRunner = Callable[[str, dict[str, Any]], Awaitable[DiscoveryMetrics]]


def get_scan_runner(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> ScanRunner:
    async def run(scrape_url_id: str, overrides: dict[str, Any]) -> DiscoveryMetrics:
        llm = OpenAIDiscoveryClient.from_settings(settings)
        async with open_browser(headless=settings.browser_headless) as browser:
            return await run_scan(
                scrape_url_id,
                browser=browser,
                llm=llm,
                repository=repository,
                settings=settings,
                overrides=overrides,
            )

    return run


@router.post("", response_model=DiscoveryMetrics)
async def create_scan(payload: ScanRequest, runner: ScanRunner = Depends(get_scan_runner)) -> DiscoveryMetrics:
    try:
        return await runner(payload.scrape_url_id, payload.scraper_config)
    except RepositoryError as exc:
        raise http_error(exc) from exc
