from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from opentelemetry import trace

from programme_scout.core.config import Settings, get_settings
from programme_scout.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from programme_scout.jobs.discovery import run_scan
from programme_scout.services.browser import open_browser
from programme_scout.services.llm import OpenAIDiscoveryClient
from programme_scout.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def poll_once(*, repository: Any, browser: Any, llm: Any, settings: Settings) -> int:
    """Scan every due listing once; returns how many scans ran to completion.

    Scans that raise are not counted, so a batch that only fails lets the
    caller sleep before polling again.
    """
    due = await repository.list_due_scrape_urls(
        limit=settings.scan_batch_size,
        interval_hours=settings.scan_interval_hours,
    )
    completed = 0
    for record in due:
        with tracer.start_as_current_span("worker.process_scan") as scan_span:
            scan_span.set_attribute("scrape_url.id", record.id)
            try:
                metrics = await run_scan(record.id, browser=browser, llm=llm, repository=repository, settings=settings)
            except Exception:
                logger.exception("scan failed for scrape_url=%s", record.id)
                continue
            completed += 1
            if metrics.error:
                logger.warning("scan of %s failed: %s", record.url, metrics.error)
            else:
                logger.info(
                    "scan of %s found=%s new=%s extracted=%s",
                    record.url,
                    metrics.roles_found,
                    metrics.roles_new,
                    metrics.roles_extracted,
                )
    return completed


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings)
    repository = get_repository()
    llm = OpenAIDiscoveryClient.from_settings(settings)

    backoff = settings.poll_interval_seconds
    try:
        async with open_browser(headless=settings.browser_headless) as browser:
            while True:
                try:
                    with tracer.start_as_current_span("worker.poll_cycle"):
                        completed = await poll_once(repository=repository, browser=browser, llm=llm, settings=settings)
                    if not completed:
                        await asyncio.sleep(settings.poll_interval_seconds)
                    backoff = settings.poll_interval_seconds
                except Exception as exc:  # pragma: no cover - bootstrap robustness
                    jitter = random.uniform(0.0, 0.5)
                    sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                    logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                    await asyncio.sleep(sleep_for)
                    backoff = sleep_for
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
