from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError

from programme_scout.core.config import ScraperConfig, Settings
from programme_scout.jobs.detail_phase import DetailContext, DetailOutcome, run_detail_phase
from programme_scout.jobs.list_phase import run_list_phase
from programme_scout.schemas.discovery import DiscoveryMetrics, ExistingProgramme, ExpectedProgramme, RoleAction
from programme_scout.services.actions import CandidateLink
from programme_scout.services.role_index import RoleIndex
from programme_scout.services.usage import RunUsage

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class DiscoveryRequest:
    firm_id: str
    listing_url: str
    firm_name: str | None = None
    scrape_url_id: str | None = None
    expected_programmes: list[ExpectedProgramme] = field(default_factory=list)
    # None loads the employer's programmes from the repository.
    existing_programmes: list[ExistingProgramme] | None = None
    config: ScraperConfig = field(default_factory=ScraperConfig)


async def run_discovery(
    request: DiscoveryRequest,
    *,
    browser: Any,
    llm: Any,
    repository: Any,
) -> DiscoveryMetrics:
    """Run both phases for one listing URL and record the outcome against its scrape URL.

    Never raises for run failures: a failed run comes back as zeroed metrics
    carrying the error message.
    """
    started = time.monotonic()
    with tracer.start_as_current_span("discovery.run") as span:
        span.set_attribute("firm.id", request.firm_id)
        span.set_attribute("listing.url", request.listing_url)
        try:
            metrics = await asyncio.wait_for(
                _run(request, browser=browser, llm=llm, repository=repository),
                timeout=request.config.run_timeout_seconds,
            )
        except asyncio.TimeoutError:
            message = f"discovery run exceeded {request.config.run_timeout_seconds:.0f}s"
            logger.error("%s for %s", message, request.listing_url)
            metrics = DiscoveryMetrics(error=message)
        except Exception as exc:
            logger.exception("discovery run failed for %s", request.listing_url)
            metrics = DiscoveryMetrics(error=str(exc) or type(exc).__name__)

        metrics.duration_seconds = round(time.monotonic() - started, 2)
        span.set_attribute("discovery.roles_found", metrics.roles_found)
        span.set_attribute("discovery.failed", metrics.error is not None)

        if request.scrape_url_id:
            await _record_run(repository, request.scrape_url_id, metrics)
        return metrics


async def run_scan(
    scrape_url_id: str,
    *,
    browser: Any,
    llm: Any,
    repository: Any,
    settings: Settings,
    overrides: dict[str, Any] | None = None,
) -> DiscoveryMetrics:
    """Scan a stored listing URL.

    A missing scrape URL raises RepositoryNotFoundError. A stored config that
    does not validate is recorded as a failed run so the URL is not due again
    until the next interval.
    """
    record = await repository.get_scrape_url(scrape_url_id)
    try:
        config = ScraperConfig.from_settings(settings).merged(record.scrape_config).merged(overrides)
    except (ValidationError, TypeError) as exc:
        logger.error("invalid scraper config for scrape_url=%s: %s", record.id, exc)
        metrics = DiscoveryMetrics(error=f"invalid scraper config: {_config_error(exc)}")
        await _record_run(repository, record.id, metrics)
        return metrics
    request = DiscoveryRequest(
        firm_id=record.firm_id,
        firm_name=record.firm_name,
        listing_url=record.url,
        scrape_url_id=record.id,
        expected_programmes=_expected_programmes(record.expected_programmes),
        config=config,
    )
    return await run_discovery(request, browser=browser, llm=llm, repository=repository)


async def _record_run(repository: Any, scrape_url_id: str, metrics: DiscoveryMetrics) -> None:
    try:
        await repository.record_scan_run(scrape_url_id, metrics=metrics.history_payload(), error=metrics.error)
    except Exception:
        logger.exception("could not record scan run for scrape_url=%s", scrape_url_id)


def _config_error(exc: Exception) -> str:
    if not isinstance(exc, ValidationError) or not exc.errors():
        return str(exc)
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', '')}" if location else str(first.get("msg", ""))


async def _run(request: DiscoveryRequest, *, browser: Any, llm: Any, repository: Any) -> DiscoveryMetrics:
    config = request.config
    index = await RoleIndex.load(repository, request.firm_id)
    if index.degraded:
        logger.warning("running discovery for firm=%s without existing-role checks", request.firm_id)
    existing_programmes = request.existing_programmes
    if existing_programmes is None:
        existing_programmes = await _load_existing_programmes(repository, request.firm_id)

    usage = RunUsage(
        extraction_model=config.extraction_model,
        classification_model=llm.classification_model,
        suggestion_model=llm.suggestion_model,
    )

    page = await browser.new_page()
    try:
        listing = await run_list_phase(
            page=page,
            listing_url=request.listing_url,
            llm=llm,
            index=index,
            config=config,
            usage=usage.classification,
        )
    finally:
        await page.close()

    candidates = listing.candidates
    skipped = listing.roles_skipped
    if len(candidates) > config.max_roles:
        logger.info("limiting detail phase to %s of %s candidates", config.max_roles, len(candidates))
        skipped += len(candidates) - config.max_roles
        candidates = candidates[: config.max_roles]

    context = DetailContext(
        firm_id=request.firm_id,
        firm_name=request.firm_name,
        scrape_url_id=request.scrape_url_id,
        extraction_model=config.extraction_model,
        usage=usage,
        seen_roles=listing.seen_roles,
        expected_programmes=request.expected_programmes,
        existing_programmes=existing_programmes,
    )
    semaphore = asyncio.Semaphore(config.detail_concurrency)

    async def guarded(candidate: CandidateLink) -> DetailOutcome:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    run_detail_phase(candidate, browser=browser, llm=llm, repository=repository, context=context),
                    timeout=config.detail_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("detail task timed out after %.0fs for %s", config.detail_timeout_seconds, candidate.url)
                return DetailOutcome(candidate=candidate, error="timeout")
            except Exception as exc:
                logger.exception("detail task failed for %s", candidate.url)
                return DetailOutcome(candidate=candidate, error=str(exc) or type(exc).__name__)

    outcomes = await asyncio.gather(*(guarded(candidate) for candidate in candidates))

    metrics = DiscoveryMetrics(
        roles_found=listing.roles_found,
        roles_skipped=skipped,
        roles_new=_count(candidates, RoleAction.NEW_ROLE),
        roles_url_changed=_count(candidates, RoleAction.URL_CHANGED),
        roles_reopened=_count(candidates, RoleAction.REOPENING),
        roles_extracted=sum(1 for outcome in outcomes if outcome.succeeded),
        roles_failed=sum(1 for outcome in outcomes if outcome.error is not None),
        total_tokens_used=usage.total_tokens,
        total_cost_usd=round(usage.total_cost_usd, 6),
        index_degraded=index.degraded,
    )
    logger.info(
        "discovery done firm=%s found=%s skipped=%s new=%s url_changed=%s reopened=%s failed=%s tokens=%s",
        request.firm_id,
        metrics.roles_found,
        metrics.roles_skipped,
        metrics.roles_new,
        metrics.roles_url_changed,
        metrics.roles_reopened,
        metrics.roles_failed,
        metrics.total_tokens_used,
    )
    return metrics


async def _load_existing_programmes(repository: Any, firm_id: str) -> list[ExistingProgramme]:
    try:
        programmes = await repository.list_programmes(firm_id)
    except Exception:
        logger.exception("existing programmes unavailable for firm=%s; suggesting against none", firm_id)
        return []
    return [
        ExistingProgramme(
            id=programme.id,
            name=programme.name,
            normalized_name=programme.normalized_name,
            program_type=programme.program_type,
        )
        for programme in programmes
    ]


def _expected_programmes(raw: list[dict[str, Any]]) -> list[ExpectedProgramme]:
    programmes: list[ExpectedProgramme] = []
    for item in raw or []:
        try:
            programmes.append(ExpectedProgramme.model_validate(item))
        except ValidationError:
            logger.warning("ignoring malformed expected programme hint: %r", item)
    return programmes


def _count(candidates: list[CandidateLink], action: RoleAction) -> int:
    return sum(1 for candidate in candidates if candidate.action is action)
