from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from opentelemetry import trace
from playwright.async_api import Error as PlaywrightError

from programme_scout.core.config import ScraperConfig
from programme_scout.core.identity import normalize_url
from programme_scout.schemas.discovery import ClassifiedLink, RoleAction, SeenRole
from programme_scout.services.actions import CandidateLink, resolve_role_action
from programme_scout.services.browser import (
    NAVIGATION_TIMEOUT_MS,
    advance_pagination,
    smart_scroll,
    wait_for_page_ready,
)
from programme_scout.services.html import extract_link_contexts
from programme_scout.services.role_index import RoleIndex
from programme_scout.services.usage import UsageTracker

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ListingUnavailableError(Exception):
    """Raised when the listing page cannot be navigated at all."""


@dataclass(slots=True)
class ListPhaseResult:
    candidates: list[CandidateLink] = field(default_factory=list)
    seen_roles: list[SeenRole] = field(default_factory=list)
    roles_found: int = 0
    roles_skipped: int = 0
    pages_visited: int = 0


async def run_list_phase(
    *,
    page: Any,
    listing_url: str,
    llm: Any,
    index: RoleIndex,
    config: ScraperConfig,
    usage: UsageTracker,
) -> ListPhaseResult:
    """Walk a listing page and its pagination, returning the links worth extracting.

    Each page is classified before the next one is fetched. Links already sent
    to the classifier on an earlier page are not sent again, and job links are
    counted once per run by normalized URL.
    """
    with tracer.start_as_current_span("discovery.list_phase") as span:
        span.set_attribute("listing.url", listing_url)
        try:
            await page.goto(listing_url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightError as exc:
            raise ListingUnavailableError(f"listing page {listing_url} could not be opened: {exc}") from exc

        result = ListPhaseResult()
        offered_urls: set[str] = set()
        job_urls: set[str] = set()

        for page_number in range(1, config.max_pages + 1):
            await wait_for_page_ready(page)
            await smart_scroll(page, max_scrolls=config.max_scrolls)
            result.pages_visited = page_number

            contexts = [
                context
                for context in extract_link_contexts(await page.content(), page.url or listing_url)
                if normalize_url(context.url) not in offered_urls
            ]
            offered_urls.update(normalize_url(context.url) for context in contexts)
            logger.info("listing page %s: %s new links to classify", page_number, len(contexts))

            for link in await _classify(llm, contexts, usage=usage, page_number=page_number):
                key = normalize_url(link.url)
                if key in job_urls:
                    continue
                job_urls.add(key)
                result.roles_found += 1
                result.seen_roles.append(SeenRole(title=link.title, url=link.url))

                decision = resolve_role_action(link.url, link.title, index)
                if decision.action is RoleAction.SKIP:
                    result.roles_skipped += 1
                    logger.debug("skipping %s (%s)", link.url, link.title)
                    continue
                result.candidates.append(
                    CandidateLink(
                        url=link.url,
                        title=link.title,
                        action=decision.action,
                        existing_role_id=decision.existing_role_id,
                        url_changed=decision.url_changed,
                        confidence=link.confidence,
                    )
                )

            if page_number >= config.max_pages:
                logger.info("page cap of %s reached", config.max_pages)
                break
            if not await advance_pagination(page):
                logger.info("no further pagination after page %s", page_number)
                break

        span.set_attribute("listing.pages", result.pages_visited)
        span.set_attribute("listing.roles_found", result.roles_found)
        span.set_attribute("listing.candidates", len(result.candidates))
        logger.info(
            "list phase done url=%s pages=%s found=%s skipped=%s candidates=%s",
            listing_url,
            result.pages_visited,
            result.roles_found,
            result.roles_skipped,
            len(result.candidates),
        )
        return result


async def _classify(
    llm: Any,
    contexts: list[Any],
    *,
    usage: UsageTracker,
    page_number: int,
) -> list[ClassifiedLink]:
    if not contexts:
        return []
    try:
        classification = await llm.classify_links(contexts)
    except Exception:
        logger.exception("link classification failed on listing page %s; treating it as empty", page_number)
        return []
    usage.add(classification.usage)
    return classification.links
