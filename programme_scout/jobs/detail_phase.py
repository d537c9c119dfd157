from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from opentelemetry import trace

from programme_scout.core.identity import contains_year, normalize_programme_name
from programme_scout.schemas.discovery import (
    ExistingProgramme,
    ExpectedProgramme,
    ProgrammeSuggestion,
    RoleAction,
    ScrapedRole,
    SeenRole,
)
from programme_scout.services.actions import CandidateLink
from programme_scout.services.browser import NAVIGATION_TIMEOUT_MS, wait_for_detail_page
from programme_scout.services.html import html_to_markdown
from programme_scout.services.repository import ProgrammeDraftRecord, RoleDraftRecord
from programme_scout.services.usage import RunUsage

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

AUTO_CORRECTED_SUFFIX = "[Auto-corrected from expected programme hint to new programme]"
DEFAULT_PROGRAM_TYPE = "summer_internship"


@dataclass(slots=True)
class DetailContext:
    """Per-run inputs shared by every detail task."""

    firm_id: str
    scrape_url_id: str | None
    extraction_model: str
    usage: RunUsage
    firm_name: str | None = None
    seen_roles: list[SeenRole] = field(default_factory=list)
    expected_programmes: list[ExpectedProgramme] = field(default_factory=list)
    existing_programmes: list[ExistingProgramme] = field(default_factory=list)


@dataclass(slots=True)
class SavedDiscovery:
    role_draft: RoleDraftRecord
    programme_draft: ProgrammeDraftRecord | None = None


@dataclass(slots=True)
class DetailOutcome:
    candidate: CandidateLink
    saved: SavedDiscovery | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.saved is not None


def reconcile_suggestion(
    suggestion: ProgrammeSuggestion,
    *,
    role: ScrapedRole,
    existing_programmes: list[ExistingProgramme],
    now: datetime | None = None,
) -> ProgrammeSuggestion:
    """Only trust a "matched" claim that names one of the employer's existing programmes.

    Anything else becomes a new-programme suggestion, and the normalized name
    is always recomputed from the suggested name.
    """
    known_ids = {programme.id for programme in existing_programmes}
    if not suggestion.is_new and suggestion.matched_program_id in known_ids:
        return suggestion

    if suggestion.is_new:
        name = suggestion.suggested_name or suggestion.matched_program_name or role.title
        return suggestion.model_copy(
            update={
                "suggested_name": name,
                "normalized_name": normalize_programme_name(name),
                "program_type": suggestion.program_type or role.program_type or DEFAULT_PROGRAM_TYPE,
                "matched_program_id": None,
            }
        )

    logger.warning(
        "suggestion claimed a match to %r without a known programme id (%s); treating it as new",
        suggestion.matched_program_name,
        suggestion.matched_program_id,
    )
    year = str((now or datetime.now(timezone.utc)).year)
    matched_name = suggestion.matched_program_name or suggestion.suggested_name or "Programme"
    name = matched_name if contains_year(matched_name) else f"{year} {matched_name}"
    reasoning = f"{suggestion.reasoning} {AUTO_CORRECTED_SUFFIX}".strip()
    return suggestion.model_copy(
        update={
            "is_new": True,
            "suggested_name": name,
            "normalized_name": normalize_programme_name(name),
            "program_type": role.program_type or DEFAULT_PROGRAM_TYPE,
            "matched_program_id": None,
            "matched_program_name": None,
            "reasoning": reasoning,
        }
    )


async def dedupe_against_pending(
    repository: Any,
    suggestion: ProgrammeSuggestion,
    *,
    scrape_url_id: str | None,
) -> ProgrammeSuggestion:
    if not suggestion.is_new or not suggestion.suggested_name or not scrape_url_id:
        return suggestion
    try:
        pending = await repository.list_pending_programme_drafts(scrape_url_id)
    except Exception:
        logger.exception("pending programme draft lookup failed for scrape_url=%s", scrape_url_id)
        return suggestion

    wanted = normalize_programme_name(suggestion.suggested_name)
    for draft in pending:
        if normalize_programme_name(draft.suggested_name) == wanted and draft.program_type == suggestion.program_type:
            logger.info("reusing pending programme draft %r", draft.suggested_name)
            return suggestion.model_copy(
                update={"suggested_name": draft.suggested_name, "normalized_name": draft.normalized_name}
            )
    return suggestion


async def save_discovery(
    repository: Any,
    *,
    candidate: CandidateLink,
    role: ScrapedRole,
    suggestion: ProgrammeSuggestion,
    context: DetailContext,
) -> SavedDiscovery | None:
    if candidate.action is RoleAction.SKIP:
        return None

    scraped_data = role.model_dump()
    programme_draft: ProgrammeDraftRecord | None = None
    if suggestion.is_new and suggestion.suggested_name:
        programme_draft = await repository.save_programme_draft(
            firm_id=context.firm_id,
            source_url_id=context.scrape_url_id,
            suggested_name=suggestion.suggested_name,
            normalized_name=suggestion.normalized_name or normalize_programme_name(suggestion.suggested_name),
            program_type=suggestion.program_type,
            confidence=suggestion.confidence,
            reasoning=suggestion.reasoning,
            roles_preview=[scraped_data],
        )

    role_draft = await repository.save_role_draft(
        firm_id=context.firm_id,
        source_url_id=context.scrape_url_id,
        programme_discovery_draft_id=programme_draft.id if programme_draft else None,
        program_id=None if suggestion.is_new else suggestion.matched_program_id,
        existing_role_id=candidate.existing_role_id,
        update_type=candidate.action.value,
        scraped_data=scraped_data,
        url=candidate.url,
        confidence=suggestion.confidence,
    )
    return SavedDiscovery(role_draft=role_draft, programme_draft=programme_draft)


async def run_detail_phase(
    candidate: CandidateLink,
    *,
    browser: Any,
    llm: Any,
    repository: Any,
    context: DetailContext,
) -> DetailOutcome:
    """Extract one role, place it in a programme and persist the drafts.

    Failures propagate to the caller, which records them per task.
    """
    with tracer.start_as_current_span("discovery.detail_phase") as span:
        span.set_attribute("role.url", candidate.url)
        span.set_attribute("role.action", candidate.action.value)

        page = await browser.new_page()
        try:
            await page.goto(candidate.url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
            await wait_for_detail_page(page)
            content = html_to_markdown(await page.content())
        finally:
            await page.close()

        extraction = await llm.extract_role(url=candidate.url, content=content, model=context.extraction_model)
        context.usage.extraction.add(extraction.usage)
        role = extraction.role

        result = await llm.suggest_programme(
            role=role,
            seen_roles=context.seen_roles,
            expected_programmes=context.expected_programmes,
            existing_programmes=context.existing_programmes,
            firm_name=context.firm_name,
        )
        context.usage.suggestion.add(result.usage)

        suggestion = reconcile_suggestion(result.suggestion, role=role, existing_programmes=context.existing_programmes)
        suggestion = await dedupe_against_pending(repository, suggestion, scrape_url_id=context.scrape_url_id)

        saved = await save_discovery(
            repository,
            candidate=candidate,
            role=role,
            suggestion=suggestion,
            context=context,
        )
        if saved is not None:
            span.set_attribute("role.draft_id", saved.role_draft.id)
            logger.info(
                "saved %s draft for %s (programme=%s)",
                candidate.action.value,
                candidate.url,
                suggestion.suggested_name if suggestion.is_new else suggestion.matched_program_name,
            )
        return DetailOutcome(candidate=candidate, saved=saved)
