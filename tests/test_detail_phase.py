import asyncio
from datetime import datetime, timezone

from fakes import FakeBrowser, FakeLLM, detail_html
import pytest

from programme_scout.jobs.detail_phase import (
    AUTO_CORRECTED_SUFFIX,
    DetailContext,
    reconcile_suggestion,
    run_detail_phase,
    save_discovery,
)
from programme_scout.schemas.discovery import ExistingProgramme, ProgrammeSuggestion, RoleAction, ScrapedRole
from programme_scout.services.actions import CandidateLink
from programme_scout.services.llm import LLMBoundaryError
from programme_scout.services.store import InMemoryRepository
from programme_scout.services.usage import RunUsage

EXISTING = [ExistingProgramme(id="programme-1", name="2026 Summer Analyst", normalized_name="summer analyst")]


def _context(store: InMemoryRepository, firm_id: str, scrape_url_id: str | None = None) -> DetailContext:
    return DetailContext(
        firm_id=firm_id,
        scrape_url_id=scrape_url_id,
        extraction_model="gpt-4o-mini",
        usage=RunUsage(
            extraction_model="gpt-4o-mini",
            classification_model="gpt-4o-mini",
            suggestion_model="gpt-4o-mini",
        ),
        existing_programmes=EXISTING,
    )


def test_match_with_known_programme_id_is_kept() -> None:
    suggestion = ProgrammeSuggestion(
        matched_program_id="programme-1",
        matched_program_name="2026 Summer Analyst",
        confidence="high",
        is_new=False,
    )
    result = reconcile_suggestion(suggestion, role=ScrapedRole(title="Summer Analyst"), existing_programmes=EXISTING)
    assert result == suggestion


def test_match_without_id_is_coerced_to_new_programme() -> None:
    suggestion = ProgrammeSuggestion(
        matched_program_name="Spring Insight Week",
        confidence="medium",
        reasoning="matches the expected programme",
        is_new=False,
    )
    result = reconcile_suggestion(
        suggestion,
        role=ScrapedRole(title="Spring Week", program_type="spring_week"),
        existing_programmes=EXISTING,
        now=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )
    assert result.is_new is True
    assert result.suggested_name == "2026 Spring Insight Week"
    assert result.normalized_name == "spring insight week"
    assert result.program_type == "spring_week"
    assert result.matched_program_id is None
    assert result.matched_program_name is None
    assert result.reasoning.endswith(AUTO_CORRECTED_SUFFIX)


def test_match_to_unknown_id_is_coerced_and_keeps_existing_year() -> None:
    suggestion = ProgrammeSuggestion(
        matched_program_id="made-up-id",
        matched_program_name="2027 Graduate Programme",
        is_new=False,
    )
    result = reconcile_suggestion(suggestion, role=ScrapedRole(title="Graduate Analyst"), existing_programmes=EXISTING)
    assert result.is_new is True
    assert result.suggested_name == "2027 Graduate Programme"
    assert result.normalized_name == "graduate program"
    assert result.program_type == "summer_internship"


def test_new_suggestion_always_gets_a_recomputed_normalized_name() -> None:
    suggestion = ProgrammeSuggestion(
        suggested_name="2026 Summer Analyst Programme - London",
        normalized_name="whatever the model said",
        program_type="summer_internship",
        is_new=True,
    )
    result = reconcile_suggestion(suggestion, role=ScrapedRole(title="x"), existing_programmes=EXISTING)
    assert result.normalized_name == "summer analyst program"


def test_skip_candidates_are_never_persisted() -> None:
    store = InMemoryRepository()
    firm_id = store.add_firm("Example Bank")
    saved = asyncio.run(
        save_discovery(
            store,
            candidate=CandidateLink(url="https://e.com/1", title="Role", action=RoleAction.SKIP),
            role=ScrapedRole(title="Role"),
            suggestion=ProgrammeSuggestion(suggested_name="2026 Summer Analyst", is_new=True),
            context=_context(store, firm_id),
        )
    )
    assert saved is None
    assert store.role_drafts == {}
    assert store.programme_drafts == {}


def test_matched_programme_links_role_draft_directly() -> None:
    store = InMemoryRepository()
    firm_id = store.add_firm("Example Bank")
    saved = asyncio.run(
        save_discovery(
            store,
            candidate=CandidateLink(
                url="https://e.com/1",
                title="Role",
                action=RoleAction.URL_CHANGED,
                existing_role_id="role-9",
                url_changed=True,
            ),
            role=ScrapedRole(title="Role"),
            suggestion=ProgrammeSuggestion(matched_program_id="programme-1", is_new=False, confidence="high"),
            context=_context(store, firm_id),
        )
    )
    assert saved is not None
    assert saved.programme_draft is None
    assert saved.role_draft.program_id == "programme-1"
    assert saved.role_draft.existing_role_id == "role-9"
    assert saved.role_draft.update_type == "URL_CHANGED"


def test_same_run_programmes_collapse_into_one_draft() -> None:
    store = InMemoryRepository()
    firm_id = store.add_firm("Example Bank")
    scrape_url = store.add_scrape_url(firm_id=firm_id, url="https://careers.example.com/students")
    first_url = "https://careers.example.com/jobs/ib"
    second_url = "https://careers.example.com/jobs/markets"
    names = {
        "Summer Analyst - IB": "2026 Summer Analyst",
        "Summer Analyst - Markets": "Summer Analyst 2026",
    }
    llm = FakeLLM(
        job_titles={first_url: "Summer Analyst - IB", second_url: "Summer Analyst - Markets"},
        suggestion=lambda role: ProgrammeSuggestion(
            suggested_name=names[role.title],
            program_type="summer_internship",
            confidence="high",
            is_new=True,
        ),
    )
    browser = FakeBrowser({first_url: detail_html("IB"), second_url: detail_html("Markets")})
    context = _context(store, firm_id, scrape_url_id=scrape_url.id)

    async def run() -> list[object]:
        outcomes = []
        for url in (first_url, second_url):
            candidate = CandidateLink(url=url, title=llm.job_titles[url], action=RoleAction.NEW_ROLE)
            outcomes.append(
                await run_detail_phase(candidate, browser=browser, llm=llm, repository=store, context=context)
            )
        return outcomes

    first, second = asyncio.run(run())

    assert len(store.programme_drafts) == 1
    (programme_draft,) = store.programme_drafts.values()
    assert programme_draft.suggested_name == "2026 Summer Analyst"
    assert programme_draft.normalized_name == "summer analyst"
    assert programme_draft.roles_preview == [first.saved.role_draft.scraped_data]
    assert first.saved.role_draft.programme_discovery_draft_id == programme_draft.id
    assert second.saved.role_draft.programme_discovery_draft_id == programme_draft.id
    assert len(store.role_drafts) == 2
    assert all(page.closed for page in browser.pages)
    assert context.usage.extraction.usage().total_tokens == 2000
    assert context.usage.suggestion.usage().total_tokens == 100


def test_extraction_failure_propagates_without_saving() -> None:
    store = InMemoryRepository()
    firm_id = store.add_firm("Example Bank")
    url = "https://careers.example.com/jobs/broken"
    llm = FakeLLM(job_titles={url: "Broken"}, failing_urls={url})
    browser = FakeBrowser({url: detail_html("Broken")})

    async def run() -> None:
        await run_detail_phase(
            CandidateLink(url=url, title="Broken", action=RoleAction.NEW_ROLE),
            browser=browser,
            llm=llm,
            repository=store,
            context=_context(store, firm_id),
        )

    with pytest.raises(LLMBoundaryError, match="extraction failed"):
        asyncio.run(run())
    assert store.role_drafts == {}
    assert browser.pages[0].closed
