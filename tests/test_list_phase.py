import asyncio

from fakes import LISTING_URL, FakeLLM, FakePage, listing_html
import pytest

from programme_scout.core.config import ScraperConfig
from programme_scout.jobs.list_phase import ListingUnavailableError, ListPhaseResult, run_list_phase
from programme_scout.schemas.discovery import RoleAction
from programme_scout.services.repository import ExistingRoleRecord
from programme_scout.services.role_index import RoleIndex
from programme_scout.services.usage import UsageTracker

IB_URL = "https://careers.example.com/jobs/ib"
MARKETS_URL = "https://careers.example.com/jobs/markets"
TECH_URL = "https://careers.example.com/jobs/tech"
BLOG_URL = "https://careers.example.com/blog/life-here"


def _run(
    page: FakePage,
    llm: FakeLLM,
    *,
    index: RoleIndex | None = None,
    config: ScraperConfig | None = None,
    usage: UsageTracker | None = None,
) -> ListPhaseResult:
    return asyncio.run(
        run_list_phase(
            page=page,
            listing_url=LISTING_URL,
            llm=llm,
            index=index or RoleIndex.build([], []),
            config=config or ScraperConfig(),
            usage=usage or UsageTracker(),
        )
    )


def test_paginated_listing_is_walked_and_classified_page_by_page() -> None:
    page = FakePage(
        {
            LISTING_URL: [
                listing_html((IB_URL, "Summer Analyst - IB"), (BLOG_URL, "Life at Example")),
                listing_html((MARKETS_URL, "Summer Analyst - Markets")),
            ]
        }
    )
    llm = FakeLLM(job_titles={IB_URL: "Summer Analyst - IB", MARKETS_URL: "Summer Analyst - Markets"})
    usage = UsageTracker()

    result = _run(page, llm, usage=usage)

    assert result.pages_visited == 2
    assert result.roles_found == 2
    assert [candidate.url for candidate in result.candidates] == [IB_URL, MARKETS_URL]
    assert all(candidate.action is RoleAction.NEW_ROLE for candidate in result.candidates)
    assert [role.title for role in result.seen_roles] == ["Summer Analyst - IB", "Summer Analyst - Markets"]
    # The navigation link from page one is not offered again on page two.
    assert llm.classified_batches[1] == [MARKETS_URL]
    assert usage.usage().total_tokens == 200


def test_open_existing_role_is_counted_and_skipped() -> None:
    page = FakePage({LISTING_URL: listing_html((IB_URL, "Summer Analyst - IB"), (TECH_URL, "Technology Intern"))})
    llm = FakeLLM(job_titles={IB_URL: "Summer Analyst - IB", TECH_URL: "Technology Intern"})
    index = RoleIndex.build(
        [
            ExistingRoleRecord(
                id="role-1",
                program_id="programme-1",
                role_id=None,
                url=IB_URL,
                title="Summer Analyst - IB",
                alias=None,
                canonical_name=None,
                is_open=True,
            )
        ],
        [],
    )

    result = _run(page, llm, index=index)

    assert result.roles_found == 2
    assert result.roles_skipped == 1
    assert [candidate.url for candidate in result.candidates] == [TECH_URL]


def test_repeated_job_link_is_counted_once() -> None:
    page = FakePage(
        {
            LISTING_URL: [
                listing_html((IB_URL, "Summer Analyst - IB")),
                listing_html((IB_URL + "?src=page2", "Summer Analyst - IB")),
            ]
        }
    )
    llm = FakeLLM(job_titles={IB_URL: "Summer Analyst - IB", IB_URL + "?src=page2": "Summer Analyst - IB"})

    result = _run(page, llm)

    assert result.roles_found == 1
    assert len(result.candidates) == 1


def test_page_cap_stops_pagination() -> None:
    page = FakePage(
        {
            LISTING_URL: [
                listing_html((IB_URL, "Summer Analyst - IB")),
                listing_html((MARKETS_URL, "Summer Analyst - Markets")),
            ]
        }
    )
    llm = FakeLLM(job_titles={IB_URL: "Summer Analyst - IB", MARKETS_URL: "Summer Analyst - Markets"})

    result = _run(page, llm, config=ScraperConfig(max_pages=1))

    assert result.pages_visited == 1
    assert [candidate.url for candidate in result.candidates] == [IB_URL]


def test_classification_failure_treats_page_as_empty() -> None:
    page = FakePage({LISTING_URL: listing_html((IB_URL, "Summer Analyst - IB"))})
    llm = FakeLLM(job_titles={IB_URL: "Summer Analyst - IB"}, classification_fails=True)

    result = _run(page, llm)

    assert result.roles_found == 0
    assert result.candidates == []
    assert result.pages_visited == 1


def test_unreachable_listing_raises() -> None:
    page = FakePage({}, unreachable={LISTING_URL})
    llm = FakeLLM(job_titles={})

    with pytest.raises(ListingUnavailableError):
        _run(page, llm)
    assert llm.classified_batches == []
