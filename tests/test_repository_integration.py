from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from programme_scout.services.repository import PostgresRepository

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "sql" / "001_discovery_drafts.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    # Needs a database that already carries the catalogue tables (firms, programs, program_roles, roles).
    url = os.getenv("PS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require PS_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture
def firm_id(database_url: str) -> str:
    return _run(_prepare(database_url))


def test_concurrent_programme_drafts_converge_on_one_row(database_url: str, firm_id: str) -> None:
    async def scenario() -> list[Any]:
        repository = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=5)
        try:
            drafts = await asyncio.gather(
                *(
                    repository.save_programme_draft(
                        firm_id=firm_id,
                        source_url_id=None,
                        suggested_name="2026 Summer Analyst",
                        normalized_name="summer analyst",
                        program_type="summer_internship",
                        confidence="high",
                        reasoning="",
                        roles_preview=[{"title": f"Summer Analyst {index}"}],
                    )
                    for index in range(4)
                )
            )
            return list(drafts)
        finally:
            await repository.close()

    drafts = _run(scenario())
    assert len({draft.id for draft in drafts}) == 1
    assert drafts[0].roles_preview in [[{"title": f"Summer Analyst {index}"}] for index in range(4)]
    assert all(draft.roles_preview == drafts[0].roles_preview for draft in drafts)


def test_role_draft_find_or_create_and_status_changes(database_url: str, firm_id: str) -> None:
    async def scenario() -> tuple[str, str, str, int]:
        repository = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=2)
        try:
            payload: dict[str, Any] = {
                "firm_id": firm_id,
                "source_url_id": None,
                "programme_discovery_draft_id": None,
                "program_id": None,
                "existing_role_id": None,
                "update_type": "NEW_ROLE",
                "scraped_data": {"title": "Summer Analyst"},
                "url": "https://careers.example.com/jobs/1",
                "confidence": "high",
            }
            first = await repository.save_role_draft(**payload)
            second = await repository.save_role_draft(**payload)
            updated = await repository.set_role_draft_status([first.id], status="dismissed")
            third = await repository.save_role_draft(**payload)
            dismissed = await repository.list_dismissed_role_drafts(firm_id)
            return first.id, second.id, third.id, updated + len(dismissed)
        finally:
            await repository.close()

    first_id, second_id, third_id, changed = _run(scenario())
    assert first_id == second_id
    assert third_id != first_id
    assert changed == 2


def test_record_scan_run_tracks_failures(database_url: str, firm_id: str) -> None:
    async def scenario() -> tuple[str, int, str | None, int]:
        repository = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=2)
        try:
            pool = await repository._get_pool()
            scrape_url_id = await pool.fetchval(
                "insert into scrape_urls (firm_id, url) values ($1::uuid, $2) returning id::text",
                firm_id,
                "https://careers.example.com/students",
            )
            await repository.record_scan_run(scrape_url_id, metrics={"roles_found": 0}, error="listing unreachable")
            record = await repository.get_scrape_url(scrape_url_id)
            return record.status, record.error_count, record.last_error, len(record.runs_history)
        finally:
            await repository.close()

    assert _run(scenario()) == ("failed", 1, "listing unreachable", 1)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _prepare(database_url: str) -> str:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text())
        await conn.execute("truncate table role_discovery_drafts, programme_discovery_drafts, scrape_urls cascade")
        return await conn.fetchval("insert into firms (name) values ('Integration Bank') returning id::text")
    finally:
        await conn.close()
