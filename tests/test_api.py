import asyncio
import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

from programme_scout.api.routes.scans import get_scan_runner
from programme_scout.core.config import get_settings
from programme_scout.main import app
from programme_scout.schemas.discovery import DiscoveryMetrics
from programme_scout.services.repository import RepositoryNotFoundError, get_repository
from programme_scout.services.store import InMemoryRepository

API_KEY = "review-key"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def store() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def api_client(store: InMemoryRepository) -> TestClient:
    os.environ["PS_API_KEY"] = API_KEY
    get_settings.cache_clear()
    app.dependency_overrides[get_repository] = lambda: store

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("PS_API_KEY", None)
    get_settings.cache_clear()


def _seed_drafts(store: InMemoryRepository) -> tuple[str, str, str]:
    firm_id = store.add_firm("Example Bank")

    async def seed() -> tuple[str, str]:
        programme_draft = await store.save_programme_draft(
            firm_id=firm_id,
            source_url_id=None,
            suggested_name="2026 Summer Analyst",
            normalized_name="summer analyst",
            program_type="summer_internship",
            confidence="high",
            reasoning="shared pattern",
            roles_preview=[{"title": "Summer Analyst - IB", "is_open": True}],
        )
        role_draft = await store.save_role_draft(
            firm_id=firm_id,
            source_url_id=None,
            programme_discovery_draft_id=programme_draft.id,
            program_id=None,
            existing_role_id=None,
            update_type="NEW_ROLE",
            scraped_data={"title": "Summer Analyst - IB", "is_open": True},
            url="https://careers.example.com/jobs/ib",
            confidence="high",
        )
        return programme_draft.id, role_draft.id

    programme_draft_id, role_draft_id = asyncio.run(seed())
    return firm_id, programme_draft_id, role_draft_id


def test_health_is_public() -> None:
    client = TestClient(app)
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/").json() == {"status": "ok", "service": "programme-scout"}


def test_review_routes_require_the_api_key(api_client: TestClient) -> None:
    assert api_client.get("/discoveries", params={"firm_id": "firm-1"}).status_code == 401
    response = api_client.get("/discoveries", params={"firm_id": "firm-1"}, headers={"X-API-Key": "wrong"})
    assert response.status_code == 401


def test_review_routes_are_closed_without_a_configured_key(store: InMemoryRepository) -> None:
    os.environ.pop("PS_API_KEY", None)
    get_settings.cache_clear()
    app.dependency_overrides[get_repository] = lambda: store
    try:
        client = TestClient(app)
        response = client.get("/discoveries", params={"firm_id": "firm-1"}, headers=HEADERS)
        assert response.status_code == 503
    finally:
        app.dependency_overrides.clear()
        get_settings.cache_clear()


def test_list_and_approve_programme_draft(api_client: TestClient, store: InMemoryRepository) -> None:
    firm_id, programme_draft_id, role_draft_id = _seed_drafts(store)

    listing = api_client.get("/discoveries", params={"firm_id": firm_id}, headers=HEADERS)
    assert listing.status_code == 200
    body = listing.json()
    assert [draft["id"] for draft in body["programme_drafts"]] == [programme_draft_id]
    assert body["programme_drafts"][0]["roles_preview"] == [{"title": "Summer Analyst - IB", "is_open": True}]
    assert [draft["id"] for draft in body["role_drafts"]] == [role_draft_id]
    assert body["role_drafts"][0]["scraped_data"]["title"] == "Summer Analyst - IB"

    diff = api_client.post(
        "/discoveries/diff",
        json={"programme_id": programme_draft_id, "role_draft_ids": [role_draft_id]},
        headers=HEADERS,
    )
    assert diff.status_code == 200
    assert diff.json()["to_add"] == [{"draft_id": role_draft_id, "title": "Summer Analyst - IB"}]

    approved = api_client.post(f"/discoveries/programmes/{programme_draft_id}/approve", headers=HEADERS)
    assert approved.status_code == 200
    assert approved.json()["roles_created"] == 1
    assert store.role_drafts[role_draft_id].status == "approved"

    remaining = api_client.get("/discoveries", params={"firm_id": firm_id}, headers=HEADERS).json()
    assert remaining == {"programme_drafts": [], "role_drafts": []}


def test_unknown_programme_draft_is_not_found(api_client: TestClient) -> None:
    response = api_client.post("/discoveries/programmes/missing/approve", headers=HEADERS)
    assert response.status_code == 404


def test_standalone_approval_requires_role_ids(api_client: TestClient) -> None:
    response = api_client.post("/discoveries/roles/approve", json={"role_draft_ids": []}, headers=HEADERS)
    assert response.status_code == 422


def test_dismiss_route(api_client: TestClient, store: InMemoryRepository) -> None:
    _, programme_draft_id, role_draft_id = _seed_drafts(store)

    response = api_client.post(
        "/discoveries/dismiss",
        json={"programme_draft_ids": [programme_draft_id], "role_draft_ids": [role_draft_id]},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {"programmes_dismissed": 1, "roles_dismissed": 1}


def test_scan_route_runs_the_scan_runner(api_client: TestClient) -> None:
    calls: list[tuple[str, dict[str, Any]]] = []

    async def runner(scrape_url_id: str, overrides: dict[str, Any]) -> DiscoveryMetrics:
        calls.append((scrape_url_id, overrides))
        return DiscoveryMetrics(roles_found=4, roles_new=2)

    app.dependency_overrides[get_scan_runner] = lambda: runner

    response = api_client.post(
        "/scans",
        json={"scrape_url_id": "scrape-1", "scraper_config": {"maxPages": 2}},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["roles_found"] == 4
    assert calls == [("scrape-1", {"maxPages": 2})]


def test_scan_route_maps_missing_scrape_url(api_client: TestClient) -> None:
    async def runner(scrape_url_id: str, overrides: dict[str, Any]) -> DiscoveryMetrics:
        raise RepositoryNotFoundError(f"scrape url {scrape_url_id} not found")

    app.dependency_overrides[get_scan_runner] = lambda: runner

    response = api_client.post("/scans", json={"scrape_url_id": "missing"}, headers=HEADERS)

    assert response.status_code == 404
