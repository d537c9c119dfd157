from __future__ import annotations

import asyncio
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from programme_scout.services.repository import (
    DRAFT_STATUSES,
    SCRAPER_SOURCE,
    DismissedDraftRecord,
    ExistingRoleRecord,
    ProgramRoleRecord,
    ProgrammeDraftRecord,
    ProgrammeRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    RoleDraftRecord,
    RoleTypeRecord,
    ScrapeUrlRecord,
    append_run_history,
)


class InMemoryRepository:
    """Process-local store with the same contract as PostgresRepository.

    Used by local runs without a database and by the test-suite. Find-or-create
    writes hold a lock so concurrent detail tasks see one pending draft.
    """

    def __init__(self) -> None:
        self.firms: dict[str, str] = {}
        self.programmes: dict[str, ProgrammeRecord] = {}
        self.program_roles: dict[str, dict[str, Any]] = {}
        self.role_types: list[RoleTypeRecord] = []
        self.programme_drafts: dict[str, ProgrammeDraftRecord] = {}
        self.role_drafts: dict[str, RoleDraftRecord] = {}
        self.scrape_urls: dict[str, ScrapeUrlRecord] = {}
        self._write_lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    def add_firm(self, name: str, *, firm_id: str | None = None) -> str:
        firm_id = firm_id or str(uuid4())
        self.firms[firm_id] = name
        return firm_id

    def add_programme(
        self,
        *,
        firm_id: str,
        name: str,
        normalized_name: str | None = None,
        program_type: str | None = None,
        source: str | None = "manual",
    ) -> ProgrammeRecord:
        record = ProgrammeRecord(
            id=str(uuid4()),
            firm_id=firm_id,
            name=name,
            normalized_name=normalized_name,
            program_type=program_type,
            source=source,
        )
        self.programmes[record.id] = record
        return record

    def add_program_role(self, *, program_id: str, role_type_id: str | None = None, **data: Any) -> str:
        role_id = str(uuid4())
        self.program_roles[role_id] = {
            "id": role_id,
            "program_id": program_id,
            "role_id": role_type_id,
            "alias": None,
            "closed_date": None,
            **data,
        }
        return role_id

    def add_scrape_url(
        self,
        *,
        firm_id: str,
        url: str,
        scrape_config: dict[str, Any] | None = None,
        expected_programmes: list[dict[str, Any]] | None = None,
    ) -> ScrapeUrlRecord:
        record = ScrapeUrlRecord(
            id=str(uuid4()),
            firm_id=firm_id,
            url=url,
            firm_name=self.firms.get(firm_id),
            scrape_config=scrape_config or {},
            expected_programmes=expected_programmes or [],
        )
        self.scrape_urls[record.id] = record
        return record

    async def list_existing_roles(self, firm_id: str) -> list[ExistingRoleRecord]:
        labels = {role_type.id: role_type.label for role_type in self.role_types}
        records: list[ExistingRoleRecord] = []
        for row in self.program_roles.values():
            programme = self.programmes.get(row["program_id"])
            if programme is None or programme.firm_id != firm_id:
                continue
            records.append(
                ExistingRoleRecord(
                    id=row["id"],
                    program_id=row["program_id"],
                    role_id=row.get("role_id"),
                    url=row.get("url"),
                    title=row.get("title"),
                    alias=row.get("alias"),
                    canonical_name=row.get("canonical_name"),
                    is_open=row.get("is_open"),
                    program_name=programme.name,
                    role_label=labels.get(row.get("role_id") or ""),
                    source=row.get("source"),
                )
            )
        return records

    async def list_dismissed_role_drafts(self, firm_id: str) -> list[DismissedDraftRecord]:
        return [
            DismissedDraftRecord(url=draft.url, title=draft.scraped_data.get("title"))
            for draft in self.role_drafts.values()
            if draft.firm_id == firm_id and draft.status == "dismissed"
        ]

    async def list_programmes(self, firm_id: str) -> list[ProgrammeRecord]:
        return sorted(
            (programme for programme in self.programmes.values() if programme.firm_id == firm_id),
            key=lambda programme: programme.name,
        )

    async def get_programme(self, programme_id: str) -> ProgrammeRecord | None:
        return self.programmes.get(programme_id)

    async def find_programme(self, *, firm_id: str, normalized_name: str) -> ProgrammeRecord | None:
        for programme in self.programmes.values():
            if programme.firm_id == firm_id and programme.normalized_name == normalized_name:
                return programme
        return None

    async def create_programme(
        self,
        *,
        firm_id: str,
        name: str,
        normalized_name: str,
        program_type: str | None,
        source_url_id: str | None,
    ) -> ProgrammeRecord:
        async with self._write_lock:
            if await self.find_programme(firm_id=firm_id, normalized_name=normalized_name) is not None:
                raise RepositoryConflictError(f"programme {normalized_name!r} already exists for firm")
            return self.add_programme(
                firm_id=firm_id,
                name=name,
                normalized_name=normalized_name,
                program_type=program_type,
                source=SCRAPER_SOURCE,
            )

    async def list_pending_programme_drafts(self, source_url_id: str) -> list[ProgrammeDraftRecord]:
        return [
            draft
            for draft in self.programme_drafts.values()
            if draft.source_url_id == source_url_id and draft.status == "pending"
        ]

    async def list_programme_drafts(self, *, firm_id: str, status: str = "pending") -> list[ProgrammeDraftRecord]:
        return [
            draft for draft in self.programme_drafts.values() if draft.firm_id == firm_id and draft.status == status
        ]

    async def get_programme_draft(self, draft_id: str) -> ProgrammeDraftRecord:
        draft = self.programme_drafts.get(draft_id)
        if draft is None:
            raise RepositoryNotFoundError(f"programme draft {draft_id} not found")
        return draft

    async def save_programme_draft(
        self,
        *,
        firm_id: str,
        source_url_id: str | None,
        suggested_name: str,
        normalized_name: str,
        program_type: str | None,
        confidence: str | None,
        reasoning: str | None,
        roles_preview: list[dict[str, Any]] | None = None,
    ) -> ProgrammeDraftRecord:
        async with self._write_lock:
            for draft in self.programme_drafts.values():
                if draft.firm_id == firm_id and draft.normalized_name == normalized_name and draft.status == "pending":
                    return draft
            draft = ProgrammeDraftRecord(
                id=str(uuid4()),
                firm_id=firm_id,
                source_url_id=source_url_id,
                suggested_name=suggested_name,
                normalized_name=normalized_name,
                program_type=program_type,
                confidence=confidence,
                reasoning=reasoning,
                status="pending",
                created_at=_now(),
                roles_preview=list(roles_preview or []),
            )
            self.programme_drafts[draft.id] = draft
            return draft

    async def save_role_draft(
        self,
        *,
        firm_id: str,
        source_url_id: str | None,
        programme_discovery_draft_id: str | None,
        program_id: str | None,
        existing_role_id: str | None,
        update_type: str,
        scraped_data: dict[str, Any],
        url: str,
        confidence: str | None,
    ) -> RoleDraftRecord:
        async with self._write_lock:
            for draft in self.role_drafts.values():
                if draft.firm_id != firm_id or draft.status != "pending":
                    continue
                if existing_role_id and draft.existing_role_id == existing_role_id:
                    return draft
                if not existing_role_id and draft.existing_role_id is None and draft.url == url:
                    return draft
            draft = RoleDraftRecord(
                id=str(uuid4()),
                firm_id=firm_id,
                source_url_id=source_url_id,
                programme_discovery_draft_id=programme_discovery_draft_id,
                program_id=program_id,
                existing_role_id=existing_role_id,
                update_type=update_type,
                scraped_data=deepcopy(scraped_data),
                url=url,
                confidence=confidence,
                status="pending",
                created_at=_now(),
            )
            self.role_drafts[draft.id] = draft
            return draft

    async def list_role_drafts(self, *, firm_id: str, status: str = "pending") -> list[RoleDraftRecord]:
        return [draft for draft in self.role_drafts.values() if draft.firm_id == firm_id and draft.status == status]

    async def list_role_drafts_for_programme_draft(
        self, programme_draft_id: str, *, status: str = "pending"
    ) -> list[RoleDraftRecord]:
        return [
            draft
            for draft in self.role_drafts.values()
            if draft.programme_discovery_draft_id == programme_draft_id and draft.status == status
        ]

    async def get_role_draft(self, draft_id: str) -> RoleDraftRecord:
        draft = self.role_drafts.get(draft_id)
        if draft is None:
            raise RepositoryNotFoundError(f"role draft {draft_id} not found")
        return draft

    async def get_role_drafts(self, draft_ids: list[str]) -> list[RoleDraftRecord]:
        return [self.role_drafts[draft_id] for draft_id in draft_ids if draft_id in self.role_drafts]

    async def set_programme_draft_status(self, draft_ids: list[str], *, status: str) -> int:
        return self._set_status(self.programme_drafts, draft_ids, status=status)

    async def set_role_draft_status(self, draft_ids: list[str], *, status: str) -> int:
        return self._set_status(self.role_drafts, draft_ids, status=status)

    async def get_program_role(self, role_id: str) -> ProgramRoleRecord | None:
        row = self.program_roles.get(role_id)
        return self._program_role(row) if row is not None else None

    async def list_program_roles(self, program_id: str) -> list[ProgramRoleRecord]:
        return [self._program_role(row) for row in self.program_roles.values() if row["program_id"] == program_id]

    async def list_firm_roles(self, *, firm_id: str, source: str) -> list[ProgramRoleRecord]:
        programme_ids = {programme.id for programme in self.programmes.values() if programme.firm_id == firm_id}
        return [
            self._program_role(row)
            for row in self.program_roles.values()
            if row["program_id"] in programme_ids and row.get("source") == source
        ]

    async def delete_program_roles(
        self,
        *,
        source: str,
        program_id: str | None = None,
        firm_id: str | None = None,
    ) -> int:
        if program_id is None and firm_id is None:
            raise RepositoryValidationError("program_id or firm_id is required")
        if program_id is not None:
            programme_ids = {program_id}
        else:
            programme_ids = {programme.id for programme in self.programmes.values() if programme.firm_id == firm_id}
        doomed = [
            role_id
            for role_id, row in self.program_roles.items()
            if row["program_id"] in programme_ids and row.get("source") == source
        ]
        for role_id in doomed:
            del self.program_roles[role_id]
        return len(doomed)

    async def insert_program_role(self, *, program_id: str, role_type_id: str | None, data: dict[str, Any]) -> str:
        return self.add_program_role(program_id=program_id, role_type_id=role_type_id, **data)

    async def update_program_role(self, role_id: str, *, data: dict[str, Any], reopen: bool = False) -> None:
        row = self.program_roles.get(role_id)
        if row is None:
            raise RepositoryNotFoundError(f"program role {role_id} not found")
        row.update(data)
        if reopen:
            row["is_open"] = True
            row["closed_date"] = None

    async def list_role_types(self) -> list[RoleTypeRecord]:
        return list(self.role_types)

    async def get_scrape_url(self, scrape_url_id: str) -> ScrapeUrlRecord:
        record = self.scrape_urls.get(scrape_url_id)
        if record is None:
            raise RepositoryNotFoundError(f"scrape url {scrape_url_id} not found")
        return record

    async def list_due_scrape_urls(self, *, limit: int, interval_hours: int) -> list[ScrapeUrlRecord]:
        cutoff = _now() - timedelta(hours=interval_hours)
        due = [
            record
            for record in self.scrape_urls.values()
            if record.status in {"active", "failed"}
            and (record.last_scraped_at is None or record.last_scraped_at < cutoff)
        ]
        due.sort(key=lambda record: record.last_scraped_at or datetime.min.replace(tzinfo=timezone.utc))
        return due[:limit]

    async def record_scan_run(self, scrape_url_id: str, *, metrics: dict[str, Any], error: str | None) -> None:
        record = await self.get_scrape_url(scrape_url_id)
        record.runs_history = append_run_history(record.runs_history, metrics=metrics, error=error)
        record.last_scraped_at = _now()
        if error:
            record.last_error = error
            record.error_count += 1
            record.status = "failed"
        else:
            record.last_error = None
            record.error_count = 0
            record.status = "active"

    @staticmethod
    def _set_status(drafts: dict[str, Any], draft_ids: list[str], *, status: str) -> int:
        if status not in DRAFT_STATUSES:
            raise RepositoryValidationError(f"unsupported draft status: {status}")
        updated = 0
        for draft_id in draft_ids:
            draft = drafts.get(draft_id)
            if draft is None:
                continue
            draft.status = status
            updated += 1
        return updated

    @staticmethod
    def _program_role(row: dict[str, Any]) -> ProgramRoleRecord:
        return ProgramRoleRecord(
            id=row["id"],
            program_id=row["program_id"],
            role_id=row.get("role_id"),
            title=row.get("title"),
            alias=row.get("alias"),
            source=row.get("source"),
            url=row.get("url"),
            is_open=row.get("is_open"),
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)
