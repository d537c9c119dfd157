from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from programme_scout.core.config import get_settings

RUNS_HISTORY_LIMIT = 50
SCRAPER_SOURCE = "careers-scraper"
LEGACY_SOURCE = "trackr"
MANUAL_SOURCE = "manual"
DRAFT_STATUSES = {"pending", "approved", "dismissed"}

ROLE_DATA_COLUMNS = (
    "title",
    "canonical_name",
    "role_type",
    "location",
    "description",
    "url",
    "opening_date",
    "deadline",
    "rolling",
    "is_open",
    "current_round",
    "process",
    "cv_required",
    "cover_letter_required",
    "written_answers_required",
    "info_test_prep_url",
    "source",
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write cannot be reconciled with the stored state."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class ExistingRoleRecord:
    id: str
    program_id: str | None
    role_id: str | None
    url: str | None
    title: str | None
    alias: str | None
    canonical_name: str | None
    is_open: bool | None
    program_name: str | None = None
    role_label: str | None = None
    source: str | None = None


@dataclass(slots=True)
class DismissedDraftRecord:
    url: str | None
    title: str | None


@dataclass(slots=True)
class ProgrammeRecord:
    id: str
    firm_id: str
    name: str
    normalized_name: str | None
    program_type: str | None
    source: str | None = None


@dataclass(slots=True)
class ProgrammeDraftRecord:
    id: str
    firm_id: str
    source_url_id: str | None
    suggested_name: str
    normalized_name: str
    program_type: str | None
    confidence: str | None
    reasoning: str | None
    status: str
    matched_existing_program_id: str | None = None
    created_at: datetime | None = None
    # Scraped role payloads captured when the draft was first proposed.
    roles_preview: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class RoleDraftRecord:
    id: str
    firm_id: str
    source_url_id: str | None
    programme_discovery_draft_id: str | None
    program_id: str | None
    existing_role_id: str | None
    update_type: str | None
    scraped_data: dict[str, Any]
    url: str
    confidence: str | None
    status: str
    source: str = SCRAPER_SOURCE
    created_at: datetime | None = None


@dataclass(slots=True)
class ProgramRoleRecord:
    id: str
    program_id: str
    role_id: str | None
    title: str | None
    alias: str | None
    source: str | None
    role_label: str | None = None
    url: str | None = None
    is_open: bool | None = None


@dataclass(slots=True)
class RoleTypeRecord:
    id: str
    slug: str
    label: str


@dataclass(slots=True)
class ScrapeUrlRecord:
    id: str
    firm_id: str
    url: str
    firm_name: str | None = None
    scrape_config: dict[str, Any] = field(default_factory=dict)
    expected_programmes: list[dict[str, Any]] = field(default_factory=list)
    status: str = "active"
    error_count: int = 0
    last_error: str | None = None
    runs_history: list[dict[str, Any]] = field(default_factory=list)
    last_scraped_at: datetime | None = None


def append_run_history(
    history: list[dict[str, Any]],
    *,
    metrics: dict[str, Any],
    error: str | None,
    at: datetime | None = None,
) -> list[dict[str, Any]]:
    entry = {
        "timestamp": (at or datetime.now(timezone.utc)).isoformat(),
        "metrics": metrics,
        "error": error,
    }
    return [*history, entry][-RUNS_HISTORY_LIMIT:]


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def list_existing_roles(self, firm_id: str) -> list[ExistingRoleRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              pr.id::text as id,
              pr.program_id::text as program_id,
              pr.role_id::text as role_id,
              pr.url,
              pr.title,
              pr.alias,
              pr.canonical_name,
              pr.is_open,
              pr.source,
              p.name as program_name,
              r.label as role_label
            from program_roles pr
            join programs p on p.id = pr.program_id
            left join roles r on r.id = pr.role_id
            where p.firm_id = $1::uuid
            """,
            firm_id,
        )
        return [
            ExistingRoleRecord(
                id=row["id"],
                program_id=row["program_id"],
                role_id=row["role_id"],
                url=row["url"],
                title=row["title"],
                alias=row["alias"],
                canonical_name=row["canonical_name"],
                is_open=row["is_open"],
                program_name=row["program_name"],
                role_label=row["role_label"],
                source=row["source"],
            )
            for row in rows
        ]

    async def list_dismissed_role_drafts(self, firm_id: str) -> list[DismissedDraftRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select url, scraped_data->>'title' as title
            from role_discovery_drafts
            where firm_id = $1::uuid and status = 'dismissed'
            """,
            firm_id,
        )
        return [DismissedDraftRecord(url=row["url"], title=row["title"]) for row in rows]

    async def list_programmes(self, firm_id: str) -> list[ProgrammeRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, firm_id::text as firm_id, name, normalized_name, program_type::text as program_type, source
            from programs
            where firm_id = $1::uuid
            order by name
            """,
            firm_id,
        )
        return [self._programme_row_to_record(row) for row in rows]

    async def get_programme(self, programme_id: str) -> ProgrammeRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, firm_id::text as firm_id, name, normalized_name, program_type::text as program_type, source
            from programs
            where id = $1::uuid
            """,
            programme_id,
        )
        return self._programme_row_to_record(row) if row else None

    async def find_programme(self, *, firm_id: str, normalized_name: str) -> ProgrammeRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, firm_id::text as firm_id, name, normalized_name, program_type::text as program_type, source
            from programs
            where firm_id = $1::uuid and normalized_name = $2
            order by created_at
            limit 1
            """,
            firm_id,
            normalized_name,
        )
        return self._programme_row_to_record(row) if row else None

    async def create_programme(
        self,
        *,
        firm_id: str,
        name: str,
        normalized_name: str,
        program_type: str | None,
        source_url_id: str | None,
    ) -> ProgrammeRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into programs (firm_id, name, normalized_name, program_type, source, source_url_id)
                values ($1::uuid, $2, $3, $4, $5, $6::uuid)
                returning id::text as id, firm_id::text as firm_id, name, normalized_name, program_type::text as program_type, source
                """,
                firm_id,
                name,
                normalized_name,
                program_type,
                SCRAPER_SOURCE,
                source_url_id,
            )
        except asyncpg.UniqueViolationError as exc:
            raise RepositoryConflictError(f"programme {normalized_name!r} already exists for firm") from exc
        if row is None:
            raise RepositoryConflictError("programme insert returned no row")
        return self._programme_row_to_record(row)

    async def list_pending_programme_drafts(self, source_url_id: str) -> list[ProgrammeDraftRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_PROGRAMME_DRAFT_SELECT}
            where source_url_id = $1::uuid and status = 'pending'
            order by created_at
            """,
            source_url_id,
        )
        return [self._programme_draft_row_to_record(row) for row in rows]

    async def list_programme_drafts(self, *, firm_id: str, status: str = "pending") -> list[ProgrammeDraftRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_PROGRAMME_DRAFT_SELECT}
            where firm_id = $1::uuid and status = $2
            order by created_at
            """,
            firm_id,
            status,
        )
        return [self._programme_draft_row_to_record(row) for row in rows]

    async def get_programme_draft(self, draft_id: str) -> ProgrammeDraftRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"{_PROGRAMME_DRAFT_SELECT} where id = $1::uuid", draft_id)
        if row is None:
            raise RepositoryNotFoundError(f"programme draft {draft_id} not found")
        return self._programme_draft_row_to_record(row)

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
        """Return the pending draft for (firm, normalized name), inserting it if none exists.

        Backed by the partial unique index on pending drafts, so two concurrent
        detail tasks proposing the same programme converge on one row.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into programme_discovery_drafts (
                      firm_id,
                      source_url_id,
                      suggested_name,
                      normalized_name,
                      program_type,
                      confidence,
                      reasoning,
                      roles_preview,
                      status,
                      source
                    )
                    values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8::jsonb, 'pending', $9)
                    on conflict (firm_id, normalized_name) where status = 'pending' do nothing
                    returning {_PROGRAMME_DRAFT_COLUMNS}
                    """,
                    firm_id,
                    source_url_id,
                    suggested_name,
                    normalized_name,
                    program_type,
                    confidence,
                    reasoning,
                    json.dumps(roles_preview or []),
                    SCRAPER_SOURCE,
                )
                if row is None:
                    row = await conn.fetchrow(
                        f"""
                        {_PROGRAMME_DRAFT_SELECT}
                        where firm_id = $1::uuid and normalized_name = $2 and status = 'pending'
                        """,
                        firm_id,
                        normalized_name,
                    )
                if row is None:
                    raise RepositoryConflictError("failed to resolve pending programme draft after conflict")
                return self._programme_draft_row_to_record(row)

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
        """Return the pending draft for the role, inserting a new one otherwise.

        A role is keyed by existing role id when known, else by URL. Approved or
        dismissed drafts never block a new pending draft.
        """
        if existing_role_id:
            conflict_target = "(firm_id, existing_role_id) where status = 'pending' and existing_role_id is not null"
            lookup = "existing_role_id = $2::uuid"
            lookup_value = existing_role_id
        else:
            conflict_target = "(firm_id, url) where status = 'pending' and existing_role_id is null"
            lookup = "url = $2 and existing_role_id is null"
            lookup_value = url

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into role_discovery_drafts (
                      firm_id,
                      source_url_id,
                      programme_discovery_draft_id,
                      program_id,
                      existing_role_id,
                      update_type,
                      scraped_data,
                      url,
                      confidence,
                      status,
                      source
                    )
                    values ($1::uuid, $2::uuid, $3::uuid, $4::uuid, $5::uuid, $6, $7::jsonb, $8, $9, 'pending', $10)
                    on conflict {conflict_target} do nothing
                    returning {_ROLE_DRAFT_COLUMNS}
                    """,
                    firm_id,
                    source_url_id,
                    programme_discovery_draft_id,
                    program_id,
                    existing_role_id,
                    update_type,
                    json.dumps(scraped_data),
                    url,
                    confidence,
                    SCRAPER_SOURCE,
                )
                if row is None:
                    row = await conn.fetchrow(
                        f"""
                        {_ROLE_DRAFT_SELECT}
                        where firm_id = $1::uuid and {lookup} and status = 'pending'
                        order by created_at desc
                        limit 1
                        """,
                        firm_id,
                        lookup_value,
                    )
                if row is None:
                    raise RepositoryConflictError("failed to resolve pending role draft after conflict")
                return self._role_draft_row_to_record(row)

    async def list_role_drafts(self, *, firm_id: str, status: str = "pending") -> list[RoleDraftRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_ROLE_DRAFT_SELECT}
            where firm_id = $1::uuid and status = $2
            order by created_at
            """,
            firm_id,
            status,
        )
        return [self._role_draft_row_to_record(row) for row in rows]

    async def list_role_drafts_for_programme_draft(
        self, programme_draft_id: str, *, status: str = "pending"
    ) -> list[RoleDraftRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_ROLE_DRAFT_SELECT}
            where programme_discovery_draft_id = $1::uuid and status = $2
            order by created_at
            """,
            programme_draft_id,
            status,
        )
        return [self._role_draft_row_to_record(row) for row in rows]

    async def get_role_draft(self, draft_id: str) -> RoleDraftRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"{_ROLE_DRAFT_SELECT} where id = $1::uuid", draft_id)
        if row is None:
            raise RepositoryNotFoundError(f"role draft {draft_id} not found")
        return self._role_draft_row_to_record(row)

    async def get_role_drafts(self, draft_ids: list[str]) -> list[RoleDraftRecord]:
        if not draft_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(f"{_ROLE_DRAFT_SELECT} where id = any($1::uuid[])", draft_ids)
        return [self._role_draft_row_to_record(row) for row in rows]

    async def set_programme_draft_status(self, draft_ids: list[str], *, status: str) -> int:
        return await self._set_draft_status("programme_discovery_drafts", draft_ids, status=status)

    async def set_role_draft_status(self, draft_ids: list[str], *, status: str) -> int:
        return await self._set_draft_status("role_discovery_drafts", draft_ids, status=status)

    async def _set_draft_status(self, table: str, draft_ids: list[str], *, status: str) -> int:
        if status not in DRAFT_STATUSES:
            raise RepositoryValidationError(f"unsupported draft status: {status}")
        if not draft_ids:
            return 0
        pool = await self._get_pool()
        result = await pool.execute(
            f"""
            update {table}
            set status = $2, reviewed_at = now()
            where id = any($1::uuid[])
            """,
            draft_ids,
            status,
        )
        return self._affected_rows(result)

    async def get_program_role(self, role_id: str) -> ProgramRoleRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            {_PROGRAM_ROLE_SELECT}
            where pr.id = $1::uuid
            """,
            role_id,
        )
        return self._program_role_row_to_record(row) if row else None

    async def list_program_roles(self, program_id: str) -> list[ProgramRoleRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_PROGRAM_ROLE_SELECT}
            where pr.program_id = $1::uuid
            """,
            program_id,
        )
        return [self._program_role_row_to_record(row) for row in rows]

    async def list_firm_roles(self, *, firm_id: str, source: str) -> list[ProgramRoleRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_PROGRAM_ROLE_SELECT}
            join programs p on p.id = pr.program_id
            where p.firm_id = $1::uuid and pr.source = $2
            """,
            firm_id,
            source,
        )
        return [self._program_role_row_to_record(row) for row in rows]

    async def delete_program_roles(
        self,
        *,
        source: str,
        program_id: str | None = None,
        firm_id: str | None = None,
    ) -> int:
        if program_id is None and firm_id is None:
            raise RepositoryValidationError("program_id or firm_id is required")
        pool = await self._get_pool()
        if program_id is not None:
            result = await pool.execute(
                "delete from program_roles where program_id = $1::uuid and source = $2",
                program_id,
                source,
            )
        else:
            result = await pool.execute(
                """
                delete from program_roles
                where source = $2
                  and program_id in (select id from programs where firm_id = $1::uuid)
                """,
                firm_id,
                source,
            )
        return self._affected_rows(result)

    async def insert_program_role(self, *, program_id: str, role_type_id: str | None, data: dict[str, Any]) -> str:
        pool = await self._get_pool()
        values = [self._role_column_value(column, data.get(column)) for column in ROLE_DATA_COLUMNS]
        placeholders = ", ".join(f"${index}" for index in range(3, len(ROLE_DATA_COLUMNS) + 3))
        row = await pool.fetchrow(
            f"""
            insert into program_roles (program_id, role_id, {", ".join(ROLE_DATA_COLUMNS)}, first_seen_at, last_seen_at)
            values ($1::uuid, $2::uuid, {placeholders}, now(), now())
            returning id::text as id
            """,
            program_id,
            role_type_id,
            *values,
        )
        if row is None:
            raise RepositoryConflictError("program role insert returned no row")
        return row["id"]

    async def update_program_role(self, role_id: str, *, data: dict[str, Any], reopen: bool = False) -> None:
        if reopen:
            data = {**data, "is_open": True}
        pool = await self._get_pool()
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(ROLE_DATA_COLUMNS, start=2))
        values = [self._role_column_value(column, data.get(column)) for column in ROLE_DATA_COLUMNS]
        reopen_clause = ", closed_date = null" if reopen else ""
        result = await pool.execute(
            f"""
            update program_roles
            set {assignments}, last_seen_at = now(), last_status_change_at = now(){reopen_clause}
            where id = $1::uuid
            """,
            role_id,
            *values,
        )
        if self._affected_rows(result) == 0:
            raise RepositoryNotFoundError(f"program role {role_id} not found")

    async def list_role_types(self) -> list[RoleTypeRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, slug, label
            from roles
            where is_active = true
            order by display_order
            """
        )
        return [RoleTypeRecord(id=row["id"], slug=row["slug"], label=row["label"]) for row in rows]

    async def get_scrape_url(self, scrape_url_id: str) -> ScrapeUrlRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"{_SCRAPE_URL_SELECT} where su.id = $1::uuid", scrape_url_id)
        if row is None:
            raise RepositoryNotFoundError(f"scrape url {scrape_url_id} not found")
        return self._scrape_url_row_to_record(row)

    async def list_due_scrape_urls(self, *, limit: int, interval_hours: int) -> list[ScrapeUrlRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_SCRAPE_URL_SELECT}
            where su.status in ('active', 'failed')
              and (su.last_scraped_at is null or su.last_scraped_at < now() - make_interval(hours => $2))
            order by su.last_scraped_at nulls first
            limit $1
            """,
            limit,
            interval_hours,
        )
        return [self._scrape_url_row_to_record(row) for row in rows]

    async def record_scan_run(self, scrape_url_id: str, *, metrics: dict[str, Any], error: str | None) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "select runs_history from scrape_urls where id = $1::uuid for update",
                    scrape_url_id,
                )
                if row is None:
                    raise RepositoryNotFoundError(f"scrape url {scrape_url_id} not found")
                history = append_run_history(
                    self._coerce_json_list(row["runs_history"]),
                    metrics=metrics,
                    error=error,
                )
                if error:
                    await conn.execute(
                        """
                        update scrape_urls
                        set last_scraped_at = now(),
                            updated_at = now(),
                            metrics = $2::jsonb,
                            runs_history = $3::jsonb,
                            last_error = $4,
                            error_count = coalesce(error_count, 0) + 1,
                            status = 'failed'
                        where id = $1::uuid
                        """,
                        scrape_url_id,
                        json.dumps(metrics),
                        json.dumps(history),
                        error,
                    )
                else:
                    await conn.execute(
                        """
                        update scrape_urls
                        set last_scraped_at = now(),
                            updated_at = now(),
                            metrics = $2::jsonb,
                            runs_history = $3::jsonb,
                            last_error = null,
                            error_count = 0,
                            status = 'active'
                        where id = $1::uuid
                        """,
                        scrape_url_id,
                        json.dumps(metrics),
                        json.dumps(history),
                    )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("PS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _affected_rows(status: str) -> int:
        try:
            return int(status.rsplit(" ", maxsplit=1)[-1])
        except (AttributeError, ValueError):
            return 0

    @staticmethod
    def _role_column_value(column: str, value: Any) -> Any:
        if column == "process" and value is not None:
            return json.dumps(value)
        return value

    @staticmethod
    def _programme_row_to_record(row: asyncpg.Record) -> ProgrammeRecord:
        return ProgrammeRecord(
            id=row["id"],
            firm_id=row["firm_id"],
            name=row["name"],
            normalized_name=row["normalized_name"],
            program_type=row["program_type"],
            source=row["source"],
        )

    def _programme_draft_row_to_record(self, row: asyncpg.Record) -> ProgrammeDraftRecord:
        return ProgrammeDraftRecord(
            id=row["id"],
            firm_id=row["firm_id"],
            source_url_id=row["source_url_id"],
            suggested_name=row["suggested_name"],
            normalized_name=row["normalized_name"],
            program_type=row["program_type"],
            confidence=row["confidence"],
            reasoning=row["reasoning"],
            status=row["status"],
            matched_existing_program_id=row["matched_existing_program_id"],
            created_at=row["created_at"],
            roles_preview=self._coerce_json_list(row["roles_preview"]),
        )

    def _role_draft_row_to_record(self, row: asyncpg.Record) -> RoleDraftRecord:
        return RoleDraftRecord(
            id=row["id"],
            firm_id=row["firm_id"],
            source_url_id=row["source_url_id"],
            programme_discovery_draft_id=row["programme_discovery_draft_id"],
            program_id=row["program_id"],
            existing_role_id=row["existing_role_id"],
            update_type=row["update_type"],
            scraped_data=self._coerce_json_dict(row["scraped_data"]),
            url=row["url"],
            confidence=row["confidence"],
            status=row["status"],
            source=row["source"] or SCRAPER_SOURCE,
            created_at=row["created_at"],
        )

    @staticmethod
    def _program_role_row_to_record(row: asyncpg.Record) -> ProgramRoleRecord:
        return ProgramRoleRecord(
            id=row["id"],
            program_id=row["program_id"],
            role_id=row["role_id"],
            title=row["title"],
            alias=row["alias"],
            source=row["source"],
            role_label=row["role_label"],
            url=row["url"],
            is_open=row["is_open"],
        )

    def _scrape_url_row_to_record(self, row: asyncpg.Record) -> ScrapeUrlRecord:
        return ScrapeUrlRecord(
            id=row["id"],
            firm_id=row["firm_id"],
            url=row["url"],
            firm_name=row["firm_name"],
            scrape_config=self._coerce_json_dict(row["scrape_config"]),
            expected_programmes=self._coerce_json_list(row["expected_programmes"]),
            status=row["status"] or "active",
            error_count=int(row["error_count"] or 0),
            last_error=row["last_error"],
            runs_history=self._coerce_json_list(row["runs_history"]),
            last_scraped_at=row["last_scraped_at"],
        )

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


_PROGRAMME_DRAFT_COLUMNS = """
  id::text as id,
  firm_id::text as firm_id,
  source_url_id::text as source_url_id,
  suggested_name,
  normalized_name,
  program_type,
  confidence,
  reasoning,
  status,
  matched_existing_program_id::text as matched_existing_program_id,
  roles_preview,
  created_at
"""

_PROGRAMME_DRAFT_SELECT = f"select {_PROGRAMME_DRAFT_COLUMNS} from programme_discovery_drafts"

_ROLE_DRAFT_COLUMNS = """
  id::text as id,
  firm_id::text as firm_id,
  source_url_id::text as source_url_id,
  programme_discovery_draft_id::text as programme_discovery_draft_id,
  program_id::text as program_id,
  existing_role_id::text as existing_role_id,
  update_type,
  scraped_data,
  url,
  confidence,
  status,
  source,
  created_at
"""

_ROLE_DRAFT_SELECT = f"select {_ROLE_DRAFT_COLUMNS} from role_discovery_drafts"

_PROGRAM_ROLE_SELECT = """
select
  pr.id::text as id,
  pr.program_id::text as program_id,
  pr.role_id::text as role_id,
  pr.title,
  pr.alias,
  pr.source,
  pr.url,
  pr.is_open,
  r.label as role_label
from program_roles pr
left join roles r on r.id = pr.role_id
"""

_SCRAPE_URL_SELECT = """
select
  su.id::text as id,
  su.firm_id::text as firm_id,
  su.url,
  f.name as firm_name,
  su.scrape_config,
  su.expected_programmes,
  su.status,
  su.error_count,
  su.last_error,
  su.runs_history,
  su.last_scraped_at
from scrape_urls su
left join firms f on f.id = su.firm_id
"""


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
