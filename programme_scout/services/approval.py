from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from programme_scout.core.identity import canonical_name
from programme_scout.schemas.discovery import RoleAction, ScrapedRole
from programme_scout.schemas.review import (
    ApprovalDiff,
    DiffAddition,
    DiffRole,
    DismissOut,
    ProgrammeApprovalOut,
    StandaloneApprovalOut,
)
from programme_scout.services.repository import (
    LEGACY_SOURCE,
    MANUAL_SOURCE,
    SCRAPER_SOURCE,
    ProgramRoleRecord,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    RoleDraftRecord,
)
from programme_scout.services.role_types import RoleTypeCache

logger = logging.getLogger(__name__)

DRAFT_TARGET_PREFIX = "draft:"
# Programme types whose stored enum value differs from the scraped label.
PROGRAM_TYPE_STORAGE = {"off_cycle_internship": "off_cycle"}


def build_role_data(draft: RoleDraftRecord) -> tuple[ScrapedRole, dict[str, Any]]:
    try:
        scraped = ScrapedRole.model_validate(draft.scraped_data)
    except ValidationError as exc:
        raise RepositoryValidationError(f"role draft {draft.id} has unusable scraped data") from exc
    data = {
        "title": scraped.title,
        "canonical_name": canonical_name(scraped.title),
        "role_type": scraped.role_type,
        "location": scraped.location,
        "description": scraped.description,
        "url": draft.url,
        "opening_date": scraped.opening_date,
        "deadline": scraped.deadline,
        "rolling": scraped.is_rolling,
        "is_open": scraped.is_open is not False,
        "current_round": scraped.current_round,
        "process": scraped.process,
        "cv_required": scraped.cv_required,
        "cover_letter_required": scraped.cover_letter_required,
        "written_answers_required": scraped.written_answers_required,
        "info_test_prep_url": scraped.info_test_prep_url,
        "source": SCRAPER_SOURCE,
    }
    return scraped, data


class ReviewService:
    """Turns reviewed drafts into programme and role records.

    Legacy-sourced roles are deleted once scraped data replaces them, manual
    roles are never touched, and scraper-sourced roles are only changed by an
    explicit URL_CHANGED or REOPENING draft.
    """

    def __init__(self, repository: Any, role_types: RoleTypeCache | None = None) -> None:
        self.repository = repository
        self.role_types = role_types or RoleTypeCache(repository)

    async def approve_programme_draft(self, draft_id: str) -> str:
        draft = await self.repository.get_programme_draft(draft_id)

        existing = await self.repository.find_programme(firm_id=draft.firm_id, normalized_name=draft.normalized_name)
        if existing is not None:
            if draft.status != "approved":
                await self.repository.set_programme_draft_status([draft.id], status="approved")
                logger.info("programme draft %s linked to existing programme %s", draft.id, existing.id)
            return existing.id

        program_type = PROGRAM_TYPE_STORAGE.get(draft.program_type or "", draft.program_type)
        try:
            programme = await self.repository.create_programme(
                firm_id=draft.firm_id,
                name=draft.suggested_name,
                normalized_name=draft.normalized_name,
                program_type=program_type,
                source_url_id=draft.source_url_id,
            )
        except RepositoryConflictError:
            programme = await self.repository.find_programme(
                firm_id=draft.firm_id, normalized_name=draft.normalized_name
            )
            if programme is None:
                raise
        await self.repository.set_programme_draft_status([draft.id], status="approved")
        logger.info("programme draft %s approved as programme %s", draft.id, programme.id)
        return programme.id

    async def approve_role_draft(self, draft_id: str, programme_id: str) -> str:
        draft = await self.repository.get_role_draft(draft_id)
        scraped, data = build_role_data(draft)

        if draft.update_type == RoleAction.NEW_ROLE.value:
            role_id = await self._insert_role(programme_id, scraped, data)
        elif draft.update_type in (RoleAction.URL_CHANGED.value, RoleAction.REOPENING.value):
            if not draft.existing_role_id:
                raise RepositoryValidationError(f"role draft {draft.id} has no existing role to update")
            existing = await self.repository.get_program_role(draft.existing_role_id)
            if existing is None or existing.source == LEGACY_SOURCE:
                # Legacy rows are replaced, not updated; cleanup may already have removed them.
                logger.info(
                    "role draft %s targets replaced role %s; inserting a new role",
                    draft.id,
                    draft.existing_role_id,
                )
                if existing is not None:
                    await self.repository.delete_program_roles(source=LEGACY_SOURCE, program_id=existing.program_id)
                role_id = await self._insert_role(programme_id, scraped, data)
            else:
                role_id = existing.id
                await self.repository.update_program_role(
                    role_id,
                    data=data,
                    reopen=draft.update_type == RoleAction.REOPENING.value,
                )
        else:
            raise RepositoryValidationError(f"role draft {draft.id} has unknown update type {draft.update_type!r}")

        await self.repository.set_role_draft_status([draft.id], status="approved")
        return role_id

    async def _insert_role(self, programme_id: str, scraped: ScrapedRole, data: dict[str, Any]) -> str:
        role_type_id = await self.role_types.map_role_type(scraped.role_type)
        return await self.repository.insert_program_role(program_id=programme_id, role_type_id=role_type_id, data=data)

    async def get_approval_diff(self, programme_id: str, role_draft_ids: list[str]) -> ApprovalDiff:
        resolved_id = programme_id
        firm_id: str | None = None
        try:
            draft = await self.repository.get_programme_draft(programme_id)
        except RepositoryNotFoundError:
            programme = await self.repository.get_programme(programme_id)
            firm_id = programme.firm_id if programme is not None else None
        else:
            firm_id = draft.firm_id
            if draft.matched_existing_program_id:
                resolved_id = draft.matched_existing_program_id
            else:
                match = await self.repository.find_programme(firm_id=draft.firm_id, normalized_name=draft.normalized_name)
                if match is not None:
                    resolved_id = match.id

        to_delete: dict[str, DiffRole] = {}
        if firm_id is not None:
            for role in await self.repository.list_firm_roles(firm_id=firm_id, source=LEGACY_SOURCE):
                to_delete[role.id] = DiffRole(id=role.id, title=f"{_display_title(role)} (Legacy)", source=role.source)

        to_keep: list[DiffRole] = []
        for role in await self.repository.list_program_roles(resolved_id):
            if role.source in (MANUAL_SOURCE, SCRAPER_SOURCE):
                to_keep.append(DiffRole(id=role.id, title=_display_title(role), source=role.source))
            elif role.source == LEGACY_SOURCE and role.id not in to_delete:
                to_delete[role.id] = DiffRole(id=role.id, title=_display_title(role), source=role.source)

        to_add = [
            DiffAddition(draft_id=draft.id, title=str(draft.scraped_data.get("title") or "Untitled"))
            for draft in await self.repository.get_role_drafts(role_draft_ids)
        ]
        return ApprovalDiff(to_keep=to_keep, to_delete=list(to_delete.values()), to_add=to_add)

    async def approve_programme_with_roles(self, draft_id: str) -> ProgrammeApprovalOut:
        programme_id = await self.approve_programme_draft(draft_id)
        roles_deleted = await self.repository.delete_program_roles(source=LEGACY_SOURCE, program_id=programme_id)
        if roles_deleted:
            logger.info("deleted %s legacy roles from programme %s", roles_deleted, programme_id)

        roles_created = 0
        for role_draft in await self.repository.list_role_drafts_for_programme_draft(draft_id):
            try:
                await self.approve_role_draft(role_draft.id, programme_id)
            except RepositoryError:
                logger.exception("could not approve role draft %s", role_draft.id)
                continue
            roles_created += 1
        return ProgrammeApprovalOut(programme_id=programme_id, roles_created=roles_created, roles_deleted=roles_deleted)

    async def approve_standalone_roles(
        self,
        role_draft_ids: list[str],
        role_programme_map: dict[str, str] | None = None,
    ) -> StandaloneApprovalOut:
        mapping = role_programme_map or {}
        resolved_drafts: dict[str, str] = {}
        cleaned_firms: set[str] = set()
        errors: list[str] = []
        roles_created = 0

        for draft_id in role_draft_ids:
            try:
                draft = await self.repository.get_role_draft(draft_id)
            except RepositoryNotFoundError:
                errors.append(f"Draft {draft_id}: not found")
                continue

            if draft.firm_id not in cleaned_firms:
                try:
                    deleted = await self.repository.delete_program_roles(source=LEGACY_SOURCE, firm_id=draft.firm_id)
                except RepositoryError:
                    logger.exception("legacy role cleanup failed for firm=%s", draft.firm_id)
                else:
                    cleaned_firms.add(draft.firm_id)
                    if deleted:
                        logger.info("deleted %s legacy roles for firm=%s", deleted, draft.firm_id)

            target, is_draft_target = _target_for(draft, mapping.get(draft_id))
            if target is None:
                errors.append(f"Draft {draft_id}: no programme assigned")
                continue

            programme_id = target
            if is_draft_target:
                if target not in resolved_drafts:
                    try:
                        resolved_drafts[target] = await self.approve_programme_draft(target)
                    except RepositoryError as exc:
                        errors.append(f"Draft {draft_id}: could not approve programme draft {target}: {exc}")
                        continue
                programme_id = resolved_drafts[target]

            try:
                await self.approve_role_draft(draft_id, programme_id)
            except RepositoryError as exc:
                errors.append(f"Draft {draft_id}: {exc}")
                continue
            roles_created += 1

        return StandaloneApprovalOut(success=not errors, roles_created=roles_created, errors=errors)

    async def dismiss_discoveries(self, programme_draft_ids: list[str], role_draft_ids: list[str]) -> DismissOut:
        programmes = await self.repository.set_programme_draft_status(programme_draft_ids, status="dismissed")
        roles = await self.repository.set_role_draft_status(role_draft_ids, status="dismissed")
        return DismissOut(programmes_dismissed=programmes, roles_dismissed=roles)


def _target_for(draft: RoleDraftRecord, mapped: str | None) -> tuple[str | None, bool]:
    if mapped:
        if mapped.startswith(DRAFT_TARGET_PREFIX):
            return mapped[len(DRAFT_TARGET_PREFIX) :], True
        return mapped, False
    if draft.program_id:
        return draft.program_id, False
    if draft.programme_discovery_draft_id:
        return draft.programme_discovery_draft_id, True
    return None, False


def _display_title(role: ProgramRoleRecord) -> str:
    return role.title or role.alias or role.role_label or "Untitled Role"
