from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from programme_scout.core.identity import canonical_name, normalize_url
from programme_scout.services.repository import DismissedDraftRecord, ExistingRoleRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExistingRole:
    id: str
    program_id: str | None
    role_id: str | None
    url: str | None
    canonical_name: str
    is_open: bool | None
    title: str


@dataclass(frozen=True, slots=True)
class DismissedDraft:
    url: str | None
    canonical_name: str


@dataclass(slots=True)
class RoleIndex:
    """Snapshot of one employer's known and dismissed roles, keyed by identity.

    Built once per run and only read afterwards, so concurrent detail tasks
    share it without locking.
    """

    existing_by_url: dict[str, ExistingRole] = field(default_factory=dict)
    existing_by_name: dict[str, ExistingRole] = field(default_factory=dict)
    dismissed_by_url: dict[str, DismissedDraft] = field(default_factory=dict)
    dismissed_by_name: dict[str, DismissedDraft] = field(default_factory=dict)
    degraded: bool = False

    @classmethod
    def build(
        cls,
        existing: list[ExistingRoleRecord],
        dismissed: list[DismissedDraftRecord],
    ) -> RoleIndex:
        index = cls()
        for record in existing:
            role = _existing_role(record)
            if role.url:
                index.existing_by_url[normalize_url(role.url)] = role
            if role.canonical_name:
                index.existing_by_name[role.canonical_name] = role
        for record in dismissed:
            if not record.url:
                continue
            draft = DismissedDraft(url=record.url, canonical_name=canonical_name(record.title))
            index.dismissed_by_url[normalize_url(record.url)] = draft
            if draft.canonical_name:
                index.dismissed_by_name[draft.canonical_name] = draft
        return index

    @classmethod
    async def load(cls, repository: Any, firm_id: str) -> RoleIndex:
        try:
            existing = await repository.list_existing_roles(firm_id)
            dismissed = await repository.list_dismissed_role_drafts(firm_id)
        except Exception:
            logger.exception("role index unavailable for firm=%s; existing-role checks degrade to no matches", firm_id)
            return cls(degraded=True)
        index = cls.build(existing, dismissed)
        logger.info(
            "role index loaded firm=%s existing_urls=%s existing_names=%s dismissed=%s",
            firm_id,
            len(index.existing_by_url),
            len(index.existing_by_name),
            len(index.dismissed_by_url),
        )
        return index

    def find_existing(self, *, url: str, title: str) -> tuple[ExistingRole | None, ExistingRole | None]:
        return self.existing_by_url.get(normalize_url(url)), self.existing_by_name.get(canonical_name(title))

    def is_dismissed(self, *, url: str, title: str) -> bool:
        if normalize_url(url) in self.dismissed_by_url:
            return True
        name = canonical_name(title)
        return bool(name) and name in self.dismissed_by_name


def _existing_role(record: ExistingRoleRecord) -> ExistingRole:
    title = record.title
    if not title:
        suffix = record.alias or record.role_label
        program_name = record.program_name or ""
        title = f"{program_name} - {suffix}" if suffix else program_name
    return ExistingRole(
        id=record.id,
        program_id=record.program_id,
        role_id=record.role_id,
        url=record.url,
        canonical_name=record.canonical_name or canonical_name(title),
        is_open=record.is_open,
        title=title,
    )
