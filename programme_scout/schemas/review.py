from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ProgrammeDraftOut(BaseModel):
    id: str
    firm_id: str
    source_url_id: str | None = None
    suggested_name: str
    normalized_name: str
    program_type: str | None = None
    confidence: str | None = None
    reasoning: str | None = None
    status: str
    created_at: datetime | None = None
    roles_preview: list[dict[str, Any]] = Field(default_factory=list)


class RoleDraftOut(BaseModel):
    id: str
    firm_id: str
    source_url_id: str | None = None
    programme_discovery_draft_id: str | None = None
    program_id: str | None = None
    existing_role_id: str | None = None
    update_type: str | None = None
    url: str
    confidence: str | None = None
    status: str
    scraped_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class PendingDiscoveriesOut(BaseModel):
    programme_drafts: list[ProgrammeDraftOut] = Field(default_factory=list)
    role_drafts: list[RoleDraftOut] = Field(default_factory=list)


class DiffRole(BaseModel):
    id: str
    title: str
    source: str | None = None


class DiffAddition(BaseModel):
    draft_id: str
    title: str


class ApprovalDiff(BaseModel):
    to_keep: list[DiffRole] = Field(default_factory=list)
    to_delete: list[DiffRole] = Field(default_factory=list)
    to_add: list[DiffAddition] = Field(default_factory=list)


class ApprovalDiffRequest(BaseModel):
    programme_id: str
    role_draft_ids: list[str] = Field(default_factory=list)


class ProgrammeApprovalOut(BaseModel):
    programme_id: str
    roles_created: int = 0
    roles_deleted: int = 0


class StandaloneApprovalRequest(BaseModel):
    role_draft_ids: list[str] = Field(min_length=1)
    # role draft id -> programme id, or "draft:<programme draft id>"
    role_programme_map: dict[str, str] = Field(default_factory=dict)


class StandaloneApprovalOut(BaseModel):
    success: bool
    roles_created: int = 0
    errors: list[str] = Field(default_factory=list)


class DismissRequest(BaseModel):
    programme_draft_ids: list[str] = Field(default_factory=list)
    role_draft_ids: list[str] = Field(default_factory=list)


class DismissOut(BaseModel):
    programmes_dismissed: int = 0
    roles_dismissed: int = 0
