from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from programme_scout.api.errors import http_error
from programme_scout.schemas.review import (
    ApprovalDiff,
    ApprovalDiffRequest,
    DismissOut,
    DismissRequest,
    PendingDiscoveriesOut,
    ProgrammeApprovalOut,
    ProgrammeDraftOut,
    RoleDraftOut,
    StandaloneApprovalOut,
    StandaloneApprovalRequest,
)
from programme_scout.services.approval import ReviewService
from programme_scout.services.repository import RepositoryError, get_repository

router = APIRouter()


def get_review_service(repository=Depends(get_repository)) -> ReviewService:
    return ReviewService(repository)


@router.get("", response_model=PendingDiscoveriesOut)
async def list_pending_discoveries(
    firm_id: str = Query(min_length=1),
    repository=Depends(get_repository),
) -> PendingDiscoveriesOut:
    try:
        programme_drafts = await repository.list_programme_drafts(firm_id=firm_id, status="pending")
        role_drafts = await repository.list_role_drafts(firm_id=firm_id, status="pending")
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return PendingDiscoveriesOut(
        programme_drafts=[ProgrammeDraftOut.model_validate(asdict(draft)) for draft in programme_drafts],
        role_drafts=[RoleDraftOut.model_validate(asdict(draft)) for draft in role_drafts],
    )


@router.post("/programmes/{draft_id}/approve", response_model=ProgrammeApprovalOut)
async def approve_programme(
    draft_id: str,
    service: ReviewService = Depends(get_review_service),
) -> ProgrammeApprovalOut:
    try:
        return await service.approve_programme_with_roles(draft_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc


@router.post("/roles/approve", response_model=StandaloneApprovalOut)
async def approve_roles(
    payload: StandaloneApprovalRequest,
    service: ReviewService = Depends(get_review_service),
) -> StandaloneApprovalOut:
    try:
        return await service.approve_standalone_roles(payload.role_draft_ids, payload.role_programme_map)
    except RepositoryError as exc:
        raise http_error(exc) from exc


@router.post("/diff", response_model=ApprovalDiff)
async def approval_diff(
    payload: ApprovalDiffRequest,
    service: ReviewService = Depends(get_review_service),
) -> ApprovalDiff:
    try:
        return await service.get_approval_diff(payload.programme_id, payload.role_draft_ids)
    except RepositoryError as exc:
        raise http_error(exc) from exc


@router.post("/dismiss", response_model=DismissOut)
async def dismiss(
    payload: DismissRequest,
    service: ReviewService = Depends(get_review_service),
) -> DismissOut:
    try:
        return await service.dismiss_discoveries(payload.programme_draft_ids, payload.role_draft_ids)
    except RepositoryError as exc:
        raise http_error(exc) from exc
