"""Case endpoints: reads, milestone lifecycle, notes, documents, disputes."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser, require_role, verify_request
from visaflow.auth.rate_limit import check_rate_limit
from visaflow.database import get_db
from visaflow.models.case import CaseStatus
from visaflow.models.user import UserRole
from visaflow.schemas.case import (
    AddNote,
    ApproveMilestone,
    CaseResponse,
    CaseTimelineResponse,
    RejectMilestone,
    UpdateMilestone,
    UploadDocument,
)
from visaflow.schemas.common import ApiResponse, Page
from visaflow.schemas.escrow import HoldEscrow
from visaflow.services import cases as case_service
from visaflow.services.notifications import Notifier, get_notifier

router = APIRouter(prefix="/cases", tags=["cases"])


@router.get("", response_model=ApiResponse[Page[CaseResponse]], dependencies=[Depends(check_rate_limit)])
async def list_cases(
    status: CaseStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[Page[CaseResponse]]:
    items, total = await case_service.list_cases(db, auth, status=status, page=page, limit=limit)
    return ApiResponse(data=Page(
        items=[CaseResponse.model_validate(c) for c in items],
        total=total, page=page, limit=limit,
    ))


@router.get(
    "/active", response_model=ApiResponse[list[CaseResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def list_active_cases(
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[list[CaseResponse]]:
    items, _ = await case_service.list_cases(db, auth, status=CaseStatus.ACTIVE, limit=50)
    return ApiResponse(data=[CaseResponse.model_validate(c) for c in items])


@router.get("/{case_id}", response_model=ApiResponse[CaseResponse], dependencies=[Depends(check_rate_limit)])
async def get_case(
    case_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[CaseResponse]:
    case = await case_service.get_case_for_party(db, case_id, auth)
    return ApiResponse(data=CaseResponse.model_validate(case))


@router.get(
    "/{case_id}/timeline", response_model=ApiResponse[CaseTimelineResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_case_timeline(
    case_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[CaseTimelineResponse]:
    """Case history with a payment summary."""
    timeline = await case_service.get_case_timeline(db, case_id, auth)
    return ApiResponse(data=timeline)


@router.put(
    "/{case_id}/milestones/{index}", response_model=ApiResponse[CaseResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def update_milestone(
    case_id: uuid.UUID,
    index: int,
    data: UpdateMilestone,
    auth: AuthenticatedUser = Depends(require_role(UserRole.AGENT)),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[CaseResponse]:
    """Agent reports milestone progress. ``index`` is 0-based."""
    case = await case_service.update_milestone(db, notifier, case_id, index, auth, data)
    return ApiResponse(data=CaseResponse.model_validate(case), message="Milestone updated")


@router.put(
    "/{case_id}/milestones/{index}/approve", response_model=ApiResponse[CaseResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def approve_milestone(
    case_id: uuid.UUID,
    index: int,
    data: ApproveMilestone,
    auth: AuthenticatedUser = Depends(require_role(UserRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[CaseResponse]:
    """Client approves a completed milestone and releases its payment."""
    case = await case_service.approve_milestone(db, notifier, case_id, index, auth, data)
    return ApiResponse(data=CaseResponse.model_validate(case), message="Milestone approved and payment released")


@router.put(
    "/{case_id}/milestones/{index}/reject", response_model=ApiResponse[CaseResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def reject_milestone(
    case_id: uuid.UUID,
    index: int,
    data: RejectMilestone,
    auth: AuthenticatedUser = Depends(require_role(UserRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[CaseResponse]:
    case = await case_service.reject_milestone(db, notifier, case_id, index, auth, data)
    return ApiResponse(data=CaseResponse.model_validate(case), message="Milestone rejected")


@router.post("/{case_id}/notes", response_model=ApiResponse[CaseResponse], dependencies=[Depends(check_rate_limit)])
async def add_note(
    case_id: uuid.UUID,
    data: AddNote,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[CaseResponse]:
    case = await case_service.add_note(db, notifier, case_id, auth, data)
    return ApiResponse(data=CaseResponse.model_validate(case), message="Note added")


@router.post(
    "/{case_id}/documents", response_model=ApiResponse[CaseResponse], status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def upload_document(
    case_id: uuid.UUID,
    data: UploadDocument,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[CaseResponse]:
    case = await case_service.upload_document(db, notifier, case_id, auth, data)
    return ApiResponse(data=CaseResponse.model_validate(case), message="Document uploaded")


@router.post("/{case_id}/dispute", response_model=ApiResponse[CaseResponse], dependencies=[Depends(check_rate_limit)])
async def open_dispute(
    case_id: uuid.UUID,
    data: HoldEscrow,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[CaseResponse]:
    """Dispute the case by holding its escrow."""
    case = await case_service.open_case_dispute(db, notifier, case_id, auth, data)
    return ApiResponse(data=CaseResponse.model_validate(case), message="Dispute opened")
