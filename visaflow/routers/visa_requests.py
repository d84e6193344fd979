"""Visa request endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser, require_role, verify_request
from visaflow.auth.rate_limit import check_rate_limit
from visaflow.database import get_db
from visaflow.models.user import UserRole
from visaflow.models.visa_request import VisaRequestStatus
from visaflow.schemas.common import ApiResponse, Page
from visaflow.schemas.proposal import ProposalResponse
from visaflow.schemas.visa_request import VisaRequestCreate, VisaRequestResponse, VisaRequestUpdate
from visaflow.services import visa_requests as visa_request_service

router = APIRouter(prefix="/visa-requests", tags=["visa-requests"])


@router.post(
    "", response_model=ApiResponse[VisaRequestResponse], status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def create_visa_request(
    data: VisaRequestCreate,
    auth: AuthenticatedUser = Depends(require_role(UserRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[VisaRequestResponse]:
    request = await visa_request_service.create_visa_request(db, auth.user_id, data)
    return ApiResponse(
        data=VisaRequestResponse.model_validate(request),
        message="Visa request created",
    )


@router.get(
    "", response_model=ApiResponse[Page[VisaRequestResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def list_visa_requests(
    status: VisaRequestStatus | None = None,
    visa_type: str | None = None,
    country: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[Page[VisaRequestResponse]]:
    """Browse visa requests, newest first."""
    items, total = await visa_request_service.list_visa_requests(
        db, status=status, visa_type=visa_type, country=country, page=page, limit=limit,
    )
    return ApiResponse(data=Page(
        items=[VisaRequestResponse.model_validate(r) for r in items],
        total=total, page=page, limit=limit,
    ))


@router.get(
    "/my/requests", response_model=ApiResponse[Page[VisaRequestResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def list_my_visa_requests(
    status: VisaRequestStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthenticatedUser = Depends(require_role(UserRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[Page[VisaRequestResponse]]:
    items, total = await visa_request_service.list_visa_requests(
        db, status=status, client_id=auth.user_id, page=page, limit=limit,
    )
    return ApiResponse(data=Page(
        items=[VisaRequestResponse.model_validate(r) for r in items],
        total=total, page=page, limit=limit,
    ))


@router.get(
    "/{request_id}", response_model=ApiResponse[VisaRequestResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_visa_request(
    request_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[VisaRequestResponse]:
    request = await visa_request_service.get_visa_request(db, request_id)
    return ApiResponse(data=VisaRequestResponse.model_validate(request))


@router.put(
    "/{request_id}", response_model=ApiResponse[VisaRequestResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def update_visa_request(
    request_id: uuid.UUID,
    data: VisaRequestUpdate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[VisaRequestResponse]:
    """Edit a pending request. Owner client or admin."""
    request = await visa_request_service.update_visa_request(db, request_id, auth, data)
    return ApiResponse(
        data=VisaRequestResponse.model_validate(request),
        message="Visa request updated",
    )


@router.delete(
    "/{request_id}", response_model=ApiResponse[None],
    dependencies=[Depends(check_rate_limit)],
)
async def delete_visa_request(
    request_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[None]:
    """Delete a request that was never funded, with its proposals."""
    await visa_request_service.delete_visa_request(db, request_id, auth)
    return ApiResponse(message="Visa request deleted")


@router.get(
    "/{request_id}/proposals", response_model=ApiResponse[list[ProposalResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def list_request_proposals(
    request_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(require_role(UserRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[list[ProposalResponse]]:
    """Proposals submitted on a request. Owner client only."""
    proposals = await visa_request_service.list_proposals_for_request(db, request_id, auth.user_id)
    return ApiResponse(data=[ProposalResponse.model_validate(p) for p in proposals])
