"""Escrow endpoints: fund, release, dispute, refund, cancel and reads."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser, require_role, verify_request
from visaflow.auth.rate_limit import check_rate_limit
from visaflow.database import get_db
from visaflow.models.escrow import EscrowStatus
from visaflow.models.user import UserRole
from visaflow.schemas.case import CaseResponse
from visaflow.schemas.common import ApiResponse, Page
from visaflow.schemas.escrow import (
    CancelEscrow,
    EscalateDispute,
    EscrowResponse,
    EscrowStatusResponse,
    FundEscrow,
    FundResponse,
    HoldEscrow,
    RefundEscrow,
    ReleaseEscrow,
    ResolveDispute,
)
from visaflow.services import escrow as escrow_service
from visaflow.services.notifications import Notifier, get_notifier
from visaflow.services.payments import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/escrow", tags=["escrow"])


@router.post(
    "/fund", response_model=ApiResponse[FundResponse], status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def fund_escrow(
    data: FundEscrow,
    auth: AuthenticatedUser = Depends(require_role(UserRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[FundResponse]:
    """Fund an escrow against a pending proposal. Accepts the proposal and opens the case."""
    escrow, case = await escrow_service.fund_escrow(db, gateway, notifier, auth.user_id, data)
    return ApiResponse(
        data=FundResponse(
            escrow=EscrowResponse.model_validate(escrow),
            case=CaseResponse.model_validate(case),
        ),
        message="Escrow funded successfully",
    )


@router.get(
    "/my-transactions", response_model=ApiResponse[Page[EscrowResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def my_transactions(
    status: EscrowStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[Page[EscrowResponse]]:
    items, total = await escrow_service.list_escrows(db, auth, status=status, page=page, limit=limit)
    return ApiResponse(data=Page(
        items=[EscrowResponse.model_validate(e) for e in items],
        total=total, page=page, limit=limit,
    ))


@router.get(
    "/all", response_model=ApiResponse[Page[EscrowResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def all_escrows(
    status: EscrowStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthenticatedUser = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[Page[EscrowResponse]]:
    items, total = await escrow_service.list_escrows(
        db, auth, status=status, page=page, limit=limit, all_escrows=True,
    )
    return ApiResponse(data=Page(
        items=[EscrowResponse.model_validate(e) for e in items],
        total=total, page=page, limit=limit,
    ))


@router.get(
    "/{escrow_id}", response_model=ApiResponse[EscrowResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_escrow(
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[EscrowResponse]:
    """Full escrow record including its timeline."""
    escrow = await escrow_service.get_escrow_for_party(db, escrow_id, auth)
    return ApiResponse(data=EscrowResponse.model_validate(escrow))


@router.get(
    "/{escrow_id}/status", response_model=ApiResponse[EscrowStatusResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def escrow_status(
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[EscrowStatusResponse]:
    """Computed view: progress, released and remaining amounts."""
    escrow = await escrow_service.get_escrow_for_party(db, escrow_id, auth)
    return ApiResponse(data=EscrowStatusResponse.model_validate(escrow))


@router.post(
    "/{escrow_id}/release", response_model=ApiResponse[EscrowResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def release_escrow(
    escrow_id: uuid.UUID,
    data: ReleaseEscrow,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[EscrowResponse]:
    """Release one milestone (``milestone_id``) or the whole remaining escrow."""
    escrow = await escrow_service.release_escrow(db, notifier, escrow_id, auth, data)
    message = "Milestone payment released" if data.milestone_id else "Escrow released"
    return ApiResponse(data=EscrowResponse.model_validate(escrow), message=message)


@router.post(
    "/{escrow_id}/hold", response_model=ApiResponse[EscrowResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def hold_escrow(
    escrow_id: uuid.UUID,
    data: HoldEscrow,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[EscrowResponse]:
    """Open a dispute and freeze the funds."""
    escrow = await escrow_service.hold_escrow(db, notifier, escrow_id, auth, data)
    return ApiResponse(data=EscrowResponse.model_validate(escrow), message="Escrow held for dispute")


@router.post(
    "/{escrow_id}/escalate", response_model=ApiResponse[EscrowResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def escalate_dispute(
    escrow_id: uuid.UUID,
    data: EscalateDispute,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[EscrowResponse]:
    escrow = await escrow_service.escalate_dispute(db, notifier, escrow_id, auth, data)
    return ApiResponse(data=EscrowResponse.model_validate(escrow), message="Dispute escalated")


@router.post(
    "/{escrow_id}/resolve", response_model=ApiResponse[EscrowResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def resolve_dispute(
    escrow_id: uuid.UUID,
    data: ResolveDispute,
    auth: AuthenticatedUser = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[EscrowResponse]:
    """Admin decision: resume, release everything, or refund the remainder."""
    escrow = await escrow_service.resolve_dispute(db, gateway, notifier, escrow_id, auth, data)
    return ApiResponse(data=EscrowResponse.model_validate(escrow), message="Dispute resolved")


@router.post(
    "/{escrow_id}/refund", response_model=ApiResponse[EscrowResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def refund_escrow(
    escrow_id: uuid.UUID,
    data: RefundEscrow,
    auth: AuthenticatedUser = Depends(require_role(UserRole.AGENT, UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[EscrowResponse]:
    escrow = await escrow_service.refund_escrow(db, gateway, notifier, escrow_id, auth, data)
    return ApiResponse(data=EscrowResponse.model_validate(escrow), message="Escrow refunded")


@router.post(
    "/{escrow_id}/cancel", response_model=ApiResponse[EscrowResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def cancel_escrow(
    escrow_id: uuid.UUID,
    data: CancelEscrow,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[EscrowResponse]:
    escrow = await escrow_service.cancel_escrow(db, gateway, notifier, escrow_id, auth, data)
    return ApiResponse(data=EscrowResponse.model_validate(escrow), message="Escrow cancelled")
