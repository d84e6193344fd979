"""Proposal endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser, require_role, verify_request
from visaflow.auth.rate_limit import check_rate_limit
from visaflow.database import get_db
from visaflow.models.proposal import Proposal, ProposalStatus
from visaflow.models.user import UserRole
from visaflow.models.visa_request import VisaRequest
from visaflow.schemas.common import ApiResponse, Page
from visaflow.schemas.proposal import ProposalCreate, ProposalResponse, ProposalUpdate
from visaflow.services import proposals as proposal_service
from visaflow.services.notifications import Notifier, get_notifier

router = APIRouter(prefix="/proposals", tags=["proposals"])


@router.post(
    "", response_model=ApiResponse[ProposalResponse], status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_proposal(
    data: ProposalCreate,
    auth: AuthenticatedUser = Depends(require_role(UserRole.AGENT)),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[ProposalResponse]:
    proposal = await proposal_service.submit_proposal(db, auth.user_id, data)
    request = await db.get(VisaRequest, proposal.request_id)
    if request is not None:
        await notifier.notify(
            request.client_id, "proposal:new",
            {"proposal_id": str(proposal.proposal_id), "request_id": str(request.request_id)},
            title="New proposal",
            message=f"{auth.user.name} submitted a proposal on '{request.title}'.",
            sender_id=auth.user_id,
            link=f"/proposals/{proposal.proposal_id}",
        )
    return ApiResponse(data=ProposalResponse.model_validate(proposal), message="Proposal submitted")


@router.get(
    "/my/proposals", response_model=ApiResponse[Page[ProposalResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def list_my_proposals(
    status: ProposalStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthenticatedUser = Depends(require_role(UserRole.AGENT)),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[Page[ProposalResponse]]:
    query = select(Proposal).where(Proposal.agent_id == auth.user_id)
    if status is not None:
        query = query.where(Proposal.status == status)
    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(
        query.order_by(Proposal.submitted_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    return ApiResponse(data=Page(
        items=[ProposalResponse.model_validate(p) for p in result.scalars().all()],
        total=total, page=page, limit=limit,
    ))


@router.get(
    "/{proposal_id}", response_model=ApiResponse[ProposalResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_proposal(
    proposal_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[ProposalResponse]:
    proposal = await proposal_service.get_proposal_for_party(
        db, proposal_id, auth.user_id, is_admin=auth.is_admin
    )
    return ApiResponse(data=ProposalResponse.model_validate(proposal))


@router.put(
    "/{proposal_id}", response_model=ApiResponse[ProposalResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def update_proposal(
    proposal_id: uuid.UUID,
    data: ProposalUpdate,
    auth: AuthenticatedUser = Depends(require_role(UserRole.AGENT)),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[ProposalResponse]:
    """Edit a pending proposal. Proposal owner only."""
    proposal = await proposal_service.update_proposal(db, proposal_id, auth.user_id, data)
    return ApiResponse(data=ProposalResponse.model_validate(proposal), message="Proposal updated")


@router.delete(
    "/{proposal_id}", response_model=ApiResponse[None],
    dependencies=[Depends(check_rate_limit)],
)
async def delete_proposal(
    proposal_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[None]:
    await proposal_service.delete_proposal(db, proposal_id, auth)
    return ApiResponse(message="Proposal deleted")


@router.put(
    "/{proposal_id}/reject", response_model=ApiResponse[ProposalResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def reject_proposal(
    proposal_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(require_role(UserRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[ProposalResponse]:
    proposal = await proposal_service.reject_proposal(db, proposal_id, auth.user_id)
    await notifier.notify(
        proposal.agent_id, "proposal:status_changed",
        {"proposal_id": str(proposal_id), "status": proposal.status.value},
        title="Proposal rejected",
        message="The client declined your proposal.",
        sender_id=auth.user_id,
        link=f"/proposals/{proposal_id}",
    )
    return ApiResponse(data=ProposalResponse.model_validate(proposal), message="Proposal rejected")


@router.put(
    "/{proposal_id}/withdraw", response_model=ApiResponse[ProposalResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def withdraw_proposal(
    proposal_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(require_role(UserRole.AGENT)),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[ProposalResponse]:
    proposal = await proposal_service.withdraw_proposal(db, proposal_id, auth.user_id)
    return ApiResponse(data=ProposalResponse.model_validate(proposal), message="Proposal withdrawn")
