"""Visa request business logic."""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser
from visaflow.errors import Forbidden, InvalidState, NotFound
from visaflow.models.proposal import Proposal
from visaflow.models.visa_request import Priority, VisaRequest, VisaRequestStatus
from visaflow.schemas.visa_request import VisaRequestCreate, VisaRequestUpdate

logger = logging.getLogger(__name__)

# No escrow can reference a request in these states
DELETABLE_STATUSES = frozenset({
    VisaRequestStatus.PENDING,
    VisaRequestStatus.REJECTED,
    VisaRequestStatus.CANCELLED,
})


async def create_visa_request(
    db: AsyncSession, client_id: uuid.UUID, data: VisaRequestCreate
) -> VisaRequest:
    request = VisaRequest(
        request_id=uuid.uuid4(),
        client_id=client_id,
        title=data.title,
        visa_type=data.visa_type,
        country=data.country,
        description=data.description,
        budget=data.budget,
        timeline=data.timeline,
        priority=Priority(data.priority),
    )
    db.add(request)
    await db.commit()
    await db.refresh(request)
    return request


async def get_visa_request(db: AsyncSession, request_id: uuid.UUID) -> VisaRequest:
    request = await db.get(VisaRequest, request_id)
    if request is None:
        raise NotFound("Visa request not found")
    return request


async def list_visa_requests(
    db: AsyncSession,
    status: VisaRequestStatus | None = None,
    visa_type: str | None = None,
    country: str | None = None,
    client_id: uuid.UUID | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[VisaRequest], int]:
    """Browse visa requests, newest first."""
    query = select(VisaRequest)
    if status is not None:
        query = query.where(VisaRequest.status == status)
    if visa_type:
        query = query.where(VisaRequest.visa_type == visa_type)
    if country:
        query = query.where(func.lower(VisaRequest.country) == country.lower())
    if client_id is not None:
        query = query.where(VisaRequest.client_id == client_id)

    total = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar_one()
    result = await db.execute(
        query.order_by(VisaRequest.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def list_proposals_for_request(
    db: AsyncSession, request_id: uuid.UUID, client_id: uuid.UUID
) -> list[Proposal]:
    """Proposals on a request; visible to the owning client only."""
    request = await get_visa_request(db, request_id)
    if request.client_id != client_id:
        raise Forbidden("Not authorized to view proposals for this request")
    result = await db.execute(
        select(Proposal)
        .where(Proposal.request_id == request_id)
        .order_by(Proposal.submitted_at.desc())
    )
    return list(result.scalars().all())


async def _get_for_owner(
    db: AsyncSession, request_id: uuid.UUID, auth: AuthenticatedUser, action: str
) -> VisaRequest:
    result = await db.execute(
        select(VisaRequest).where(VisaRequest.request_id == request_id).with_for_update()
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFound("Visa request not found")
    if request.client_id != auth.user_id and not auth.is_admin:
        raise Forbidden(f"Not authorized to {action} this request")
    return request


async def update_visa_request(
    db: AsyncSession, request_id: uuid.UUID, auth: AuthenticatedUser, data: VisaRequestUpdate
) -> VisaRequest:
    """Edit a request while it is still open for proposals."""
    request = await _get_for_owner(db, request_id, auth, "update")
    if request.status != VisaRequestStatus.PENDING:
        raise InvalidState(f"Can only update pending visa requests, currently {request.status.value}")

    update_data = data.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in update_data.items():
        if field == "priority":
            value = Priority(value)
        setattr(request, field, value)

    await db.commit()
    await db.refresh(request)
    return request


async def delete_visa_request(
    db: AsyncSession, request_id: uuid.UUID, auth: AuthenticatedUser
) -> None:
    """Delete a request that never reached funding, together with its proposals."""
    request = await _get_for_owner(db, request_id, auth, "delete")
    if request.status not in DELETABLE_STATUSES:
        raise InvalidState(f"Cannot delete a visa request that is {request.status.value}")

    result = await db.execute(select(Proposal).where(Proposal.request_id == request_id))
    proposals = list(result.scalars().all())
    for proposal in proposals:
        await db.delete(proposal)
    # Proposal rows reference the request, so they go first
    await db.flush()
    await db.delete(request)
    await db.commit()
    logger.info("Visa request %s deleted with %d proposals", request_id, len(proposals))
