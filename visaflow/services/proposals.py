"""Proposal business logic: submit, read, update, reject, withdraw, delete.

Acceptance is not an endpoint of its own. A proposal is accepted by funding
an escrow against it (see ``visaflow.services.escrow.fund_escrow``).
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser
from visaflow.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from visaflow.models.proposal import Proposal, ProposalMilestone, ProposalStatus
from visaflow.models.visa_request import VisaRequest, VisaRequestStatus
from visaflow.schemas.proposal import ProposalCreate, ProposalMilestoneIn, ProposalUpdate

logger = logging.getLogger(__name__)


def _milestones(items: list[ProposalMilestoneIn]) -> list[ProposalMilestone]:
    return [
        ProposalMilestone(
            proposal_milestone_id=uuid.uuid4(),
            order=i,
            title=m.title,
            description=m.description,
            amount=m.amount,
            due_date=m.due_date,
            deliverables=list(m.deliverables),
        )
        for i, m in enumerate(items, start=1)
    ]


async def _get_locked(db: AsyncSession, proposal_id: uuid.UUID) -> Proposal:
    result = await db.execute(
        select(Proposal).where(Proposal.proposal_id == proposal_id).with_for_update()
    )
    proposal = result.scalar_one_or_none()
    if proposal is None:
        raise NotFound("Proposal not found")
    return proposal


async def submit_proposal(
    db: AsyncSession, agent_id: uuid.UUID, data: ProposalCreate
) -> Proposal:
    result = await db.execute(
        select(VisaRequest).where(VisaRequest.request_id == data.request_id).with_for_update()
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFound("Visa request not found")
    if request.status != VisaRequestStatus.PENDING:
        raise InvalidState(
            f"Visa request is not accepting proposals, currently {request.status.value}"
        )
    if request.client_id == agent_id:
        raise Forbidden("Cannot submit a proposal on your own request")

    existing = await db.execute(
        select(Proposal.proposal_id).where(
            Proposal.request_id == data.request_id,
            Proposal.agent_id == agent_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise Conflict("You have already submitted a proposal for this request")

    proposal = Proposal(
        proposal_id=uuid.uuid4(),
        request_id=data.request_id,
        agent_id=agent_id,
        budget=data.budget,
        timeline=data.timeline,
        cover_letter=data.cover_letter,
        proposal_text=data.proposal_text,
        milestones=_milestones(data.milestones),
    )
    db.add(proposal)
    request.proposal_count += 1

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("You have already submitted a proposal for this request")

    logger.info("Proposal %s submitted on request %s", proposal.proposal_id, request.request_id)
    return await get_proposal(db, proposal.proposal_id)


async def get_proposal(db: AsyncSession, proposal_id: uuid.UUID) -> Proposal:
    result = await db.execute(
        select(Proposal)
        .where(Proposal.proposal_id == proposal_id)
        .execution_options(populate_existing=True)
    )
    proposal = result.scalar_one_or_none()
    if proposal is None:
        raise NotFound("Proposal not found")
    return proposal


async def get_proposal_for_party(
    db: AsyncSession, proposal_id: uuid.UUID, user_id: uuid.UUID, is_admin: bool = False
) -> Proposal:
    """Read a proposal as its agent, the request's client, or an admin."""
    proposal = await get_proposal(db, proposal_id)
    if is_admin or proposal.agent_id == user_id:
        return proposal
    request = await db.get(VisaRequest, proposal.request_id)
    if request is None or request.client_id != user_id:
        raise Forbidden("Not authorized to view this proposal")
    return proposal


async def reject_proposal(
    db: AsyncSession, proposal_id: uuid.UUID, client_id: uuid.UUID
) -> Proposal:
    proposal = await _get_locked(db, proposal_id)
    request = await db.get(VisaRequest, proposal.request_id)
    if request is None or request.client_id != client_id:
        raise Forbidden("Not authorized to reject this proposal")
    if proposal.status != ProposalStatus.PENDING:
        raise InvalidState(f"Proposal must be pending, currently {proposal.status.value}")

    proposal.status = ProposalStatus.REJECTED
    proposal.responded_at = datetime.now(UTC)
    await db.commit()
    return await get_proposal(db, proposal_id)


async def withdraw_proposal(
    db: AsyncSession, proposal_id: uuid.UUID, agent_id: uuid.UUID
) -> Proposal:
    proposal = await _get_locked(db, proposal_id)
    if proposal.agent_id != agent_id:
        raise Forbidden("Not authorized to withdraw this proposal")
    if proposal.status != ProposalStatus.PENDING:
        raise InvalidState(f"Proposal must be pending, currently {proposal.status.value}")

    proposal.status = ProposalStatus.WITHDRAWN
    await db.commit()
    return await get_proposal(db, proposal_id)


async def update_proposal(
    db: AsyncSession, proposal_id: uuid.UUID, agent_id: uuid.UUID, data: ProposalUpdate
) -> Proposal:
    """Edit a pending proposal. Budget and milestones must still add up afterwards."""
    proposal = await _get_locked(db, proposal_id)
    if proposal.agent_id != agent_id:
        raise Forbidden("Not authorized to update this proposal")
    if proposal.status != ProposalStatus.PENDING:
        raise InvalidState(f"Can only update pending proposals, currently {proposal.status.value}")

    update_data = data.model_dump(exclude_unset=True, exclude_none=True, exclude={"milestones"})
    budget = update_data.get("budget", proposal.budget)
    if data.milestones is not None:
        total = sum((m.amount for m in data.milestones), Decimal("0"))
    else:
        total = proposal.milestone_total
    if total != budget:
        raise ValidationFailed(
            f"Milestone amounts ({total}) must add up to the proposal budget ({budget})"
        )

    for field, value in update_data.items():
        setattr(proposal, field, value)
    if data.milestones is not None:
        proposal.milestones = _milestones(data.milestones)

    await db.commit()
    logger.info("Proposal %s updated by %s", proposal_id, agent_id)
    return await get_proposal(db, proposal_id)


async def delete_proposal(
    db: AsyncSession, proposal_id: uuid.UUID, auth: AuthenticatedUser
) -> None:
    """Delete a proposal that was never accepted. Admins may delete any such proposal."""
    proposal = await _get_locked(db, proposal_id)
    if proposal.agent_id != auth.user_id and not auth.is_admin:
        raise Forbidden("Not authorized to delete this proposal")
    if proposal.status == ProposalStatus.ACCEPTED:
        raise InvalidState("Cannot delete an accepted proposal")

    if proposal.status == ProposalStatus.PENDING:
        request = await db.get(VisaRequest, proposal.request_id, with_for_update=True)
        if request is not None and request.proposal_count > 0:
            request.proposal_count -= 1
    await db.delete(proposal)
    await db.commit()
    logger.info("Proposal %s deleted by %s", proposal_id, auth.user_id)
