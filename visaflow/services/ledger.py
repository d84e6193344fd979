"""Shared escrow/case mutations used by both the escrow and case services.

Nothing here commits. Callers lock the escrow row before the case row, apply
the mutations below, then commit once.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.errors import InvalidState, NotFound
from visaflow.models.case import Case, CaseMilestone, CaseMilestoneStatus, CaseStatus
from visaflow.models.escrow import (
    VALID_TRANSITIONS,
    Escrow,
    EscrowMilestone,
    EscrowMilestoneStatus,
    EscrowStatus,
)


async def get_escrow(
    db: AsyncSession, escrow_id: uuid.UUID, for_update: bool = False
) -> Escrow:
    query = select(Escrow).where(Escrow.escrow_id == escrow_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFound("Escrow not found")
    return escrow


async def get_case(
    db: AsyncSession, case_id: uuid.UUID, for_update: bool = False
) -> Case:
    query = select(Case).where(Case.case_id == case_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    case = result.scalar_one_or_none()
    if case is None:
        raise NotFound("Case not found")
    return case


async def get_case_for_escrow(
    db: AsyncSession, escrow_id: uuid.UUID, for_update: bool = False
) -> Case | None:
    query = select(Case).where(Case.escrow_id == escrow_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


def assert_transition(escrow: Escrow, target: EscrowStatus) -> None:
    if target not in VALID_TRANSITIONS[escrow.status]:
        raise InvalidState(
            f"Cannot move escrow from {escrow.status.value} to {target.value}"
        )


def complete_escrow_milestones(
    escrow: Escrow, milestones: list[EscrowMilestone]
) -> Decimal:
    """Mark milestones completed and advance the escrow status.

    Returns the released amount. Does not write a timeline entry.
    """
    now = datetime.now(UTC)
    for milestone in milestones:
        milestone.status = EscrowMilestoneStatus.COMPLETED
        milestone.completed_at = now

    if all(m.status == EscrowMilestoneStatus.COMPLETED for m in escrow.milestones):
        target = EscrowStatus.COMPLETED
    else:
        target = EscrowStatus.IN_PROGRESS
    assert_transition(escrow, target)
    escrow.status = target
    escrow.updated_at = now
    return sum((m.amount for m in milestones), Decimal("0.00"))


def approve_case_milestone(
    case: Case,
    milestone: CaseMilestone,
    actor_id: uuid.UUID,
    feedback: str | None = None,
) -> bool:
    """Approve one case milestone and recompute the case.

    Returns True when this approval completed the case.
    """
    now = datetime.now(UTC)
    milestone.status = CaseMilestoneStatus.APPROVED
    milestone.approved_at = now
    milestone.is_paid = True
    if milestone.completed_at is None:
        milestone.completed_at = now
    if feedback:
        milestone.client_feedback = feedback
    case.recompute()
    case.record(
        "milestone_approved",
        f"Milestone {milestone.order} '{milestone.title}' approved and paid",
        actor_id,
        {"milestone_index": milestone.order - 1, "amount": str(milestone.amount)},
    )

    if case.all_approved and case.status != CaseStatus.COMPLETED:
        case.status = CaseStatus.COMPLETED
        case.actual_completion_date = now
        case.record(
            "case_completed",
            "All milestones approved. Case completed.",
            actor_id,
            {"total_paid": str(case.paid_amount)},
        )
        return True
    return False


def mirror_escrow_release(
    case: Case,
    released: list[EscrowMilestone],
    actor_id: uuid.UUID,
) -> bool:
    """Approve the case milestones linked to released escrow milestones.

    Returns True when the case became completed.
    """
    completed = False
    for escrow_milestone in released:
        milestone = case.milestone_for_escrow(escrow_milestone.milestone_id)
        if milestone is None or milestone.status == CaseMilestoneStatus.APPROVED:
            continue
        completed = approve_case_milestone(case, milestone, actor_id) or completed
    return completed


def mark_case_disputed(case: Case, actor_id: uuid.UUID, reason: str) -> None:
    case.status = CaseStatus.DISPUTED
    case.record("dispute_raised", f"Dispute raised: {reason}", actor_id, {"reason": reason})


def cancel_case(case: Case, actor_id: uuid.UUID, description: str, data: dict | None = None) -> None:
    case.status = CaseStatus.CANCELLED
    for milestone in case.milestones:
        milestone.is_active = False
    case.record("case_cancelled", description, actor_id, data)
