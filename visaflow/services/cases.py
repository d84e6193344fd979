"""Case business logic: milestone lifecycle, notes, documents and reads.

Approving a case milestone pays out the linked escrow milestone in the same
transaction, so the escrow row is locked before the case row here too.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser
from visaflow.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from visaflow.models.case import (
    AGENT_SETTABLE_STATUSES,
    Case,
    CaseDocument,
    CaseMilestone,
    CaseMilestoneStatus,
    CaseStatus,
)
from visaflow.models.escrow import RELEASABLE_STATUSES, EscrowMilestoneStatus
from visaflow.models.notification import Channel, NotificationCategory
from visaflow.models.user import UserRole
from visaflow.models.visa_request import Priority
from visaflow.schemas.case import (
    AddNote,
    ApproveMilestone,
    CaseTimelineEntryResponse,
    CaseTimelineResponse,
    PaymentSummary,
    RejectMilestone,
    UpdateMilestone,
    UploadDocument,
)
from visaflow.schemas.escrow import HoldEscrow
from visaflow.services import escrow as escrow_service
from visaflow.services.ledger import (
    approve_case_milestone,
    complete_escrow_milestones,
    get_case,
    get_escrow,
)
from visaflow.services.notifications import Notifier

logger = logging.getLogger(__name__)


def _assert_party(case: Case, auth: AuthenticatedUser, allow_admin: bool = True) -> None:
    if case.is_party(auth.user_id) or (allow_admin and auth.is_admin):
        return
    raise Forbidden("Not authorized to access this case")


def _milestone_at(case: Case, index: int) -> CaseMilestone:
    if index < 0 or index >= len(case.milestones):
        raise ValidationFailed("Invalid milestone index")
    return case.milestones[index]


def _other_party(case: Case, user_id: uuid.UUID) -> uuid.UUID:
    return case.agent_id if user_id == case.client_id else case.client_id


# --- Reads ---


async def list_cases(
    db: AsyncSession,
    auth: AuthenticatedUser,
    status: CaseStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Case], int]:
    """Cases for the caller (all cases for admins), most recently active first."""
    query = select(Case)
    if auth.role == UserRole.CLIENT:
        query = query.where(Case.client_id == auth.user_id)
    elif auth.role == UserRole.AGENT:
        query = query.where(Case.agent_id == auth.user_id)
    if status is not None:
        query = query.where(Case.status == status)

    total = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar_one()
    result = await db.execute(
        query.order_by(Case.last_activity.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_case_for_party(
    db: AsyncSession, case_id: uuid.UUID, auth: AuthenticatedUser
) -> Case:
    case = await get_case(db, case_id)
    _assert_party(case, auth)
    return case


async def get_case_timeline(
    db: AsyncSession, case_id: uuid.UUID, auth: AuthenticatedUser
) -> CaseTimelineResponse:
    case = await get_case_for_party(db, case_id, auth)
    paid = [m for m in case.milestones if m.is_paid]
    return CaseTimelineResponse(
        case_id=case.case_id,
        timeline=[CaseTimelineEntryResponse.model_validate(e) for e in case.timeline],
        payment_summary=PaymentSummary(
            total_paid=case.paid_amount,
            total_amount=case.total_amount,
            remaining_amount=case.total_amount - case.paid_amount,
            payments_count=len(paid),
        ),
    )


# --- Milestones ---


async def update_milestone(
    db: AsyncSession,
    notifier: Notifier,
    case_id: uuid.UUID,
    index: int,
    auth: AuthenticatedUser,
    data: UpdateMilestone,
) -> Case:
    """Agent reports progress on a milestone."""
    case = await get_case(db, case_id, for_update=True)
    if auth.user_id != case.agent_id:
        raise Forbidden("Only the assigned agent can update milestones")
    milestone = _milestone_at(case, index)

    try:
        status = CaseMilestoneStatus(data.status)
    except ValueError:
        status = None
    if status not in AGENT_SETTABLE_STATUSES:
        names = ", ".join(sorted(s.value for s in AGENT_SETTABLE_STATUSES))
        raise ValidationFailed(f"Invalid milestone status, must be one of: {names}")
    if milestone.status == CaseMilestoneStatus.APPROVED:
        raise InvalidState("Cannot update an approved milestone")
    if case.status != CaseStatus.ACTIVE:
        raise InvalidState(f"Case is {case.status.value}, milestones cannot be updated")

    now = datetime.now(UTC)
    previous = milestone.status
    milestone.status = status
    if status == CaseMilestoneStatus.IN_PROGRESS and milestone.started_at is None:
        milestone.started_at = now
    if status == CaseMilestoneStatus.COMPLETED and milestone.completed_at is None:
        milestone.completed_at = now
    if data.agent_notes is not None:
        milestone.agent_notes = data.agent_notes
    if data.submitted_files is not None:
        milestone.submitted_files = [
            {
                "name": f.name,
                "url": f.url,
                "uploaded_at": (f.uploaded_at or now).isoformat(),
            }
            for f in data.submitted_files
        ]

    case.recompute()
    case.record(
        "milestone_updated",
        f"Milestone {milestone.order} '{milestone.title}' moved from {previous.value} to {status.value}",
        auth.user_id,
        {"milestone_index": index, "from": previous.value, "to": status.value},
    )
    await db.commit()

    payload = {"case_id": str(case_id), "milestone_index": index, "status": status.value}
    if status == CaseMilestoneStatus.COMPLETED:
        await notifier.notify(
            case.client_id, "milestone:needs_approval", payload,
            title="Milestone ready for approval",
            message=f"Milestone '{milestone.title}' is complete and waiting for your approval.",
            sender_id=auth.user_id,
            priority=Priority.HIGH,
            category=NotificationCategory.INFO,
            link=f"/cases/{case_id}",
            channels=(Channel.IN_APP, Channel.EMAIL),
        )
    else:
        await notifier.notify(
            case.client_id, "case:status_changed", payload,
            title="Milestone updated",
            message=f"Milestone '{milestone.title}' is now {status.value}.",
            sender_id=auth.user_id,
            link=f"/cases/{case_id}",
        )
    return await get_case(db, case_id)


async def approve_milestone(
    db: AsyncSession,
    notifier: Notifier,
    case_id: uuid.UUID,
    index: int,
    auth: AuthenticatedUser,
    data: ApproveMilestone,
) -> Case:
    """Client approves a completed milestone; its escrow milestone is released."""
    case = await get_case(db, case_id)
    if auth.user_id != case.client_id:
        raise Forbidden("Only the client can approve milestones")
    _milestone_at(case, index)

    escrow = None
    if case.escrow_id is not None:
        escrow = await get_escrow(db, case.escrow_id, for_update=True)
    case = await get_case(db, case_id, for_update=True)
    milestone = _milestone_at(case, index)

    if milestone.status != CaseMilestoneStatus.COMPLETED:
        raise InvalidState(
            f"Only completed milestones can be approved, this one is {milestone.status.value}"
        )
    if case.status != CaseStatus.ACTIVE:
        raise InvalidState(f"Case is {case.status.value}, milestones cannot be approved")

    if escrow is not None:
        if escrow.status not in RELEASABLE_STATUSES:
            raise InvalidState(f"Escrow is {escrow.status.value}, payment cannot be released")
        escrow_milestone = (
            escrow.milestone(milestone.escrow_milestone_id)
            if milestone.escrow_milestone_id is not None else None
        )
        if escrow_milestone is None:
            raise NotFound("Escrow milestone not found")
        if escrow_milestone.status == EscrowMilestoneStatus.COMPLETED:
            raise Conflict("Milestone payment already released")
        complete_escrow_milestones(escrow, [escrow_milestone])
        escrow.record(
            "milestone_released",
            f"Payment released on approval of milestone '{milestone.title}'",
            auth.user_id,
            {
                "milestone_id": str(escrow_milestone.milestone_id),
                "amount": str(escrow_milestone.amount),
                "case_id": str(case_id),
            },
        )

    completed = approve_case_milestone(case, milestone, auth.user_id, data.client_feedback)
    await db.commit()
    logger.info("Case %s milestone %d approved (case completed: %s)", case_id, index, completed)

    if completed:
        title = "Case completed"
        message = "The client approved the final milestone. The case is complete and all funds are released."
        priority = Priority.URGENT
    else:
        title = "Milestone approved"
        message = f"Milestone '{milestone.title}' was approved and {milestone.amount} {case.currency} released."
        priority = Priority.HIGH
    await notifier.notify(
        case.agent_id, "milestone:payment_released",
        {
            "case_id": str(case_id),
            "milestone_index": index,
            "amount": str(milestone.amount),
            "case_completed": completed,
        },
        title=title,
        message=message,
        sender_id=auth.user_id,
        priority=priority,
        category=NotificationCategory.SUCCESS,
        link=f"/cases/{case_id}",
        channels=(Channel.IN_APP, Channel.EMAIL),
    )
    return await get_case(db, case_id)


async def reject_milestone(
    db: AsyncSession,
    notifier: Notifier,
    case_id: uuid.UUID,
    index: int,
    auth: AuthenticatedUser,
    data: RejectMilestone,
) -> Case:
    """Client sends a completed milestone back to the agent."""
    case = await get_case(db, case_id, for_update=True)
    if auth.user_id != case.client_id:
        raise Forbidden("Only the client can reject milestones")
    milestone = _milestone_at(case, index)
    if milestone.status != CaseMilestoneStatus.COMPLETED:
        raise InvalidState(
            f"Only completed milestones can be rejected, this one is {milestone.status.value}"
        )
    if case.status != CaseStatus.ACTIVE:
        raise InvalidState(f"Case is {case.status.value}, milestones cannot be rejected")

    milestone.status = CaseMilestoneStatus.REJECTED
    milestone.client_feedback = data.client_feedback
    case.recompute()
    case.record(
        "milestone_rejected",
        f"Milestone {milestone.order} '{milestone.title}' rejected: {data.client_feedback}",
        auth.user_id,
        {"milestone_index": index},
    )
    await db.commit()

    await notifier.notify(
        case.agent_id, "case:status_changed",
        {"case_id": str(case_id), "milestone_index": index, "status": milestone.status.value},
        title="Milestone rejected",
        message=f"The client asked for changes on '{milestone.title}': {data.client_feedback}",
        sender_id=auth.user_id,
        priority=Priority.HIGH,
        category=NotificationCategory.WARNING,
        link=f"/cases/{case_id}",
    )
    return await get_case(db, case_id)


# --- Notes and documents ---


async def add_note(
    db: AsyncSession,
    notifier: Notifier,
    case_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: AddNote,
) -> Case:
    """Overwrite the caller's side of the case notes."""
    case = await get_case(db, case_id, for_update=True)
    _assert_party(case, auth, allow_admin=False)

    if auth.user_id == case.client_id:
        case.client_notes = data.note
    else:
        case.agent_notes = data.note
    case.record("note_added", "Notes updated", auth.user_id)
    await db.commit()

    await notifier.notify(
        _other_party(case, auth.user_id), "case:status_changed",
        {"case_id": str(case_id), "change": "note_added"},
        title="Case notes updated",
        message="New notes were added to your case.",
        sender_id=auth.user_id,
        link=f"/cases/{case_id}",
    )
    return await get_case(db, case_id)


async def upload_document(
    db: AsyncSession,
    notifier: Notifier,
    case_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: UploadDocument,
) -> Case:
    """Attach an already-stored document to the case."""
    case = await get_case(db, case_id, for_update=True)
    _assert_party(case, auth, allow_admin=False)

    document = CaseDocument(
        document_id=uuid.uuid4(),
        case_id=case_id,
        name=data.name,
        url=data.url,
        type=data.type,
        uploaded_by=auth.user_id,
        uploaded_at=datetime.now(UTC),
    )
    case.documents.append(document)
    case.record(
        "document_uploaded",
        f"Document '{data.name}' uploaded",
        auth.user_id,
        {"document_id": str(document.document_id), "type": data.type},
    )
    await db.commit()

    await notifier.notify(
        _other_party(case, auth.user_id), "document:new",
        {"case_id": str(case_id), "document_id": str(document.document_id), "name": data.name},
        title="New document",
        message=f"A new document was added to your case: {data.name}",
        sender_id=auth.user_id,
        link=f"/cases/{case_id}",
    )
    return await get_case(db, case_id)


# --- Disputes ---


async def open_case_dispute(
    db: AsyncSession,
    notifier: Notifier,
    case_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: HoldEscrow,
) -> Case:
    """Dispute a case by holding its escrow."""
    case = await get_case(db, case_id)
    _assert_party(case, auth, allow_admin=False)
    if case.escrow_id is None:
        raise InvalidState("Case has no escrow to dispute")
    await escrow_service.hold_escrow(db, notifier, case.escrow_id, auth, data)
    return await get_case(db, case_id)
