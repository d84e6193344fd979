"""Escrow business logic: fund, release, dispute, refund and cancel.

Every mutation locks the escrow row (and then the linked case row) with
SELECT FOR UPDATE, applies all changes and commits once. Both rows carry a
version counter, so a concurrent writer that slipped past the lock fails
with StaleDataError instead of overwriting. Notifications go out only after
the commit succeeded.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser
from visaflow.config import settings
from visaflow.errors import (
    Conflict,
    Forbidden,
    InvalidState,
    NotFound,
    PaymentGatewayError,
    ValidationFailed,
)
from visaflow.models.case import Case, CaseMilestone, CaseMilestoneStatus, CaseStatus
from visaflow.models.escrow import (
    RELEASABLE_STATUSES,
    DisputeOutcome,
    DisputeStatus,
    Escrow,
    EscrowDispute,
    EscrowMilestone,
    EscrowMilestoneStatus,
    EscrowStatus,
    PaymentMethod,
)
from visaflow.models.notification import Channel, NotificationCategory
from visaflow.models.proposal import Proposal, ProposalStatus
from visaflow.models.user import UserRole
from visaflow.models.visa_request import Priority, VisaRequest, VisaRequestStatus
from visaflow.schemas.escrow import (
    CancelEscrow,
    EscalateDispute,
    FundEscrow,
    HoldEscrow,
    RefundEscrow,
    ReleaseEscrow,
    ResolveDispute,
)
from visaflow.services.fees import EscrowFees, calculate_escrow_fees
from visaflow.services.ledger import (
    assert_transition,
    cancel_case,
    complete_escrow_milestones,
    get_case,
    get_case_for_escrow,
    get_escrow,
    mark_case_disputed,
    mirror_escrow_release,
)
from visaflow.services.notifications import Notifier
from visaflow.services.payments import PaymentGateway

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = frozenset({
    EscrowStatus.DEPOSITED,
    EscrowStatus.IN_PROGRESS,
    EscrowStatus.DISPUTED,
})
# Fund opens escrows as deposited; pending rows hold no charge and cancel without a refund
CANCELLABLE_STATUSES = frozenset({EscrowStatus.PENDING, EscrowStatus.DEPOSITED})
OPEN_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.ESCALATED})


def _assert_party(escrow: Escrow, auth: AuthenticatedUser) -> None:
    """Caller must be the escrow's client, its agent, or an admin."""
    if auth.is_admin or escrow.is_party(auth.user_id):
        return
    raise Forbidden("Not authorized to access this escrow")


def _recipients(escrow: Escrow, auth: AuthenticatedUser) -> list[uuid.UUID]:
    """Counter-party of the actor; both parties when an admin acted."""
    counterparty = escrow.counterparty_of(auth.user_id)
    if counterparty is None:
        return [escrow.client_id, escrow.agent_id]
    return [counterparty]


async def _load(db: AsyncSession, escrow_id: uuid.UUID) -> Escrow:
    return await get_escrow(db, escrow_id)


# --- Fund ---


async def fund_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: Notifier,
    client_id: uuid.UUID,
    data: FundEscrow,
) -> tuple[Escrow, Case]:
    """Charge the client and open an escrow plus its case against a proposal.

    All ledger writes happen in one transaction. If the transaction fails after
    the gateway charge succeeded, the charge is refunded.
    """
    result = await db.execute(
        select(Proposal).where(Proposal.proposal_id == data.proposal_id).with_for_update()
    )
    proposal = result.scalar_one_or_none()
    if proposal is None:
        raise NotFound("Proposal not found")

    result = await db.execute(
        select(VisaRequest).where(VisaRequest.request_id == proposal.request_id).with_for_update()
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFound("Visa request not found")
    if request.client_id != client_id:
        raise Forbidden("Not authorized to fund escrow for this proposal")

    existing = await db.execute(
        select(Escrow.escrow_id).where(Escrow.proposal_id == proposal.proposal_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise Conflict("Escrow already exists for this proposal")

    if proposal.status != ProposalStatus.PENDING:
        raise InvalidState(f"Proposal must be pending, currently {proposal.status.value}")

    milestone_total = proposal.milestone_total
    if data.amount != milestone_total:
        raise ValidationFailed(
            f"Escrow amount {data.amount} must equal the sum of milestone amounts {milestone_total}"
        )

    fees = calculate_escrow_fees(data.amount)
    # Each funding attempt charges under its own key
    escrow_id = uuid.uuid4()
    proposal_id = proposal.proposal_id
    charge = await gateway.charge(
        data.amount, settings.default_currency, data.payment_method, f"fund:{escrow_id}"
    )
    intent_id = charge.intent_id

    try:
        escrow, case = _open_escrow(escrow_id, proposal, request, client_id, data, fees, intent_id)
        db.add(escrow)
        await db.flush()
        # No relationship links a case to its escrow, so the escrow rows must exist first
        db.add(case)
        await db.flush()
        await db.commit()
    except Exception as exc:
        # rollback expires every loaded row; only the locals above are safe to read
        await db.rollback()
        await _compensate_charge(gateway, intent_id, data.amount, proposal_id)
        if isinstance(exc, IntegrityError):
            raise Conflict("Escrow already exists for this proposal")
        raise

    logger.info(
        "Escrow %s funded for proposal %s (%s %s)",
        escrow.escrow_id, proposal_id, escrow.amount, escrow.currency,
    )

    await notifier.notify(
        escrow.agent_id,
        "escrow:funded",
        {"escrow_id": str(escrow.escrow_id), "case_id": str(case.case_id), "amount": str(escrow.amount)},
        title="Escrow funded",
        message=f"The client funded {escrow.amount} {escrow.currency} in escrow. You can start work.",
        sender_id=client_id,
        priority=Priority.HIGH,
        category=NotificationCategory.SUCCESS,
        link=f"/cases/{case.case_id}",
        channels=(Channel.IN_APP, Channel.EMAIL),
    )

    return await _load(db, escrow.escrow_id), await get_case(db, case.case_id)


def _open_escrow(
    escrow_id: uuid.UUID,
    proposal: Proposal,
    request: VisaRequest,
    client_id: uuid.UUID,
    data: FundEscrow,
    fees: EscrowFees,
    intent_id: str,
) -> tuple[Escrow, Case]:
    """Build the escrow and case rows and move proposal and request forward."""
    now = datetime.now(UTC)
    escrow_milestones = [
        EscrowMilestone(
            milestone_id=uuid.uuid4(),
            escrow_id=escrow_id,
            order=m.order,
            description=m.title,
            amount=m.amount,
            status=EscrowMilestoneStatus.PENDING,
            evidence=[],
        )
        for m in proposal.milestones
    ]
    escrow = Escrow(
        escrow_id=escrow_id,
        client_id=client_id,
        agent_id=proposal.agent_id,
        proposal_id=proposal.proposal_id,
        visa_request_id=request.request_id,
        amount=data.amount,
        currency=settings.default_currency,
        status=EscrowStatus.DEPOSITED,
        payment_method=PaymentMethod(data.payment_method),
        payment_intent_id=intent_id,
        fee_platform=fees.platform,
        fee_payment=fees.payment,
        fee_total=fees.total,
        milestones=escrow_milestones,
        timeline=[],
        created_at=now,
        updated_at=now,
    )
    escrow.record(
        "escrow_funded",
        f"Escrow funded with {data.amount} {settings.default_currency}",
        client_id,
        {"amount": str(data.amount), "payment_intent_id": intent_id, "fees": fees.to_dict()},
    )

    proposal.status = ProposalStatus.ACCEPTED
    proposal.responded_at = now
    request.status = VisaRequestStatus.IN_PROGRESS

    case_id = uuid.uuid4()
    case_milestones = [
        CaseMilestone(
            case_milestone_id=uuid.uuid4(),
            case_id=case_id,
            escrow_milestone_id=em.milestone_id,
            order=pm.order,
            title=pm.title,
            description=pm.description,
            amount=pm.amount,
            status=CaseMilestoneStatus.IN_PROGRESS if i == 0 else CaseMilestoneStatus.PENDING,
            started_at=now if i == 0 else None,
            due_date=pm.due_date,
            deliverables=list(pm.deliverables or []),
            submitted_files=[],
            is_active=False,
            is_paid=False,
        )
        for i, (pm, em) in enumerate(zip(proposal.milestones, escrow_milestones))
    ]
    due_dates = [m.due_date for m in case_milestones]
    case = Case(
        case_id=case_id,
        request_id=request.request_id,
        proposal_id=proposal.proposal_id,
        escrow_id=escrow_id,
        client_id=client_id,
        agent_id=proposal.agent_id,
        status=CaseStatus.ACTIVE,
        priority=request.priority,
        total_amount=data.amount,
        paid_amount=Decimal("0.00"),
        currency=settings.default_currency,
        start_date=now,
        estimated_completion_date=max(due_dates) if due_dates else now,
        milestones=case_milestones,
        documents=[],
        timeline=[],
        created_at=now,
    )
    case.recompute()
    case.record(
        "case_created",
        f"Case created from accepted proposal with {len(case_milestones)} milestones",
        client_id,
        {"escrow_id": str(escrow_id), "proposal_id": str(proposal.proposal_id)},
    )
    return escrow, case


async def _compensate_charge(
    gateway: PaymentGateway, intent_id: str, amount: Decimal, proposal_id: uuid.UUID
) -> None:
    try:
        await gateway.refund(intent_id, amount, f"fund-compensation:{intent_id}")
        logger.warning("Refunded charge %s after failed funding of proposal %s", intent_id, proposal_id)
    except PaymentGatewayError:
        logger.exception(
            "Compensating refund failed for charge %s (proposal %s); manual action required",
            intent_id, proposal_id,
        )


# --- Release ---


async def release_escrow(
    db: AsyncSession,
    notifier: Notifier,
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: ReleaseEscrow,
) -> Escrow:
    """Release one milestone (``milestone_id``) or everything still held."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    _assert_party(escrow, auth)
    if escrow.status not in RELEASABLE_STATUSES:
        raise InvalidState(f"Cannot release funds from an escrow that is {escrow.status.value}")

    if data.milestone_id is not None:
        milestone = escrow.milestone(data.milestone_id)
        if milestone is None:
            raise NotFound("Milestone not found")
        if milestone.status == EscrowMilestoneStatus.COMPLETED:
            raise Conflict("Milestone already completed")
        targets = [milestone]
    else:
        targets = [m for m in escrow.milestones if m.status != EscrowMilestoneStatus.COMPLETED]

    release_amount = sum((m.amount for m in targets), Decimal("0.00"))
    if data.amount is not None and data.amount != release_amount:
        raise ValidationFailed(
            f"Release amount {data.amount} does not match the amount due {release_amount}"
        )

    case = await get_case_for_escrow(db, escrow_id, for_update=True)

    complete_escrow_milestones(escrow, targets)
    if data.milestone_id is not None:
        escrow.record(
            "milestone_released",
            data.reason,
            auth.user_id,
            {"milestone_id": str(data.milestone_id), "amount": str(release_amount)},
        )
    else:
        escrow.record(
            "escrow_released",
            data.reason,
            auth.user_id,
            {"amount": str(release_amount)},
        )

    case_completed = False
    if case is not None:
        case_completed = mirror_escrow_release(case, targets, auth.user_id)

    await db.commit()
    logger.info("Released %s from escrow %s (status %s)", release_amount, escrow_id, escrow.status.value)

    payload = {"escrow_id": str(escrow_id), "amount": str(release_amount), "status": escrow.status.value}
    for recipient in _recipients(escrow, auth):
        await notifier.notify(
            recipient, "escrow:released", payload,
            title="Payment released",
            message=f"{release_amount} {escrow.currency} was released from escrow.",
            sender_id=auth.user_id,
            priority=Priority.HIGH,
            category=NotificationCategory.SUCCESS,
            link=f"/escrow/{escrow_id}",
        )
    if data.milestone_id is not None and escrow.agent_id != auth.user_id:
        message = f"Payment of {release_amount} {escrow.currency} released for a milestone."
        if case_completed:
            message = "Final milestone approved. The case is complete and all funds are released."
        await notifier.notify(
            escrow.agent_id, "milestone:payment_released",
            {**payload, "milestone_id": str(data.milestone_id)},
            title="Milestone payment released",
            message=message,
            sender_id=auth.user_id,
            priority=Priority.HIGH,
            category=NotificationCategory.SUCCESS,
            link=f"/cases/{case.case_id}" if case is not None else None,
        )

    return await _load(db, escrow_id)


# --- Disputes ---


async def hold_escrow(
    db: AsyncSession,
    notifier: Notifier,
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: HoldEscrow,
) -> Escrow:
    """Open a dispute. Funds stay frozen until an admin resolves it."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    _assert_party(escrow, auth)
    if escrow.status not in RELEASABLE_STATUSES:
        raise InvalidState(f"Cannot dispute an escrow that is {escrow.status.value}")
    assert_transition(escrow, EscrowStatus.DISPUTED)

    case = await get_case_for_escrow(db, escrow_id, for_update=True)

    now = datetime.now(UTC)
    escrow.status = EscrowStatus.DISPUTED
    # A dispute row left over from an earlier resumed dispute is reopened in place
    dispute = escrow.dispute
    if dispute is None:
        dispute = EscrowDispute(dispute_id=uuid.uuid4(), escrow_id=escrow_id)
        escrow.dispute = dispute
    dispute.reason = data.reason
    dispute.description = data.description
    dispute.evidence = list(data.evidence)
    dispute.created_by = auth.user_id
    dispute.status = DisputeStatus.OPEN
    dispute.resolution = None
    dispute.outcome = None
    dispute.resolved_by = None
    dispute.resolved_at = None
    dispute.created_at = now

    escrow.record(
        "dispute_raised",
        f"Dispute raised: {data.reason}",
        auth.user_id,
        {"reason": data.reason, "evidence_count": len(data.evidence)},
    )
    if case is not None:
        mark_case_disputed(case, auth.user_id, data.reason)

    await db.commit()
    logger.warning("Escrow %s disputed by %s: %s", escrow_id, auth.user_id, data.reason)

    payload = {"escrow_id": str(escrow_id), "reason": data.reason}
    for recipient in _recipients(escrow, auth):
        await notifier.notify(
            recipient, "escrow:disputed", payload,
            title="Escrow disputed",
            message=f"A dispute was raised on your escrow: {data.reason}",
            sender_id=auth.user_id,
            priority=Priority.HIGH,
            category=NotificationCategory.WARNING,
            link=f"/escrow/{escrow_id}",
            channels=(Channel.IN_APP, Channel.EMAIL),
        )
    await notifier.notify_admins(
        "escrow:disputed", payload,
        title="Escrow dispute needs review",
        message=f"Escrow {escrow_id} was disputed: {data.reason}",
        sender_id=auth.user_id,
        link=f"/escrow/{escrow_id}",
    )

    return await _load(db, escrow_id)


async def escalate_dispute(
    db: AsyncSession,
    notifier: Notifier,
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: EscalateDispute,
) -> Escrow:
    escrow = await get_escrow(db, escrow_id, for_update=True)
    _assert_party(escrow, auth)
    if escrow.status != EscrowStatus.DISPUTED or escrow.dispute is None:
        raise InvalidState("Escrow has no dispute to escalate")
    if escrow.dispute.status != DisputeStatus.OPEN:
        raise InvalidState(f"Dispute is already {escrow.dispute.status.value}")

    escrow.dispute.status = DisputeStatus.ESCALATED
    escrow.record("dispute_escalated", data.note, auth.user_id)
    await db.commit()

    await notifier.notify_admins(
        "escrow:disputed",
        {"escrow_id": str(escrow_id), "escalated": True},
        title="Dispute escalated",
        message=f"Dispute on escrow {escrow_id} was escalated: {data.note}",
        sender_id=auth.user_id,
        priority=Priority.URGENT,
        link=f"/escrow/{escrow_id}",
    )
    return await _load(db, escrow_id)


async def resolve_dispute(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: Notifier,
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: ResolveDispute,
) -> Escrow:
    """Admin decision on a dispute: resume work, release everything, or refund."""
    if not auth.is_admin:
        raise Forbidden("Only an admin can resolve disputes")

    escrow = await get_escrow(db, escrow_id, for_update=True)
    if escrow.status != EscrowStatus.DISPUTED or escrow.dispute is None:
        raise InvalidState("Escrow is not disputed")
    if escrow.dispute.status not in OPEN_DISPUTE_STATUSES:
        raise InvalidState(f"Dispute is already {escrow.dispute.status.value}")

    case = await get_case_for_escrow(db, escrow_id, for_update=True)
    outcome = DisputeOutcome(data.outcome)
    now = datetime.now(UTC)
    event_data: dict = {"outcome": outcome.value}

    if outcome == DisputeOutcome.RESUME:
        target = EscrowStatus.IN_PROGRESS if escrow.completed_milestones else EscrowStatus.DEPOSITED
        assert_transition(escrow, target)
        escrow.status = target
        if case is not None and case.status == CaseStatus.DISPUTED:
            case.status = CaseStatus.ACTIVE
            case.record("dispute_resolved", f"Dispute resolved: {data.resolution}", auth.user_id, event_data)
    elif outcome == DisputeOutcome.RELEASE:
        targets = [m for m in escrow.milestones if m.status != EscrowMilestoneStatus.COMPLETED]
        released = complete_escrow_milestones(escrow, targets)
        event_data["released_amount"] = str(released)
        if case is not None:
            case.status = CaseStatus.ACTIVE
            mirror_escrow_release(case, targets, auth.user_id)
    else:
        assert_transition(escrow, EscrowStatus.REFUNDED)
        refunded = await _refund_remaining(gateway, escrow, data.resolution, f"refund:{escrow_id}")
        event_data["refund_amount"] = str(refunded)
        if case is not None:
            cancel_case(case, auth.user_id, f"Case cancelled after dispute refund: {data.resolution}")

    escrow.dispute.status = DisputeStatus.RESOLVED
    escrow.dispute.resolution = data.resolution
    escrow.dispute.outcome = outcome
    escrow.dispute.resolved_by = auth.user_id
    escrow.dispute.resolved_at = now
    escrow.record("dispute_resolved", f"Dispute resolved: {data.resolution}", auth.user_id, event_data)

    await db.commit()
    logger.info("Dispute on escrow %s resolved with outcome %s", escrow_id, outcome.value)

    for recipient in (escrow.client_id, escrow.agent_id):
        await notifier.notify(
            recipient, "escrow:dispute_resolved",
            {"escrow_id": str(escrow_id), **event_data},
            title="Dispute resolved",
            message=f"The dispute on your escrow was resolved ({outcome.value}): {data.resolution}",
            sender_id=auth.user_id,
            priority=Priority.HIGH,
            category=NotificationCategory.INFO,
            link=f"/escrow/{escrow_id}",
            channels=(Channel.IN_APP, Channel.EMAIL),
        )
    return await _load(db, escrow_id)


# --- Refund / cancel ---


async def _refund_remaining(
    gateway: PaymentGateway, escrow: Escrow, reason: str, idempotency_key: str
) -> Decimal:
    """Refund the unreleased remainder and move the escrow to refunded."""
    amount = escrow.remaining_amount
    if amount <= 0:
        raise InvalidState("Nothing left in escrow to refund")
    refund = await gateway.refund(escrow.payment_intent_id or "", amount, idempotency_key)
    now = datetime.now(UTC)
    escrow.refund_amount = amount
    escrow.refund_reason = reason
    escrow.refund_id = refund.refund_id
    escrow.refunded_at = now
    escrow.status = EscrowStatus.REFUNDED
    escrow.updated_at = now
    return amount


async def refund_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: Notifier,
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: RefundEscrow,
) -> Escrow:
    """Return the unreleased remainder to the client (agent or admin only)."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    if not auth.is_admin and auth.user_id != escrow.agent_id:
        raise Forbidden("Only the agent or an admin can refund this escrow")
    if escrow.status not in REFUNDABLE_STATUSES:
        raise InvalidState(f"Cannot refund an escrow that is {escrow.status.value}")
    assert_transition(escrow, EscrowStatus.REFUNDED)

    case = await get_case_for_escrow(db, escrow_id, for_update=True)

    refunded = await _refund_remaining(gateway, escrow, data.reason, f"refund:{escrow_id}")
    if escrow.dispute is not None and escrow.dispute.status in OPEN_DISPUTE_STATUSES:
        escrow.dispute.status = DisputeStatus.RESOLVED
        escrow.dispute.outcome = DisputeOutcome.REFUND
        escrow.dispute.resolution = data.reason
        escrow.dispute.resolved_by = auth.user_id
        escrow.dispute.resolved_at = escrow.refunded_at
    escrow.record(
        "escrow_refunded",
        f"Refunded {refunded} {escrow.currency}: {data.reason}",
        auth.user_id,
        {"amount": str(refunded), "refund_id": escrow.refund_id},
    )
    if case is not None:
        cancel_case(case, auth.user_id, f"Case cancelled, escrow refunded: {data.reason}")

    await db.commit()
    logger.info("Escrow %s refunded %s", escrow_id, refunded)

    recipients = [escrow.client_id]
    if auth.is_admin:
        recipients.append(escrow.agent_id)
    for recipient in recipients:
        await notifier.notify(
            recipient, "escrow:refunded",
            {"escrow_id": str(escrow_id), "amount": str(refunded)},
            title="Escrow refunded",
            message=f"{refunded} {escrow.currency} was refunded: {data.reason}",
            sender_id=auth.user_id,
            priority=Priority.HIGH,
            category=NotificationCategory.INFO,
            link=f"/escrow/{escrow_id}",
            channels=(Channel.IN_APP, Channel.EMAIL),
        )
    return await _load(db, escrow_id)


async def cancel_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: Notifier,
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser,
    data: CancelEscrow,
) -> Escrow:
    """Cancel before any work was paid for. A deposited escrow is refunded in full."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    _assert_party(escrow, auth)
    if escrow.status not in CANCELLABLE_STATUSES or escrow.completed_milestones:
        raise InvalidState(f"Cannot cancel an escrow that is {escrow.status.value}")
    assert_transition(escrow, EscrowStatus.CANCELLED)

    case = await get_case_for_escrow(db, escrow_id, for_update=True)

    now = datetime.now(UTC)
    if escrow.status == EscrowStatus.DEPOSITED and escrow.payment_intent_id:
        refund = await gateway.refund(escrow.payment_intent_id, escrow.amount, f"cancel:{escrow_id}")
        escrow.refund_amount = escrow.amount
        escrow.refund_reason = data.reason
        escrow.refund_id = refund.refund_id
        escrow.refunded_at = now
    escrow.status = EscrowStatus.CANCELLED
    escrow.record(
        "escrow_cancelled",
        f"Escrow cancelled: {data.reason}",
        auth.user_id,
        {"refund_amount": str(escrow.refund_amount) if escrow.refund_amount is not None else None},
    )
    if case is not None:
        cancel_case(case, auth.user_id, f"Case cancelled: {data.reason}")

    await db.commit()
    logger.info("Escrow %s cancelled by %s", escrow_id, auth.user_id)

    for recipient in _recipients(escrow, auth):
        await notifier.notify(
            recipient, "escrow:cancelled",
            {"escrow_id": str(escrow_id), "reason": data.reason},
            title="Escrow cancelled",
            message=f"The escrow was cancelled: {data.reason}",
            sender_id=auth.user_id,
            priority=Priority.HIGH,
            category=NotificationCategory.WARNING,
            link=f"/escrow/{escrow_id}",
        )
    return await _load(db, escrow_id)


# --- Reads ---


async def get_escrow_for_party(
    db: AsyncSession, escrow_id: uuid.UUID, auth: AuthenticatedUser
) -> Escrow:
    escrow = await get_escrow(db, escrow_id)
    _assert_party(escrow, auth)
    return escrow


async def list_escrows(
    db: AsyncSession,
    auth: AuthenticatedUser,
    status: EscrowStatus | None = None,
    page: int = 1,
    limit: int = 20,
    all_escrows: bool = False,
) -> tuple[list[Escrow], int]:
    """Escrows visible to the caller, newest first.

    Clients see their own, agents see theirs. Admins see every escrow only
    when ``all_escrows`` is set.
    """
    query = select(Escrow)
    if all_escrows:
        if not auth.is_admin:
            raise Forbidden("Only an admin can list all escrows")
    elif auth.role == UserRole.AGENT:
        query = query.where(Escrow.agent_id == auth.user_id)
    elif auth.role == UserRole.CLIENT:
        query = query.where(Escrow.client_id == auth.user_id)
    if status is not None:
        query = query.where(Escrow.status == status)

    total = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar_one()
    result = await db.execute(
        query.order_by(Escrow.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total
