"""Escrow, escrow milestone, dispute and timeline models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from visaflow.database import Base, JSONType


class EscrowStatus(enum.Enum):
    PENDING = "pending"
    DEPOSITED = "deposited"
    IN_PROGRESS = "in_progress"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


# Valid state transitions. IN_PROGRESS -> IN_PROGRESS is a partial release.
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.PENDING: {EscrowStatus.DEPOSITED, EscrowStatus.CANCELLED},
    EscrowStatus.DEPOSITED: {
        EscrowStatus.IN_PROGRESS,
        EscrowStatus.COMPLETED,
        EscrowStatus.DISPUTED,
        EscrowStatus.REFUNDED,
        EscrowStatus.CANCELLED,
    },
    EscrowStatus.IN_PROGRESS: {
        EscrowStatus.IN_PROGRESS,
        EscrowStatus.COMPLETED,
        EscrowStatus.DISPUTED,
        EscrowStatus.REFUNDED,
    },
    EscrowStatus.DISPUTED: {
        EscrowStatus.DEPOSITED,
        EscrowStatus.IN_PROGRESS,
        EscrowStatus.COMPLETED,
        EscrowStatus.REFUNDED,
    },
    EscrowStatus.COMPLETED: set(),
    EscrowStatus.REFUNDED: set(),
    EscrowStatus.CANCELLED: set(),
}

RELEASABLE_STATUSES = frozenset({EscrowStatus.DEPOSITED, EscrowStatus.IN_PROGRESS})


class EscrowMilestoneStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    DISPUTED = "disputed"


class PaymentMethod(enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class DisputeStatus(enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class DisputeOutcome(enum.Enum):
    RESUME = "resume"
    RELEASE = "release"
    REFUND = "refund"


class Escrow(Base):
    __tablename__ = "escrows"

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    proposal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("proposals.proposal_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    visa_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("visa_requests.request_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.PENDING,
        index=True,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    payment_intent_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    # Fee breakdown, fixed at funding time
    fee_platform: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    fee_payment: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    fee_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    milestones: Mapped[list["EscrowMilestone"]] = relationship(
        order_by="EscrowMilestone.order", lazy="selectin"
    )
    timeline: Mapped[list["EscrowTimelineEntry"]] = relationship(
        order_by="EscrowTimelineEntry.sequence", lazy="selectin"
    )
    dispute: Mapped["EscrowDispute | None"] = relationship(lazy="selectin", uselist=False)

    __mapper_args__ = {"version_id_col": version}

    def milestone(self, milestone_id: uuid.UUID) -> "EscrowMilestone | None":
        return next((m for m in self.milestones if m.milestone_id == milestone_id), None)

    @property
    def completed_milestones(self) -> list["EscrowMilestone"]:
        return [m for m in self.milestones if m.status == EscrowMilestoneStatus.COMPLETED]

    @property
    def total_milestones(self) -> int:
        return len(self.milestones)

    @property
    def released_amount(self) -> Decimal:
        return sum((m.amount for m in self.completed_milestones), Decimal("0.00"))

    @property
    def remaining_amount(self) -> Decimal:
        return self.amount - self.released_amount

    @property
    def progress(self) -> float:
        if not self.milestones:
            return 0.0
        return len(self.completed_milestones) / len(self.milestones) * 100

    @property
    def fees(self) -> dict:
        return {"platform": self.fee_platform, "payment": self.fee_payment, "total": self.fee_total}

    @property
    def refund_details(self) -> dict | None:
        if self.refund_amount is None:
            return None
        return {
            "amount": self.refund_amount,
            "reason": self.refund_reason,
            "processed_at": self.refunded_at,
            "refund_id": self.refund_id,
        }

    def is_party(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.client_id, self.agent_id)

    def counterparty_of(self, user_id: uuid.UUID) -> uuid.UUID | None:
        """The other party to the escrow, or None when the actor is not a party."""
        if user_id == self.client_id:
            return self.agent_id
        if user_id == self.agent_id:
            return self.client_id
        return None

    def record(
        self,
        event: str,
        description: str,
        by: uuid.UUID,
        data: dict | None = None,
    ) -> "EscrowTimelineEntry":
        """Append to the timeline. Also dirties the row so the version check runs."""
        now = datetime.now(UTC)
        entry = EscrowTimelineEntry(
            entry_id=uuid.uuid4(),
            escrow_id=self.escrow_id,
            sequence=len(self.timeline),
            event=event,
            description=description,
            by=by,
            date=now,
            data=data,
        )
        self.timeline.append(entry)
        self.updated_at = now
        return entry


class EscrowMilestone(Base):
    __tablename__ = "escrow_milestones"

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[EscrowMilestoneStatus] = mapped_column(
        Enum(EscrowMilestoneStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowMilestoneStatus.PENDING,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)


class EscrowDispute(Base):
    __tablename__ = "escrow_disputes"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    reason: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[DisputeOutcome | None] = mapped_column(
        Enum(DisputeOutcome, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class EscrowTimelineEntry(Base):
    """Append-only audit trail. Never update or delete rows."""
    __tablename__ = "escrow_timeline"
    __table_args__ = (
        UniqueConstraint("escrow_id", "sequence", name="uq_escrow_timeline_sequence"),
    )

    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
