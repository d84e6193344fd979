"""Case, case milestone, document and timeline models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (
    Boolean,
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
from visaflow.models.visa_request import Priority


class CaseStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    ON_HOLD = "on-hold"


class CaseMilestoneStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"


# Statuses an agent may set through UpdateMilestone
AGENT_SETTABLE_STATUSES = frozenset({
    CaseMilestoneStatus.PENDING,
    CaseMilestoneStatus.IN_PROGRESS,
    CaseMilestoneStatus.COMPLETED,
})


class Case(Base):
    __tablename__ = "cases"

    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("visa_requests.request_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    proposal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("proposals.proposal_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    escrow_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), unique=True, nullable=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[CaseStatus] = mapped_column(
        Enum(CaseStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=CaseStatus.ACTIVE,
        index=True,
    )
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=Priority.MEDIUM,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_milestone: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    client_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    agent_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    estimated_completion_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_completion_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    milestones: Mapped[list["CaseMilestone"]] = relationship(
        order_by="CaseMilestone.order", lazy="selectin"
    )
    documents: Mapped[list["CaseDocument"]] = relationship(
        order_by="CaseDocument.uploaded_at", lazy="selectin"
    )
    timeline: Mapped[list["CaseTimelineEntry"]] = relationship(
        order_by="CaseTimelineEntry.sequence", lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}

    def milestone_for_escrow(self, escrow_milestone_id: uuid.UUID) -> "CaseMilestone | None":
        return next(
            (m for m in self.milestones if m.escrow_milestone_id == escrow_milestone_id), None
        )

    @property
    def approved_milestones(self) -> list["CaseMilestone"]:
        return [m for m in self.milestones if m.status == CaseMilestoneStatus.APPROVED]

    @property
    def all_approved(self) -> bool:
        return bool(self.milestones) and len(self.approved_milestones) == len(self.milestones)

    def is_party(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.client_id, self.agent_id)

    def recompute(self) -> None:
        """Re-derive progress, paid amount and the active milestone pointer.

        Called after every milestone mutation. Exactly one milestone is active:
        the first one not yet approved, or the last one once all are approved.
        """
        total = len(self.milestones)
        approved = self.approved_milestones
        if total:
            ratio = Decimal(len(approved) * 100) / Decimal(total)
            self.progress = int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        else:
            self.progress = 0
        self.paid_amount = sum((m.amount for m in approved), Decimal("0.00"))

        active_index = next(
            (i for i, m in enumerate(self.milestones) if m.status != CaseMilestoneStatus.APPROVED),
            total - 1,
        )
        for i, m in enumerate(self.milestones):
            m.is_active = i == active_index
        if total:
            self.current_milestone = active_index + 1
        self.last_activity = datetime.now(UTC)

    def record(
        self,
        action: str,
        description: str,
        performed_by: uuid.UUID,
        data: dict | None = None,
    ) -> "CaseTimelineEntry":
        now = datetime.now(UTC)
        entry = CaseTimelineEntry(
            entry_id=uuid.uuid4(),
            case_id=self.case_id,
            sequence=len(self.timeline),
            action=action,
            description=description,
            performed_by=performed_by,
            performed_at=now,
            data=data,
        )
        self.timeline.append(entry)
        self.last_activity = now
        return entry


class CaseMilestone(Base):
    __tablename__ = "case_milestones"

    case_milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.case_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    escrow_milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrow_milestones.milestone_id", ondelete="RESTRICT"), unique=True, nullable=True
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[CaseMilestoneStatus] = mapped_column(
        Enum(CaseMilestoneStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=CaseMilestoneStatus.PENDING,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deliverables: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    submitted_files: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    client_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    agent_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class CaseDocument(Base):
    __tablename__ = "case_documents"

    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.case_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    uploaded_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class CaseTimelineEntry(Base):
    """Append-only case history."""
    __tablename__ = "case_timeline"
    __table_args__ = (
        UniqueConstraint("case_id", "sequence", name="uq_case_timeline_sequence"),
    )

    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.case_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    performed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
