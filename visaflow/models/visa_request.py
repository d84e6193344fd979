"""Visa request SQLAlchemy model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from visaflow.database import Base

VISA_TYPES = (
    "student-visa",
    "work-permit",
    "permanent-residence",
    "visitor-visa",
    "business-visa",
    "family-visa",
    "refugee-protection",
    "citizenship",
    "other",
)

BUDGET_BANDS = (
    "under-500",
    "500-1000",
    "1000-2500",
    "2500-5000",
    "5000-10000",
    "above-10000",
)

TIMELINES = (
    "urgent",
    "1-week",
    "2-weeks",
    "1-month",
    "2-3-months",
    "3-6-months",
    "flexible",
)


class Priority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class VisaRequestStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class VisaRequest(Base):
    __tablename__ = "visa_requests"

    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    visa_type: Mapped[str] = mapped_column(String(32), nullable=False)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    budget: Mapped[str] = mapped_column(String(32), nullable=False)
    timeline: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=Priority.MEDIUM,
    )
    status: Mapped[VisaRequestStatus] = mapped_column(
        Enum(VisaRequestStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=VisaRequestStatus.PENDING,
    )
    proposal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
