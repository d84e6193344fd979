"""Notification inbox model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from visaflow.database import Base, JSONType
from visaflow.models.visa_request import Priority


class NotificationKind(enum.Enum):
    MESSAGE = "message"
    PROPOSAL = "proposal"
    VISA_REQUEST = "visa_request"
    PAYMENT = "payment"
    REVIEW = "review"
    SYSTEM = "system"
    DOCUMENT = "document"
    STATUS_UPDATE = "status_update"


class NotificationCategory(enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Channel(enum.Enum):
    IN_APP = "in_app"
    EMAIL = "email"


class Notification(Base):
    __tablename__ = "notifications"

    notification_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True
    )
    kind: Mapped[NotificationKind] = mapped_column(
        "type",
        Enum(NotificationKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(String(500), nullable=False)
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    link: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=Priority.MEDIUM,
    )
    category: Mapped[NotificationCategory] = mapped_column(
        Enum(NotificationCategory, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=NotificationCategory.INFO,
    )
    channels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True
    )
