"""Notification dispatch and inbox.

The dispatcher persists an inbox row, publishes the event to the recipient's
Redis pub/sub channel, and optionally sends an email. It is called after the
business transaction commits and never raises: a failed notification is
logged and dropped. Delivery is at-most-once.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visaflow.database import async_session
from visaflow.errors import NotFound
from visaflow.models.notification import (
    Channel,
    Notification,
    NotificationCategory,
    NotificationKind,
)
from visaflow.models.user import User, UserRole, UserStatus
from visaflow.models.visa_request import Priority
from visaflow.redis import admin_channel, get_redis, publish_event, user_channel
from visaflow.services.email import EmailSender, get_email_sender, render_notification_email

logger = logging.getLogger(__name__)

# Inbox type for each real-time event
_EVENT_KIND_MAP = {
    "escrow:funded": NotificationKind.PAYMENT,
    "escrow:released": NotificationKind.PAYMENT,
    "escrow:disputed": NotificationKind.PAYMENT,
    "escrow:dispute_resolved": NotificationKind.PAYMENT,
    "escrow:refunded": NotificationKind.PAYMENT,
    "escrow:cancelled": NotificationKind.PAYMENT,
    "milestone:needs_approval": NotificationKind.STATUS_UPDATE,
    "milestone:payment_released": NotificationKind.PAYMENT,
    "document:new": NotificationKind.DOCUMENT,
    "case:status_changed": NotificationKind.STATUS_UPDATE,
    "proposal:new": NotificationKind.PROPOSAL,
    "proposal:status_changed": NotificationKind.PROPOSAL,
    "review:new": NotificationKind.REVIEW,
}


class Notifier:
    """Outbound notification port used by the escrow and case services."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis,
        email_sender: EmailSender,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.email_sender = email_sender

    async def notify(
        self,
        recipient_id: uuid.UUID,
        event: str,
        payload: dict,
        *,
        title: str,
        message: str,
        sender_id: uuid.UUID | None = None,
        priority: Priority = Priority.MEDIUM,
        category: NotificationCategory = NotificationCategory.INFO,
        link: str | None = None,
        channels: Iterable[Channel] = (Channel.IN_APP,),
    ) -> Notification | None:
        """Persist, publish and (optionally) email one notification.

        Returns the stored notification, or None when persisting failed.
        """
        channels = list(channels)
        notification = None
        recipient_email = None
        try:
            async with self.session_factory() as db:
                notification = Notification(
                    notification_id=uuid.uuid4(),
                    recipient_id=recipient_id,
                    sender_id=sender_id,
                    kind=_EVENT_KIND_MAP.get(event, NotificationKind.SYSTEM),
                    event=event,
                    title=title[:100],
                    message=message[:500],
                    data=payload,
                    link=link,
                    priority=priority,
                    category=category,
                    channels=[c.value for c in channels],
                )
                db.add(notification)
                if Channel.EMAIL in channels:
                    recipient = await db.get(User, recipient_id)
                    if recipient is not None:
                        recipient_email = recipient.email
                await db.commit()
        except Exception:
            logger.exception("Failed to store notification %s for %s", event, recipient_id)
            notification = None

        await self._publish(user_channel(recipient_id), event, {
            "notification_id": str(notification.notification_id) if notification else None,
            "title": title,
            "message": message,
            "priority": priority.value,
            "category": category.value,
            "link": link,
            **payload,
        })

        if recipient_email and notification is not None:
            await self._send_email(notification, recipient_email)

        return notification

    async def notify_admins(
        self,
        event: str,
        payload: dict,
        *,
        title: str,
        message: str,
        sender_id: uuid.UUID | None = None,
        priority: Priority = Priority.HIGH,
        category: NotificationCategory = NotificationCategory.WARNING,
        link: str | None = None,
    ) -> int:
        """Notify every active admin. Returns the number of admins notified."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(User.user_id).where(
                        User.role == UserRole.ADMIN,
                        User.status == UserStatus.ACTIVE,
                    )
                )
                admin_ids = list(result.scalars().all())
        except Exception:
            logger.exception("Failed to load admins for %s", event)
            return 0

        for admin_id in admin_ids:
            await self.notify(
                admin_id, event, payload,
                title=title, message=message, sender_id=sender_id,
                priority=priority, category=category, link=link,
            )
        await self._publish(admin_channel(), event, {
            "title": title, "message": message, **payload,
        })
        return len(admin_ids)

    async def _publish(self, channel: str, event: str, data: dict) -> None:
        try:
            await publish_event(self.redis, channel, event, data)
        except Exception:
            logger.exception("Failed to publish %s on %s", event, channel)

    async def _send_email(self, notification: Notification, to: str) -> None:
        subject, body = render_notification_email(
            notification.title, notification.message, notification.link
        )
        try:
            await self.email_sender.send(to, subject, body)
        except Exception:
            logger.exception("Failed to email notification %s", notification.notification_id)
            return
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(Notification)
                    .where(Notification.notification_id == notification.notification_id)
                    .values(email_sent=True)
                )
                await db.commit()
            notification.email_sent = True
        except Exception:
            logger.exception("Failed to flag notification %s as emailed", notification.notification_id)


async def get_notifier(redis: aioredis.Redis = Depends(get_redis)) -> Notifier:
    return Notifier(async_session, redis, get_email_sender())


# --- Inbox ---


async def list_notifications(
    db: AsyncSession,
    user_id: uuid.UUID,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
) -> tuple[list[Notification], int, int]:
    """Return (notifications, total, unread) for a user, newest first."""
    base = select(Notification).where(Notification.recipient_id == user_id)
    if unread_only:
        base = base.where(Notification.is_read.is_(False))

    total = (await db.execute(
        select(func.count()).select_from(base.subquery())
    )).scalar_one()
    unread = (await db.execute(
        select(func.count()).select_from(Notification).where(
            Notification.recipient_id == user_id,
            Notification.is_read.is_(False),
        )
    )).scalar_one()

    result = await db.execute(
        base.order_by(Notification.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total, unread


async def mark_read(
    db: AsyncSession, notification_id: uuid.UUID, user_id: uuid.UUID
) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.notification_id == notification_id,
            Notification.recipient_id == user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFound("Notification not found")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(UTC)
        await db.commit()
        await db.refresh(notification)
    return notification


async def mark_all_read(db: AsyncSession, user_id: uuid.UUID) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.recipient_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(UTC))
    )
    await db.commit()
    return result.rowcount


async def delete_notification(
    db: AsyncSession, notification_id: uuid.UUID, user_id: uuid.UUID
) -> None:
    result = await db.execute(
        select(Notification).where(
            Notification.notification_id == notification_id,
            Notification.recipient_id == user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFound("Notification not found")
    await db.delete(notification)
    await db.commit()
