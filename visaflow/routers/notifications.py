"""Notification inbox endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser, verify_request
from visaflow.auth.rate_limit import check_rate_limit
from visaflow.database import get_db
from visaflow.schemas.common import ApiResponse
from visaflow.schemas.notification import NotificationPage, NotificationResponse
from visaflow.services import notifications as notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=ApiResponse[NotificationPage], dependencies=[Depends(check_rate_limit)])
async def list_notifications(
    unread_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[NotificationPage]:
    items, total, unread = await notification_service.list_notifications(
        db, auth.user_id, page=page, limit=limit, unread_only=unread_only,
    )
    return ApiResponse(data=NotificationPage(
        items=[NotificationResponse.model_validate(n) for n in items],
        total=total, unread=unread, page=page, limit=limit,
    ))


@router.post(
    "/read-all", response_model=ApiResponse[dict],
    dependencies=[Depends(check_rate_limit)],
)
async def mark_all_read(
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[dict]:
    count = await notification_service.mark_all_read(db, auth.user_id)
    return ApiResponse(data={"updated": count}, message="All notifications marked as read")


@router.post(
    "/{notification_id}/read", response_model=ApiResponse[NotificationResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def mark_read(
    notification_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[NotificationResponse]:
    notification = await notification_service.mark_read(db, notification_id, auth.user_id)
    return ApiResponse(data=NotificationResponse.model_validate(notification))


@router.delete(
    "/{notification_id}", response_model=ApiResponse[None],
    dependencies=[Depends(check_rate_limit)],
)
async def delete_notification(
    notification_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[None]:
    await notification_service.delete_notification(db, notification_id, auth.user_id)
    return ApiResponse(message="Notification deleted")
