"""Notification endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from clinicdesk.dependencies import CurrentActor, DatabaseSession
from clinicdesk.schemas.notifications import (
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationRecord,
)
from clinicdesk.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get(
    "/",
    response_model=NotificationListResponse,
    status_code=status.HTTP_200_OK,
    summary="List my notifications",
)
async def list_my_notifications(
    actor: CurrentActor,
    db: DatabaseSession,
    unread_only: bool = Query(False, description="Only unread notifications"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=100, description="Items per page"),
) -> NotificationListResponse:
    """
    List in-app notifications for the authenticated user, newest first.

    Args:
        actor: Authenticated user
        db: Database session
        unread_only: Only unread notifications
        page: Page number (starts at 1)
        page_size: Number of items per page (max 100)

    Returns:
        Notifications with total and unread counts
    """
    items, total, unread = await NotificationService.list_for_user(
        db=db,
        user_id=actor.id,
        unread_only=unread_only,
        limit=page_size,
        offset=(page - 1) * page_size,
    )

    return NotificationListResponse(
        total=total,
        unread=unread,
        items=[NotificationRecord.model_validate(n) for n in items],
    )


@router.post(
    "/read-all",
    response_model=MarkAllReadResponse,
    status_code=status.HTTP_200_OK,
    summary="Mark all my notifications as read",
)
async def mark_all_read(
    actor: CurrentActor,
    db: DatabaseSession,
) -> MarkAllReadResponse:
    updated = await NotificationService.mark_all_read(db=db, user_id=actor.id)
    return MarkAllReadResponse(updated=updated)


@router.post(
    "/{notification_id}/read",
    response_model=NotificationRecord,
    status_code=status.HTTP_200_OK,
    summary="Mark a notification as read",
)
async def mark_read(
    notification_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> NotificationRecord:
    """
    Mark one of the authenticated user's notifications as read.

    Raises:
        NotFoundException: Unknown id or someone else's notification
    """
    notification = await NotificationService.mark_read(
        db=db,
        notification_id=notification_id,
        user_id=actor.id,
    )
    return NotificationRecord.model_validate(notification)
