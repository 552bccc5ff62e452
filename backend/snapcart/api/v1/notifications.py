from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core.dependencies import get_current_user
from snapcart.db.session import get_session
from snapcart.models.user import User
from snapcart.schemas.notification import NotificationList, NotificationRead
from snapcart.services import notifications as notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationList)
async def list_notifications(
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> NotificationList:
    rows = await notification_service.list_notifications(session, user_id=current_user.id, limit=limit)
    unread = await notification_service.unread_count(session, user_id=current_user.id)
    return NotificationList(items=[NotificationRead.model_validate(row) for row in rows], unread_count=unread)


@router.post("/read-all")
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    updated = await notification_service.mark_all_read(session, user_id=current_user.id)
    return {"updated": updated}


@router.post("/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> NotificationRead:
    row = await notification_service.mark_read(session, user_id=current_user.id, notification_id=notification_id)
    return NotificationRead.model_validate(row)
