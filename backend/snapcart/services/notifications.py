from __future__ import annotations

from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.models.notification import Notification
from snapcart.models.user import User, UserRole


def add_notification(
    session: AsyncSession, *, recipient_id: UUID, type: str, message: str, link: str | None = None
) -> Notification:
    """Stage a notification in the caller's transaction."""
    record = Notification(recipient_id=recipient_id, type=type, message=message, link=link)
    session.add(record)
    return record


async def notify_admins(session: AsyncSession, *, type: str, message: str, link: str | None = None) -> int:
    admin_ids = (await session.execute(select(User.id).where(User.role == UserRole.admin))).scalars().all()
    for admin_id in admin_ids:
        add_notification(session, recipient_id=admin_id, type=type, message=message, link=link)
    return len(admin_ids)


async def list_notifications(session: AsyncSession, *, user_id: UUID, limit: int = 20) -> list[Notification]:
    limit = max(1, min(100, int(limit or 20)))
    stmt = (
        select(Notification)
        .where(Notification.recipient_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def unread_count(session: AsyncSession, *, user_id: UUID) -> int:
    stmt = (
        select(func.count())
        .select_from(Notification)
        .where(Notification.recipient_id == user_id, Notification.read.is_(False))
    )
    return int((await session.execute(stmt)).scalar_one() or 0)


async def mark_read(session: AsyncSession, *, user_id: UUID, notification_id: UUID) -> Notification:
    record = await session.get(Notification, notification_id)
    if not record or record.recipient_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    if not record.read:
        record.read = True
        await session.commit()
        await session.refresh(record)
    return record


async def mark_all_read(session: AsyncSession, *, user_id: UUID) -> int:
    result = await session.execute(
        update(Notification)
        .where(Notification.recipient_id == user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)
