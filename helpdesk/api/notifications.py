"""In-app notification inbox of the signed-in user."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.database import get_session
from helpdesk.errors import NotFound
from helpdesk.models.notification import Notification, NotificationResponse
from helpdesk.security import Actor, authenticate

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


async def _own(session: AsyncSession, actor: Actor, notification_id: str) -> Notification:
    notification = await session.scalar(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == actor.user_id)
    )
    if notification is None:
        raise NotFound("Notification not found")
    return notification


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = 100,
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    query = select(Notification).where(Notification.user_id == actor.user_id)
    if unread_only:
        query = query.where(Notification.read.is_(False))
    result = await session.scalars(query.order_by(desc(Notification.created_at)).limit(max(1, min(limit, 200))))
    return [NotificationResponse.serialize(n) for n in result]


@router.get("/unread-count")
async def unread_count(
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    count = await session.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == actor.user_id, Notification.read.is_(False)
        )
    )
    return {"count": count or 0}


@router.put("/read-all")
async def mark_all_read(
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    await session.execute(
        update(Notification)
        .where(Notification.user_id == actor.user_id, Notification.read.is_(False))
        .values(read=True)
    )
    await session.commit()
    return {"message": "All notifications marked as read"}


@router.put("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    notification = await _own(session, actor, notification_id)
    notification.read = True
    await session.commit()
    await session.refresh(notification)
    return NotificationResponse.serialize(notification)


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    notification = await _own(session, actor, notification_id)
    await session.delete(notification)
    await session.commit()
    return {"message": "Notification deleted successfully"}
