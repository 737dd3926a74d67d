"""In-app notification writer (best-effort, never fails the caller)."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.models.notification import Notification, NotificationType

logger = logging.getLogger("helpdesk.notifications")


async def notify_users(
    session: AsyncSession,
    user_ids: Iterable[str],
    type: NotificationType,
    title: str,
    message: str,
    ticket_id: Optional[str] = None,
) -> int:
    """Create one notification per distinct user id; returns how many were written."""
    unique_ids = list(dict.fromkeys(uid for uid in user_ids if uid))
    if not unique_ids:
        return 0

    rows = [
        Notification(
            user_id=user_id,
            type=type.value,
            title=title,
            message=message,
            ticket_id=ticket_id,
        )
        for user_id in unique_ids
    ]
    try:
        # Savepoint: a failure must not expire the caller's loaded instances.
        async with session.begin_nested():
            session.add_all(rows)
    except SQLAlchemyError:
        logger.exception(
            "failed to create %s notifications", type.value, extra={"ticket_id": ticket_id}
        )
        return 0
    await session.commit()
    return len(rows)


async def notify_user(
    session: AsyncSession,
    user_id: str,
    type: NotificationType,
    title: str,
    message: str,
    ticket_id: Optional[str] = None,
) -> bool:
    return await notify_users(session, [user_id], type, title, message, ticket_id) == 1
