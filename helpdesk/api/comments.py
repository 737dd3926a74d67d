"""Ticket comment API."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.api.tickets import load_accessible_ticket, serialize_comments
from helpdesk.database import get_session
from helpdesk.errors import AccessDenied, NotFound
from helpdesk.models.activity import ActivityAction
from helpdesk.models.ticket import Attachment, Comment, CommentCreate
from helpdesk.models.user import User
from helpdesk.services import activity, storage
from helpdesk.services import ticket_workflow as workflow
from helpdesk.tenancy import OrgAccess, verify_organization_access
from helpdesk.utils.time import utc_now

router = APIRouter(prefix="/api/tickets", tags=["comments"])
logger = logging.getLogger("helpdesk.comments")


async def load_comment(session: AsyncSession, ticket_id: str, comment_id: str) -> Comment:
    comment = await session.scalar(select(Comment).where(Comment.id == comment_id, Comment.ticket_id == ticket_id))
    if comment is None:
        raise NotFound("Comment not found")
    return comment


@router.post("/{ticket_id}/comments", status_code=201)
async def add_comment(
    ticket_id: str,
    body: CommentCreate,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await load_accessible_ticket(session, access, ticket_id)
    author = await session.get(User, access.user_id)
    if author is None:
        raise NotFound("User not found")

    comment = await workflow.add_comment(session, access.organization, ticket, author, body.content)
    [payload] = await serialize_comments(session, [comment])
    return payload


@router.put("/{ticket_id}/comments/{comment_id}")
async def edit_comment(
    ticket_id: str,
    comment_id: str,
    body: CommentCreate,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    """Only the author may edit a comment."""
    ticket = await load_accessible_ticket(session, access, ticket_id)
    comment = await load_comment(session, ticket.id, comment_id)
    if comment.user_id != access.user_id:
        raise AccessDenied("You can only edit your own comments")

    comment.content = body.content
    comment.is_edited = True
    comment.edited_at = utc_now()
    await session.commit()
    await session.refresh(comment)

    await activity.record_action(
        session, ticket.id, access.user_id, ActivityAction.COMMENT_EDITED.value, {"comment_id": comment.id}
    )
    [payload] = await serialize_comments(session, [comment])
    return payload


@router.delete("/{ticket_id}/comments/{comment_id}")
async def delete_comment(
    ticket_id: str,
    comment_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    """The author or a tenant admin may delete a comment and its attachments."""
    ticket = await load_accessible_ticket(session, access, ticket_id)
    comment = await load_comment(session, ticket.id, comment_id)
    if comment.user_id != access.user_id and not access.is_admin:
        raise AccessDenied("Access denied")

    attachments = list(await session.scalars(select(Attachment).where(Attachment.comment_id == comment.id)))
    for attachment in attachments:
        await session.delete(attachment)
    await session.delete(comment)
    await session.commit()
    for attachment in attachments:
        storage.delete(attachment.filename)

    await activity.record_action(
        session, ticket.id, access.user_id, ActivityAction.COMMENT_DELETED.value, {"comment_id": comment_id}
    )
    return {"message": "Comment deleted successfully"}
