"""Attachment upload, download and removal for tickets and comments."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.api.comments import load_comment
from helpdesk.api.tickets import load_accessible_ticket
from helpdesk.database import get_session
from helpdesk.errors import AccessDenied, NotFound
from helpdesk.models.activity import ActivityAction
from helpdesk.models.ticket import Attachment, AttachmentResponse, Comment, Ticket
from helpdesk.services import activity, storage
from helpdesk.services.storage import StoredFile
from helpdesk.tenancy import OrgAccess, OrganizationRef, require_public_organization, verify_organization_access

router = APIRouter(prefix="/api/tickets", tags=["attachments"])
logger = logging.getLogger("helpdesk.attachments")


async def _save(
    session: AsyncSession,
    stored: StoredFile,
    *,
    ticket_id: Optional[str] = None,
    comment_id: Optional[str] = None,
    uploaded_by: Optional[str] = None,
) -> Attachment:
    attachment = Attachment(
        ticket_id=ticket_id,
        comment_id=comment_id,
        filename=stored.filename,
        original_name=stored.original_name,
        mime_type=stored.mime_type,
        size=stored.size,
        path=stored.path,
        uploaded_by=uploaded_by,
    )
    session.add(attachment)
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        storage.delete(stored.filename)
        raise
    await session.refresh(attachment)
    return attachment


async def _tenant_attachment(session: AsyncSession, organization_id: str, attachment_id: str) -> tuple[Attachment, str]:
    """Attachment and its ticket id, looked up through the owning ticket's tenant."""
    result = await session.execute(
        select(Attachment, Ticket.id)
        .outerjoin(Comment, Comment.id == Attachment.comment_id)
        .join(Ticket, or_(Ticket.id == Attachment.ticket_id, Ticket.id == Comment.ticket_id))
        .where(Attachment.id == attachment_id, Ticket.organization_id == organization_id)
        .limit(1)
    )
    row = result.first()
    if row is None:
        raise NotFound("Attachment not found")
    return row[0], row[1]


@router.post("/{ticket_id}/attachments/public", status_code=201)
async def upload_public_attachment(
    ticket_id: str,
    file: UploadFile = File(...),
    organization: OrganizationRef = Depends(require_public_organization),
    session: AsyncSession = Depends(get_session),
):
    """Attach a file to an anonymously submitted ticket."""
    ticket = await session.scalar(
        select(Ticket).where(
            Ticket.id == ticket_id,
            Ticket.organization_id == organization.id,
            Ticket.public_token.is_not(None),
        )
    )
    if ticket is None:
        raise NotFound("Ticket not found or not a public ticket")

    stored = await storage.store(file)
    attachment = await _save(session, stored, ticket_id=ticket.id)
    return AttachmentResponse.serialize(attachment)


@router.post("/{ticket_id}/attachments", status_code=201)
async def upload_attachment(
    ticket_id: str,
    file: UploadFile = File(...),
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await load_accessible_ticket(session, access, ticket_id)
    stored = await storage.store(file)
    attachment = await _save(session, stored, ticket_id=ticket.id, uploaded_by=access.user_id)

    await activity.record_action(
        session,
        ticket.id,
        access.user_id,
        ActivityAction.ATTACHMENT_ADDED.value,
        {"attachment_id": attachment.id, "filename": attachment.original_name},
    )
    return AttachmentResponse.serialize(attachment)


@router.post("/{ticket_id}/comments/{comment_id}/attachments", status_code=201)
async def upload_comment_attachment(
    ticket_id: str,
    comment_id: str,
    file: UploadFile = File(...),
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await load_accessible_ticket(session, access, ticket_id)
    comment = await load_comment(session, ticket.id, comment_id)
    stored = await storage.store(file)
    attachment = await _save(session, stored, comment_id=comment.id, uploaded_by=access.user_id)
    return AttachmentResponse.serialize(attachment)


@router.delete("/attachments/{attachment_id}")
async def delete_attachment(
    attachment_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    """The uploader or a tenant admin may remove an attachment."""
    attachment, ticket_id = await _tenant_attachment(session, access.organization_id, attachment_id)
    if attachment.uploaded_by != access.user_id and not access.is_admin:
        raise AccessDenied("Access denied")

    filename, original_name = attachment.filename, attachment.original_name
    await session.delete(attachment)
    await session.commit()
    storage.delete(filename)

    await activity.record_action(
        session,
        ticket_id,
        access.user_id,
        ActivityAction.ATTACHMENT_DELETED.value,
        {"attachment_id": attachment_id, "filename": original_name},
    )
    return {"message": "Attachment deleted successfully"}


@router.get("/attachments/{attachment_id}/file")
async def download_attachment(
    attachment_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    attachment, _ = await _tenant_attachment(session, access.organization_id, attachment_id)
    path = storage.path_for(attachment.filename)
    if not path.is_file():
        logger.warning("attachment %s missing on disk", attachment.id)
        raise NotFound("Attachment file not found")
    return FileResponse(path, media_type=attachment.mime_type, filename=attachment.original_name)
