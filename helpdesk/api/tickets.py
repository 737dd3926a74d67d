"""Ticket API: listing, public submission/tracking, CRUD, bulk actions and activity."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.database import get_session
from helpdesk.errors import AccessDenied, AppError, NotFound, ValidationFailed
from helpdesk.models.activity import ActivityAction, ActivityLog, ActivityResponse
from helpdesk.models.category import Category, CategoryResponse
from helpdesk.models.ticket import (
    Attachment,
    AttachmentResponse,
    BulkTicketAction,
    Comment,
    CommentResponse,
    PublicTicketCreate,
    PublicTicketView,
    StatusResponse,
    Ticket,
    TicketCreate,
    TicketResponse,
    TicketStatus,
    TicketUpdate,
    TimeEntry,
    TimeEntryResponse,
)
from helpdesk.models.user import User, UserSummary
from helpdesk.services import activity, storage
from helpdesk.services import ticket_workflow as workflow
from helpdesk.services.activity import FieldChange
from helpdesk.tenancy import (
    OrgAccess,
    OrganizationRef,
    require_org_admin,
    require_public_organization,
    verify_organization_access,
)

router = APIRouter(prefix="/api/tickets", tags=["tickets"])
logger = logging.getLogger("helpdesk.tickets")

SORT_COLUMNS = {
    "createdAt": Ticket.created_at,
    "updatedAt": Ticket.updated_at,
    "title": Ticket.title,
    "priority": Ticket.priority,
    "status": TicketStatus.order,
}


# ── Serialization ─────────────────────────────────────────────

async def _users_by_id(session: AsyncSession, ids: Iterable[Optional[str]]) -> dict[str, User]:
    wanted = {uid for uid in ids if uid}
    if not wanted:
        return {}
    result = await session.scalars(select(User).where(User.id.in_(wanted)))
    return {user.id: user for user in result}


def _summary(users: dict[str, User], user_id: Optional[str]) -> Optional[dict]:
    user = users.get(user_id) if user_id else None
    return UserSummary.serialize(user) if user else None


async def serialize_comments(session: AsyncSession, comments: list[Comment]) -> list[dict]:
    users = await _users_by_id(session, (c.user_id for c in comments))
    attachments: dict[str, list[dict]] = {}
    if comments:
        result = await session.scalars(
            select(Attachment).where(Attachment.comment_id.in_([c.id for c in comments]))
        )
        for attachment in result:
            attachments.setdefault(attachment.comment_id, []).append(AttachmentResponse.serialize(attachment))
    return [
        {
            **CommentResponse.serialize(comment),
            "user": _summary(users, comment.user_id),
            "attachments": attachments.get(comment.id, []),
        }
        for comment in comments
    ]


async def serialize_tickets(session: AsyncSession, tickets: list[Ticket]) -> list[dict]:
    """List view: ticket fields plus status, category, people and counts."""
    if not tickets:
        return []
    ids = [t.id for t in tickets]

    statuses = {
        s.id: s for s in await session.scalars(
            select(TicketStatus).where(TicketStatus.id.in_({t.status_id for t in tickets}))
        )
    }
    category_ids = {t.category_id for t in tickets if t.category_id}
    categories = {
        c.id: c for c in await session.scalars(select(Category).where(Category.id.in_(category_ids)))
    } if category_ids else {}
    users = await _users_by_id(session, [t.user_id for t in tickets] + [t.assigned_to for t in tickets])

    comment_counts = dict((await session.execute(
        select(Comment.ticket_id, func.count(Comment.id)).where(Comment.ticket_id.in_(ids)).group_by(Comment.ticket_id)
    )).all())
    attachment_counts = dict((await session.execute(
        select(Attachment.ticket_id, func.count(Attachment.id))
        .where(Attachment.ticket_id.in_(ids))
        .group_by(Attachment.ticket_id)
    )).all())

    payloads = []
    for ticket in tickets:
        status = statuses.get(ticket.status_id)
        category = categories.get(ticket.category_id) if ticket.category_id else None
        payloads.append({
            **TicketResponse.serialize(ticket),
            "status": StatusResponse.serialize(status) if status else None,
            "category": CategoryResponse.serialize(category) if category else None,
            "user": _summary(users, ticket.user_id),
            "assignedUser": _summary(users, ticket.assigned_to),
            "counts": {
                "comments": comment_counts.get(ticket.id, 0),
                "attachments": attachment_counts.get(ticket.id, 0),
            },
        })
    return payloads


async def serialize_ticket_detail(session: AsyncSession, ticket: Ticket) -> dict:
    [payload] = await serialize_tickets(session, [ticket])

    comments = list(await session.scalars(
        select(Comment).where(Comment.ticket_id == ticket.id).order_by(Comment.created_at.asc())
    ))
    attachments = await session.scalars(
        select(Attachment).where(Attachment.ticket_id == ticket.id).order_by(Attachment.created_at.asc())
    )
    entries = list(await session.scalars(
        select(TimeEntry).where(TimeEntry.ticket_id == ticket.id).order_by(TimeEntry.date.desc())
    ))
    logs = list(await session.scalars(
        select(ActivityLog).where(ActivityLog.ticket_id == ticket.id).order_by(ActivityLog.created_at.desc())
    ))
    users = await _users_by_id(session, [e.user_id for e in entries] + [log.user_id for log in logs])

    payload["comments"] = await serialize_comments(session, comments)
    payload["attachments"] = [AttachmentResponse.serialize(a) for a in attachments]
    payload["timeEntries"] = [
        {**TimeEntryResponse.serialize(e), "user": _summary(users, e.user_id)} for e in entries
    ]
    payload["activityLogs"] = [
        {**ActivityResponse.serialize(log), "user": _summary(users, log.user_id)} for log in logs
    ]
    return payload


async def load_accessible_ticket(session: AsyncSession, access: OrgAccess, ticket_id: str) -> Ticket:
    """Ticket of the tenant the actor may see; 404 outside the tenant, 403 inside it."""
    ticket = await workflow.get_ticket(session, access.organization_id, ticket_id)
    if not workflow.can_access_ticket(access, ticket):
        raise AccessDenied("Access denied")
    return ticket


# ── Listing ───────────────────────────────────────────────────

@router.get("")
async def list_tickets(
    search: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    category_id: Optional[str] = Query(None, alias="categoryId"),
    assigned_to: Optional[str] = Query(None, alias="assignedTo"),
    user_id: Optional[str] = Query(None, alias="userId"),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    """Tickets of the tenant; members only see tickets they raised or hold."""
    query = (
        select(Ticket)
        .join(TicketStatus, TicketStatus.id == Ticket.status_id)
        .where(Ticket.organization_id == access.organization_id)
    )
    if not access.is_admin:
        query = query.where(or_(Ticket.user_id == access.user_id, Ticket.assigned_to == access.user_id))

    if search:
        term = f"%{search.strip()}%"
        commented = select(Comment.ticket_id).where(Comment.content.ilike(term))
        by_user = select(User.id).where(or_(User.name.ilike(term), User.email.ilike(term)))
        query = query.where(or_(
            Ticket.title.ilike(term),
            Ticket.description.ilike(term),
            Ticket.submitter_name.ilike(term),
            Ticket.submitter_email.ilike(term),
            Ticket.id.in_(commented),
            Ticket.user_id.in_(by_user),
        ))
    if status and status != "all":
        query = query.where(Ticket.status_id == status)
    if priority:
        query = query.where(Ticket.priority == priority.upper())
    if category_id:
        query = query.where(Ticket.category_id == category_id)
    if assigned_to:
        if assigned_to == "unassigned":
            query = query.where(Ticket.assigned_to.is_(None))
        else:
            query = query.where(Ticket.assigned_to == assigned_to)
    if user_id and access.is_admin:
        query = query.where(Ticket.user_id == user_id)
    if date_from:
        query = query.where(Ticket.created_at >= date_from)
    if date_to:
        query = query.where(Ticket.created_at <= date_to)

    column = SORT_COLUMNS.get(sort_by, Ticket.created_at)
    query = query.order_by(column.asc() if sort_order == "asc" else column.desc())

    tickets = list(await session.scalars(query))
    return await serialize_tickets(session, tickets)


# ── Public tracking and submission ────────────────────────────

@router.get("/public")
async def track_public_ticket(
    token: Optional[str] = None,
    organization: OrganizationRef = Depends(require_public_organization),
    session: AsyncSession = Depends(get_session),
):
    """Limited view of a ticket for the holder of its tracking token."""
    if not token:
        raise ValidationFailed(
            "Tracking token is required", [{"field": "token", "message": "Tracking token is required"}]
        )

    ticket = await session.scalar(
        select(Ticket).where(Ticket.public_token == token.strip().upper(), Ticket.organization_id == organization.id)
    )
    if ticket is None:
        raise NotFound("Ticket not found")

    view = PublicTicketView.model_validate(ticket)
    status = await session.get(TicketStatus, ticket.status_id)
    payload = view.model_dump(by_alias=True, mode="json")
    payload["status"] = StatusResponse.serialize(status) if status else None
    comments = list(await session.scalars(
        select(Comment).where(Comment.ticket_id == ticket.id).order_by(Comment.created_at.asc())
    ))
    payload["comments"] = await serialize_comments(session, comments)
    if ticket.category_id:
        category = await session.get(Category, ticket.category_id)
        payload["category"] = CategoryResponse.serialize(category) if category else None
    return payload


@router.post("/public", status_code=201)
async def submit_public_ticket(
    body: PublicTicketCreate,
    organization: OrganizationRef = Depends(require_public_organization),
    session: AsyncSession = Depends(get_session),
):
    ticket = await workflow.create_ticket(
        session,
        organization,
        title=body.title,
        description=body.description,
        category_id=body.category_id,
        submitter=workflow.PublicSubmitter(name=body.submitter_name, email=body.submitter_email.lower()),
    )
    return {
        **TicketResponse.serialize(ticket),
        "message": "Ticket submitted successfully. Use the publicToken to track your ticket.",
    }


# ── Bulk ──────────────────────────────────────────────────────

@router.post("/bulk")
async def bulk_action(
    body: BulkTicketAction,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    """Apply one action to many tickets of the tenant; all ids must belong to it."""
    ticket_ids = list(dict.fromkeys(body.ticket_ids))
    tickets = list(await session.scalars(
        select(Ticket).where(Ticket.id.in_(ticket_ids), Ticket.organization_id == access.organization_id)
    ))
    if len(tickets) != len(ticket_ids):
        raise AppError("Some tickets not found or access denied", status_code=400)

    if body.action == "delete":
        titles = [ticket.title for ticket in tickets]
        filenames = await workflow.purge_tickets(session, ticket_ids)
        await session.commit()
        for filename in filenames:
            storage.delete(filename)
        logger.info(
            "bulk deleted %s tickets: %s",
            len(tickets),
            ", ".join(titles),
            extra={"organization_id": access.organization_id},
        )
        return {"message": "Bulk delete completed", "count": len(tickets)}

    changes = await _bulk_changes(session, access, body)
    if not changes:
        raise AppError("No changes supplied for bulk action", status_code=400)

    statuses: dict[str, TicketStatus] = {}
    if "status_id" in changes:
        statuses = {
            s.id: s for s in await session.scalars(
                select(TicketStatus).where(TicketStatus.organization_id == access.organization_id)
            )
        }

    per_ticket: dict[str, list[FieldChange]] = {}
    for ticket in tickets:
        before = {
            "status": ticket.status_id,
            "priority": ticket.priority,
            "assigned_to": ticket.assigned_to,
            "category_id": ticket.category_id,
        }
        after = {("status" if key == "status_id" else key): value for key, value in changes.items()}
        diff = activity.diff_fields(before, after)
        per_ticket[ticket.id] = [
            FieldChange(
                "status",
                statuses[c.old_value].name if c.old_value in statuses else c.old_value,
                statuses[c.new_value].name if c.new_value in statuses else c.new_value,
            ) if c.field == "status" else c
            for c in diff
        ]
        for key, value in changes.items():
            setattr(ticket, key, value)
    await session.commit()

    for ticket_id, diff in per_ticket.items():
        if body.action == "update":
            await activity.record_action(
                session, ticket_id, access.user_id, ActivityAction.BULK_UPDATE.value, changes
            )
        else:
            await activity.record_changes(session, ticket_id, access.user_id, diff)

    return {"message": f"Bulk {body.action} completed", "count": len(tickets)}


async def _bulk_changes(session: AsyncSession, access: OrgAccess, body: BulkTicketAction) -> dict:
    org_id = access.organization_id
    changes: dict = {}
    if body.action in ("update", "changeStatus") and body.status_id:
        changes["status_id"] = (await workflow.get_status(session, org_id, body.status_id)).id
    if body.action in ("update", "changePriority") and body.priority:
        changes["priority"] = body.priority.value
    if body.action == "assign":
        changes["assigned_to"] = (
            (await workflow.get_member(session, org_id, body.assigned_to)).id if body.assigned_to else None
        )
    elif body.action == "update" and body.assigned_to:
        changes["assigned_to"] = (await workflow.get_member(session, org_id, body.assigned_to)).id
    if body.action == "update" and body.category_id:
        changes["category_id"] = (await workflow.get_category(session, org_id, body.category_id)).id
    return changes


# ── Single ticket ─────────────────────────────────────────────

@router.post("", status_code=201)
async def create_ticket(
    body: TicketCreate,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await workflow.create_ticket(
        session,
        access.organization,
        title=body.title,
        description=body.description,
        priority=body.priority,
        category_id=body.category_id,
        actor=access.actor,
    )
    [payload] = await serialize_tickets(session, [ticket])
    return payload


@router.get("/{ticket_id}")
async def get_ticket(
    ticket_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await load_accessible_ticket(session, access, ticket_id)
    return await serialize_ticket_detail(session, ticket)


@router.put("/{ticket_id}")
async def update_ticket(
    ticket_id: str,
    body: TicketUpdate,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    """Owner or admin may update; every changed field is logged."""
    ticket = await workflow.get_ticket(session, access.organization_id, ticket_id)
    if not workflow.can_modify_ticket(access, ticket):
        raise AccessDenied("Access denied")
    ticket = await workflow.update_ticket(
        session,
        access.organization,
        ticket,
        body.model_dump(exclude_unset=True),
        access.actor,
    )
    return await serialize_ticket_detail(session, ticket)


@router.delete("/{ticket_id}")
async def delete_ticket(
    ticket_id: str,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    ticket = await workflow.get_ticket(session, access.organization_id, ticket_id)
    title = ticket.title

    filenames = await workflow.purge_tickets(session, [ticket.id])
    await session.commit()
    for filename in filenames:
        storage.delete(filename)

    logger.info(
        "ticket deleted: %s", title, extra={"organization_id": access.organization_id, "ticket_id": ticket_id}
    )
    return {"message": "Ticket deleted successfully"}


@router.get("/{ticket_id}/activity")
async def ticket_activity(
    ticket_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await load_accessible_ticket(session, access, ticket_id)
    logs = list(await session.scalars(
        select(ActivityLog).where(ActivityLog.ticket_id == ticket.id).order_by(ActivityLog.created_at.desc())
    ))
    users = await _users_by_id(session, (log.user_id for log in logs))
    return [{**ActivityResponse.serialize(log), "user": _summary(users, log.user_id)} for log in logs]
