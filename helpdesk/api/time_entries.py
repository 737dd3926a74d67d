"""Time tracking on tickets."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.api.tickets import load_accessible_ticket
from helpdesk.database import get_session
from helpdesk.errors import AccessDenied, NotFound
from helpdesk.models.activity import ActivityAction
from helpdesk.models.ticket import Ticket, TimeEntry, TimeEntryCreate, TimeEntryResponse
from helpdesk.models.user import User, UserSummary
from helpdesk.services import activity
from helpdesk.tenancy import OrgAccess, verify_organization_access
from helpdesk.utils.time import utc_now

router = APIRouter(prefix="/api/tickets", tags=["time"])


@router.post("/{ticket_id}/time", status_code=201)
async def log_time(
    ticket_id: str,
    body: TimeEntryCreate,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await load_accessible_ticket(session, access, ticket_id)
    entry = TimeEntry(
        ticket_id=ticket.id,
        user_id=access.user_id,
        hours=body.hours,
        minutes=body.minutes,
        description=body.description or None,
        date=body.date or utc_now(),
    )
    session.add(entry)
    await session.commit()
    await session.refresh(entry)

    await activity.record_action(
        session,
        ticket.id,
        access.user_id,
        ActivityAction.TIME_LOGGED.value,
        {"time_entry_id": entry.id, "hours": entry.hours, "minutes": entry.minutes},
    )
    user = await session.get(User, access.user_id)
    return {**TimeEntryResponse.serialize(entry), "user": UserSummary.serialize(user) if user else None}


@router.get("/{ticket_id}/time")
async def list_time(
    ticket_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    ticket = await load_accessible_ticket(session, access, ticket_id)
    result = await session.execute(
        select(TimeEntry, User)
        .outerjoin(User, User.id == TimeEntry.user_id)
        .where(TimeEntry.ticket_id == ticket.id)
        .order_by(TimeEntry.date.desc())
    )
    return [
        {**TimeEntryResponse.serialize(entry), "user": UserSummary.serialize(user) if user else None}
        for entry, user in result.all()
    ]


@router.delete("/time/{entry_id}")
async def delete_time(
    entry_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    """The author of the entry or a tenant admin may delete it."""
    entry = await session.scalar(
        select(TimeEntry)
        .join(Ticket, Ticket.id == TimeEntry.ticket_id)
        .where(TimeEntry.id == entry_id, Ticket.organization_id == access.organization_id)
    )
    if entry is None:
        raise NotFound("Time entry not found")
    if entry.user_id != access.user_id and not access.is_admin:
        raise AccessDenied("Access denied")

    ticket_id = entry.ticket_id
    await session.delete(entry)
    await session.commit()

    await activity.record_action(
        session, ticket_id, access.user_id, ActivityAction.TIME_DELETED.value, {"time_entry_id": entry_id}
    )
    return {"message": "Time entry deleted successfully"}
