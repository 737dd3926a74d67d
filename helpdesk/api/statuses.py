"""Per-organization ticket status API."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.database import get_session
from helpdesk.errors import Conflict
from helpdesk.models.ticket import StatusCreate, StatusResponse, StatusUpdate, TicketStatus
from helpdesk.services import ticket_workflow as workflow
from helpdesk.tenancy import OrgAccess, OrganizationRef, require_org_admin, require_public_organization

router = APIRouter(prefix="/api/statuses", tags=["statuses"])

DUPLICATE_NAME = "Status name already exists in this organization"
STATUS_IN_USE = "Cannot delete status: some tickets use it. Reassign those tickets to another status first."


async def _name_taken(session: AsyncSession, organization_id: str, name: str, exclude_id: str | None = None) -> bool:
    query = select(TicketStatus.id).where(TicketStatus.organization_id == organization_id, TicketStatus.name == name)
    if exclude_id:
        query = query.where(TicketStatus.id != exclude_id)
    return await session.scalar(query) is not None


@router.get("")
async def list_statuses(
    organization: OrganizationRef = Depends(require_public_organization),
    session: AsyncSession = Depends(get_session),
):
    result = await session.scalars(
        select(TicketStatus)
        .where(TicketStatus.organization_id == organization.id)
        .order_by(TicketStatus.order.asc(), TicketStatus.created_at.asc())
    )
    return [StatusResponse.serialize(s) for s in result]


@router.get("/{status_id}")
async def get_status(
    status_id: str,
    organization: OrganizationRef = Depends(require_public_organization),
    session: AsyncSession = Depends(get_session),
):
    return StatusResponse.serialize(await workflow.get_status(session, organization.id, status_id))


@router.post("", status_code=201)
async def create_status(
    body: StatusCreate,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    """Create a status; without an explicit order it goes after the existing ones."""
    if await _name_taken(session, access.organization_id, body.name):
        raise Conflict(DUPLICATE_NAME)

    order = body.order
    if order is None:
        highest = await session.scalar(
            select(func.max(TicketStatus.order)).where(TicketStatus.organization_id == access.organization_id)
        )
        order = (highest + 1) if highest is not None else 0

    status = TicketStatus(
        organization_id=access.organization_id,
        name=body.name,
        name_ar=body.name_ar,
        color=body.color,
        order=order,
    )
    session.add(status)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict(DUPLICATE_NAME)
    await session.refresh(status)
    return StatusResponse.serialize(status)


@router.put("/{status_id}")
async def update_status(
    status_id: str,
    body: StatusUpdate,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    status = await workflow.get_status(session, access.organization_id, status_id)
    if body.name is not None and body.name != status.name:
        if await _name_taken(session, access.organization_id, body.name, exclude_id=status.id):
            raise Conflict(DUPLICATE_NAME)
        status.name = body.name
    if "name_ar" in body.model_fields_set:
        status.name_ar = body.name_ar
    if body.color is not None:
        status.color = body.color
    if body.order is not None:
        status.order = body.order

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict(DUPLICATE_NAME)
    await session.refresh(status)
    return StatusResponse.serialize(status)


@router.delete("/{status_id}")
async def delete_status(
    status_id: str,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    """Refuse to delete a status any ticket still uses."""
    status = await workflow.get_status(session, access.organization_id, status_id)
    if await workflow.count_tickets_with_status(session, access.organization_id, status.id):
        raise Conflict(STATUS_IN_USE)

    await session.delete(status)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict(STATUS_IN_USE)
    return {"message": "Ticket status deleted successfully"}
