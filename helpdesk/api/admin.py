"""Platform console: cross-tenant listings, analytics and tenant lifecycle (super admins only)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import delete, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.database import get_session
from helpdesk.errors import NotFound
from helpdesk.models.category import Category, CategoryAssignment, CategoryResponse
from helpdesk.models.organization import (
    MembershipRole,
    Organization,
    OrganizationResponse,
    OrganizationStatus,
    OrganizationStatusUpdate,
    UserOrganization,
)
from helpdesk.models.ticket import Ticket, TicketStatus
from helpdesk.models.user import User, UserResponse
from helpdesk.security import Actor, require_super_admin
from helpdesk.services import storage
from helpdesk.services.ticket_workflow import purge_tickets
from helpdesk.utils.time import utc_now

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger("helpdesk.admin")


async def _counts(session: AsyncSession, column) -> dict[str, int]:
    rows = await session.execute(select(column, func.count()).group_by(column))
    return {key: count for key, count in rows.all()}


async def _get_organization(session: AsyncSession, org_id: str) -> Organization:
    org = await session.get(Organization, org_id)
    if org is None:
        raise NotFound("Organization not found")
    return org


@router.get("/organizations")
async def list_organizations(
    actor: Actor = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    """Every tenant, newest first, with usage counts and its first admin."""
    orgs = list(await session.scalars(select(Organization).order_by(desc(Organization.created_at))))
    members = await _counts(session, UserOrganization.organization_id)
    tickets = await _counts(session, Ticket.organization_id)
    categories = await _counts(session, Category.organization_id)

    admins: dict[str, dict] = {}
    rows = await session.execute(
        select(UserOrganization.organization_id, User)
        .join(User, User.id == UserOrganization.user_id)
        .where(UserOrganization.role == MembershipRole.ADMIN.value)
        .order_by(UserOrganization.created_at.asc())
    )
    for org_id, user in rows.all():
        admins.setdefault(org_id, {"id": user.id, "name": user.name, "email": user.email})

    return [
        {
            **OrganizationResponse.serialize(org),
            "counts": {
                "users": members.get(org.id, 0),
                "tickets": tickets.get(org.id, 0),
                "categories": categories.get(org.id, 0),
            },
            "admin": admins.get(org.id),
        }
        for org in orgs
    ]


@router.get("/users")
async def list_users(
    actor: Actor = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    users = list(await session.scalars(select(User).order_by(desc(User.created_at))))
    memberships = await _counts(session, UserOrganization.user_id)
    tickets = await _counts(session, Ticket.user_id)
    return [
        {
            **UserResponse.serialize(user),
            "counts": {"organizations": memberships.get(user.id, 0), "tickets": tickets.get(user.id, 0)},
        }
        for user in users
    ]


@router.get("/categories")
async def list_categories(
    actor: Actor = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    rows = await session.execute(
        select(Category, Organization)
        .join(Organization, Organization.id == Category.organization_id)
        .order_by(desc(Category.created_at))
    )
    tickets = await _counts(session, Ticket.category_id)
    assignments = await _counts(session, CategoryAssignment.category_id)
    return [
        {
            **CategoryResponse.serialize(category),
            "organization": {"id": org.id, "name": org.name, "slug": org.slug},
            "counts": {
                "tickets": tickets.get(category.id, 0),
                "userAssignments": assignments.get(category.id, 0),
            },
        }
        for category, org in rows.all()
    ]


@router.get("/analytics")
async def platform_analytics(
    actor: Actor = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    """Platform-wide totals; an organization past its expiry date counts as expired."""
    org_by_status = await _counts(session, Organization.status)
    expired = await session.scalar(
        select(func.count(Organization.id)).where(
            or_(
                Organization.status == OrganizationStatus.EXPIRED.value,
                Organization.expiry_date < utc_now(),
            )
        )
    )

    rows = await session.execute(
        select(TicketStatus.name, func.count(Ticket.id))
        .join(TicketStatus, TicketStatus.id == Ticket.status_id)
        .group_by(TicketStatus.name)
    )
    tickets_by_status = {name: count for name, count in rows.all()}

    recent_orgs = list(await session.scalars(select(Organization).order_by(desc(Organization.created_at)).limit(5)))
    recent_users = list(await session.scalars(select(User).order_by(desc(User.created_at)).limit(5)))

    return {
        "overview": {
            "totalUsers": await session.scalar(select(func.count(User.id))) or 0,
            "totalOrganizations": sum(org_by_status.values()),
            "totalTickets": await session.scalar(select(func.count(Ticket.id))) or 0,
            "activeOrganizations": org_by_status.get(OrganizationStatus.ACTIVE.value, 0),
            "inactiveOrganizations": org_by_status.get(OrganizationStatus.INACTIVE.value, 0),
            "expiredOrganizations": expired or 0,
        },
        "usersByRole": await _counts(session, User.role),
        "ticketsByStatus": tickets_by_status,
        "recentOrganizations": [OrganizationResponse.serialize(o) for o in recent_orgs],
        "recentUsers": [UserResponse.serialize(u) for u in recent_users],
    }


@router.put("/organizations/{org_id}/status")
async def update_organization_status(
    org_id: str,
    body: OrganizationStatusUpdate,
    actor: Actor = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    """Change lifecycle status and/or expiry; an explicit null expiry clears it."""
    org = await _get_organization(session, org_id)
    if body.status is not None:
        org.status = body.status.value
    if "expiry_date" in body.model_fields_set:
        org.expiry_date = body.expiry_date
    await session.commit()
    await session.refresh(org)

    logger.info("organization status set to %s", org.status, extra={"organization_id": org.id})
    return OrganizationResponse.serialize(org)


@router.delete("/organizations/{org_id}")
async def delete_organization(
    org_id: str,
    actor: Actor = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    """Remove a tenant together with all of its data and stored files."""
    org = await _get_organization(session, org_id)

    ticket_ids = list((await session.scalars(select(Ticket.id).where(Ticket.organization_id == org.id))).all())
    filenames = await purge_tickets(session, ticket_ids)
    await session.execute(delete(CategoryAssignment).where(CategoryAssignment.organization_id == org.id))
    await session.execute(delete(Category).where(Category.organization_id == org.id))
    await session.execute(delete(TicketStatus).where(TicketStatus.organization_id == org.id))
    await session.execute(delete(UserOrganization).where(UserOrganization.organization_id == org.id))
    await session.delete(org)
    await session.commit()

    for filename in filenames:
        storage.delete(filename)
    logger.info("organization deleted with %d tickets", len(ticket_ids), extra={"organization_id": org_id})
    return {"message": "Organization deleted successfully"}
