"""Organization API: tenant profile, creation and membership management."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.api.auth import user_organizations
from helpdesk.database import get_session
from helpdesk.errors import AppError, Conflict, NotFound, ValidationFailed
from helpdesk.models.organization import (
    MemberAdd,
    MemberRoleUpdate,
    MembershipRole,
    Organization,
    OrganizationCreate,
    OrganizationPublic,
    OrganizationResponse,
    OrganizationUpdate,
    UserOrganization,
)
from helpdesk.models.user import User
from helpdesk.security import Actor, authenticate
from helpdesk.services.ticket_workflow import seed_default_statuses
from helpdesk.tenancy import (
    SLUG_TOO_SHORT,
    OrgAccess,
    OrganizationRef,
    get_membership,
    identifier_taken,
    normalize_slug,
    require_identified_organization,
    require_path_org_admin,
    verify_organization_access,
    verify_path_organization_access,
)
from helpdesk.utils.time import utc_in, utc_now

router = APIRouter(prefix="/api/organizations", tags=["organizations"])
logger = logging.getLogger("helpdesk.organizations")


def _org_payload(org: Organization) -> dict:
    payload = OrganizationResponse.serialize(org)
    payload["settings"] = json.loads(org.settings_json) if org.settings_json else {}
    return payload


def _member_payload(user: User, membership: UserOrganization) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": membership.role,
        "joinedAt": membership.created_at.isoformat() if membership.created_at else None,
    }


async def _load(session: AsyncSession, organization_id: str) -> Organization:
    org = await session.get(Organization, organization_id)
    if org is None:
        raise NotFound("Organization not found")
    return org


@router.get("")
async def current_organization(
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    """The tenant this request resolves to (request signals, then the user's default)."""
    org = await _load(session, access.organization_id)
    return {**_org_payload(org), "role": access.membership_role}


@router.get("/my-organizations")
async def my_organizations(
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    return await user_organizations(session, actor.user_id)


@router.post("", status_code=201)
async def create_organization(
    body: OrganizationCreate,
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    """Create an organization with the caller as its admin; one organization per admin."""
    already_admin = await session.scalar(
        select(UserOrganization.id).where(
            UserOrganization.user_id == actor.user_id,
            UserOrganization.role == MembershipRole.ADMIN.value,
        )
    )
    if already_admin:
        raise AppError("You already have an organization. Each admin can only have one organization.", status_code=400)

    slug = normalize_slug(body.slug)
    subdomain = normalize_slug(body.subdomain) or None
    if len(slug) < 2:
        raise ValidationFailed(SLUG_TOO_SHORT, [{"field": "slug", "message": SLUG_TOO_SHORT}])

    for value in filter(None, (slug, subdomain)):
        if await identifier_taken(session, value):
            raise Conflict("Organization slug or subdomain already exists")

    org = Organization(
        name=body.name,
        slug=slug,
        subdomain=subdomain,
        join_date=utc_now(),
        expiry_date=utc_in(days=365),
    )
    session.add(org)
    try:
        await session.flush()
        session.add(UserOrganization(user_id=actor.user_id, organization_id=org.id, role=MembershipRole.ADMIN.value))
        seed_default_statuses(session, org.id)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict("Organization slug or subdomain already exists")
    await session.refresh(org)

    logger.info("organization created", extra={"organization_id": org.id})
    return _org_payload(org)


@router.get("/{org_slug}/public")
async def public_organization(organization: OrganizationRef = Depends(require_identified_organization)):
    """Anonymous view used by the public ticket form."""
    return OrganizationPublic.serialize(organization)


@router.get("/{org_slug}")
async def get_organization(
    access: OrgAccess = Depends(verify_path_organization_access),
    session: AsyncSession = Depends(get_session),
):
    org = await _load(session, access.organization_id)
    return {**_org_payload(org), "role": access.membership_role}


@router.put("/{org_slug}")
async def update_organization(
    body: OrganizationUpdate,
    access: OrgAccess = Depends(require_path_org_admin),
    session: AsyncSession = Depends(get_session),
):
    org = await _load(session, access.organization_id)

    if body.name is not None:
        org.name = body.name
    if body.subdomain:
        subdomain = normalize_slug(body.subdomain)
        if subdomain != org.subdomain:
            if await identifier_taken(session, subdomain, exclude_id=org.id):
                raise Conflict("Subdomain already in use")
            org.subdomain = subdomain
    if body.settings is not None:
        org.settings_json = json.dumps(body.settings)

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict("Subdomain already in use")
    await session.refresh(org)
    return _org_payload(org)


# ── Members ───────────────────────────────────────────────────

@router.get("/{org_slug}/members")
async def list_members(
    access: OrgAccess = Depends(verify_path_organization_access),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(User, UserOrganization)
        .join(UserOrganization, UserOrganization.user_id == User.id)
        .where(UserOrganization.organization_id == access.organization_id)
        .order_by(UserOrganization.created_at.desc())
    )
    return [_member_payload(user, membership) for user, membership in result.all()]


@router.post("/{org_slug}/members", status_code=201)
async def add_member(
    body: MemberAdd,
    access: OrgAccess = Depends(require_path_org_admin),
    session: AsyncSession = Depends(get_session),
):
    user = await session.scalar(select(User).where(User.email == body.email.lower()))
    if user is None:
        raise NotFound("User not found")
    if await get_membership(session, user.id, access.organization_id):
        raise Conflict("User is already a member of this organization")

    membership = UserOrganization(user_id=user.id, organization_id=access.organization_id, role=body.role.value)
    session.add(membership)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict("User is already a member")
    await session.refresh(membership)
    return _member_payload(user, membership)


@router.put("/{org_slug}/members/{user_id}")
async def update_member_role(
    user_id: str,
    body: MemberRoleUpdate,
    access: OrgAccess = Depends(require_path_org_admin),
    session: AsyncSession = Depends(get_session),
):
    membership = await get_membership(session, user_id, access.organization_id)
    if membership is None:
        raise NotFound("Member not found")
    membership.role = body.role.value
    await session.commit()
    await session.refresh(membership)
    user = await session.get(User, user_id)
    return _member_payload(user, membership)


@router.delete("/{org_slug}/members/{user_id}")
async def remove_member(
    user_id: str,
    access: OrgAccess = Depends(require_path_org_admin),
    session: AsyncSession = Depends(get_session),
):
    membership = await get_membership(session, user_id, access.organization_id)
    if membership is None:
        raise NotFound("Member not found")
    await session.delete(membership)
    await session.commit()
    return {"message": "Member removed successfully"}
