"""Tenant resolution and organization access guards.

Resolution looks for a tenant slug in, first match wins:

  1. the subdomain of the Host header (never on the main app host, www or localhost)
  2. the ``org_slug`` path parameter
  3. the ``org`` query parameter
  4. the ``X-Organization-Slug`` header

The guards form a typed pipeline. ``TenantScope`` is only built by the
user-fallback resolvers, and ``OrgAccess`` only by the membership guards, so a
route that asks for ``OrgAccess`` always gets identity, tenant and membership
checks in that order.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Depends, Request
from sqlalchemy import case, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.config import Settings, get_settings
from helpdesk.database import get_session
from helpdesk.errors import AccessDenied, AppError, NotFound
from helpdesk.models.organization import MembershipRole, Organization, UserOrganization
from helpdesk.security import Actor, authenticate, optional_authenticate

logger = logging.getLogger("helpdesk.tenancy")

SLUG_PATH_PARAM = "org_slug"
SLUG_QUERY_PARAM = "org"
SLUG_HEADER = "x-organization-slug"
SLUG_TOO_SHORT = "Organization slug must contain at least 2 valid characters"

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9-]")
_EDGE_HYPHENS = re.compile(r"^-+|-+$")
_IGNORED_LABELS = {"www", "localhost"}


@dataclass(frozen=True)
class OrganizationRef:
    id: str
    name: str
    slug: str
    subdomain: Optional[str] = None

    @classmethod
    def from_model(cls, org: Organization) -> "OrganizationRef":
        return cls(id=org.id, name=org.name, slug=org.slug, subdomain=org.subdomain)


@dataclass(frozen=True)
class TenantScope:
    actor: Actor
    organization: OrganizationRef


@dataclass(frozen=True)
class OrgAccess:
    actor: Actor
    organization: OrganizationRef
    membership_role: Optional[str]

    @property
    def organization_id(self) -> str:
        return self.organization.id

    @property
    def user_id(self) -> str:
        return self.actor.user_id

    @property
    def is_admin(self) -> bool:
        """Effective tenant role: membership ADMIN, or platform ADMIN anywhere."""
        return self.membership_role == MembershipRole.ADMIN.value or self.actor.is_platform_admin


# ── Slug handling ─────────────────────────────────────────────

def normalize_slug(raw: Optional[str]) -> str:
    """Trim, lowercase, map everything outside [a-z0-9-] to '-', strip edge hyphens."""
    value = _NON_SLUG_CHARS.sub("-", str(raw or "").strip().lower())
    return _EDGE_HYPHENS.sub("", value)


def _strip_port(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("["):
        # Bracketed IPv6 literal, e.g. [::1]:8000
        return host[1:].split("]", 1)[0]
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def subdomain_candidate(host: Optional[str], main_app_host: str = "") -> Optional[str]:
    """Return the first Host label when it can name a tenant, else None."""
    hostname = _strip_port(host or "")
    if not hostname or _is_ip(hostname):
        return None
    if main_app_host and hostname == _strip_port(main_app_host):
        return None

    labels = hostname.split(".")
    if len(labels) < 2:
        return None
    label = labels[0]
    if not label or label in _IGNORED_LABELS or ":" in label:
        return None
    return label


def extract_candidate(
    host: Optional[str],
    path_params: Mapping[str, str],
    query_params: Mapping[str, str],
    headers: Mapping[str, str],
    main_app_host: str = "",
) -> Optional[str]:
    """First non-empty slug signal in priority order, un-normalized."""
    candidates = (
        subdomain_candidate(host, main_app_host),
        path_params.get(SLUG_PATH_PARAM),
        query_params.get(SLUG_QUERY_PARAM),
        headers.get(SLUG_HEADER),
    )
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate
    return None


async def find_organization(session: AsyncSession, slug: str) -> Optional[Organization]:
    """Exact slug/subdomain match, then a scan that re-normalizes stored values."""
    result = await session.execute(
        select(Organization)
        .where(or_(Organization.slug == slug, Organization.subdomain == slug))
        .order_by(case((Organization.slug == slug, 0), else_=1))
        .limit(1)
    )
    organization = result.scalar_one_or_none()
    if organization is not None:
        return organization

    # Legacy rows stored before slugs were normalized on write.
    result = await session.execute(select(Organization))
    for org in result.scalars():
        if normalize_slug(org.slug) == slug:
            return org
        if org.subdomain and normalize_slug(org.subdomain) == slug:
            return org
    return None


async def identifier_taken(session: AsyncSession, value: str, exclude_id: Optional[str] = None) -> bool:
    """Whether ``value`` is already some organization's slug or subdomain.

    Slugs and subdomains share one namespace because tenant lookup matches
    either column.
    """
    query = select(Organization.id).where(or_(Organization.slug == value, Organization.subdomain == value))
    if exclude_id is not None:
        query = query.where(Organization.id != exclude_id)
    return await session.scalar(query.limit(1)) is not None


async def earliest_membership(
    session: AsyncSession, user_id: str
) -> Optional[tuple[UserOrganization, Organization]]:
    result = await session.execute(
        select(UserOrganization, Organization)
        .join(Organization, Organization.id == UserOrganization.organization_id)
        .where(UserOrganization.user_id == user_id)
        .order_by(UserOrganization.created_at.asc(), UserOrganization.id.asc())
        .limit(1)
    )
    row = result.first()
    return (row[0], row[1]) if row else None


async def get_membership(
    session: AsyncSession, user_id: str, organization_id: str
) -> Optional[UserOrganization]:
    result = await session.execute(
        select(UserOrganization).where(
            UserOrganization.user_id == user_id,
            UserOrganization.organization_id == organization_id,
        )
    )
    return result.scalar_one_or_none()


# ── Resolution dependencies ───────────────────────────────────

async def identify_organization(
    request: Request,
    session: AsyncSession = Depends(get_session),
    cfg: Settings = Depends(get_settings),
) -> Optional[OrganizationRef]:
    """Resolve the tenant named by the request, or None when nothing names one."""
    candidate = extract_candidate(
        request.headers.get("host"),
        request.path_params,
        request.query_params,
        request.headers,
        cfg.main_app_host,
    )
    if candidate is None:
        return None

    slug = normalize_slug(candidate)
    if not slug:
        return None

    organization = await find_organization(session, slug)
    if organization is None:
        logger.info("organization lookup failed for slug %s", slug)
        raise NotFound("Organization not found")
    return OrganizationRef.from_model(organization)


async def _organization_by_id(session: AsyncSession, organization_id: str) -> Optional[OrganizationRef]:
    organization = await session.get(Organization, organization_id)
    return OrganizationRef.from_model(organization) if organization else None


async def _fallback_organization(session: AsyncSession, actor: Actor) -> Optional[OrganizationRef]:
    if actor.organization_id:
        hinted = await _organization_by_id(session, actor.organization_id)
        if hinted is not None:
            return hinted
    membership = await earliest_membership(session, actor.user_id)
    if membership is None:
        return None
    return OrganizationRef.from_model(membership[1])


async def get_organization_from_user(
    actor: Actor = Depends(authenticate),
    organization: Optional[OrganizationRef] = Depends(identify_organization),
    session: AsyncSession = Depends(get_session),
) -> TenantScope:
    """Keep an already-resolved tenant, else adopt the actor's earliest membership."""
    if organization is None:
        organization = await _fallback_organization(session, actor)
    if organization is None:
        raise AppError("User is not a member of any organization", status_code=400)
    return TenantScope(actor=actor, organization=organization)


async def get_organization_from_user_optional_auth(
    actor: Optional[Actor] = Depends(optional_authenticate),
    organization: Optional[OrganizationRef] = Depends(identify_organization),
    session: AsyncSession = Depends(get_session),
) -> Optional[OrganizationRef]:
    if organization is not None or actor is None:
        return organization
    return await _fallback_organization(session, actor)


async def require_public_organization(
    organization: Optional[OrganizationRef] = Depends(get_organization_from_user_optional_auth),
) -> OrganizationRef:
    """Tenant for anonymous routes; something in the request must name it."""
    if organization is None:
        raise AppError("Organization not specified", status_code=400)
    return organization


async def require_identified_organization(
    organization: Optional[OrganizationRef] = Depends(identify_organization),
) -> OrganizationRef:
    if organization is None:
        raise AppError("Organization not specified", status_code=400)
    return organization


# ── Access guards ─────────────────────────────────────────────

async def check_organization_access(session: AsyncSession, scope: TenantScope) -> OrgAccess:
    membership = await get_membership(session, scope.actor.user_id, scope.organization.id)
    if membership is None:
        raise AccessDenied("Access denied: User does not belong to this organization")
    return OrgAccess(actor=scope.actor, organization=scope.organization, membership_role=membership.role)


async def check_org_admin(session: AsyncSession, scope: TenantScope) -> OrgAccess:
    membership = await get_membership(session, scope.actor.user_id, scope.organization.id)
    access = OrgAccess(
        actor=scope.actor,
        organization=scope.organization,
        membership_role=membership.role if membership else None,
    )
    if not access.is_admin:
        raise AccessDenied("Organization admin access required")
    return access


async def verify_organization_access(
    scope: TenantScope = Depends(get_organization_from_user),
    session: AsyncSession = Depends(get_session),
) -> OrgAccess:
    """Membership presence only; a platform ADMIN without membership is denied."""
    return await check_organization_access(session, scope)


async def require_org_admin(
    scope: TenantScope = Depends(get_organization_from_user),
    session: AsyncSession = Depends(get_session),
) -> OrgAccess:
    """Membership ADMIN, or global ADMIN which needs no membership row."""
    return await check_org_admin(session, scope)


async def _path_scope(
    actor: Actor = Depends(authenticate),
    organization: OrganizationRef = Depends(require_identified_organization),
) -> TenantScope:
    return TenantScope(actor=actor, organization=organization)


async def verify_path_organization_access(
    scope: TenantScope = Depends(_path_scope),
    session: AsyncSession = Depends(get_session),
) -> OrgAccess:
    """Like verify_organization_access, for routes whose tenant must be named explicitly."""
    return await check_organization_access(session, scope)


async def require_path_org_admin(
    scope: TenantScope = Depends(_path_scope),
    session: AsyncSession = Depends(get_session),
) -> OrgAccess:
    return await check_org_admin(session, scope)
