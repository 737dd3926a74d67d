"""Row builders shared by the API and workflow tests."""

from datetime import timedelta

from helpdesk.models.category import Category, CategoryAssignment
from helpdesk.models.organization import MembershipRole, Organization, UserOrganization
from helpdesk.models.user import GlobalRole, User
from helpdesk.security import create_access_token, hash_password
from helpdesk.services.ticket_workflow import seed_default_statuses
from helpdesk.utils.time import utc_now


async def make_user(session, email, name="Test User", role=GlobalRole.USER, password="secret123"):
    user = User(email=email, name=name, role=role.value, hashed_password=hash_password(password))
    session.add(user)
    await session.commit()
    return user


async def make_org(session, slug, name=None, subdomain=None, with_statuses=True):
    org = Organization(name=name or slug.title(), slug=slug, subdomain=subdomain)
    session.add(org)
    await session.flush()
    if with_statuses:
        seed_default_statuses(session, org.id)
    await session.commit()
    return org


async def add_member(session, user, org, role=MembershipRole.MEMBER, joined_at=None):
    membership = UserOrganization(
        user_id=user.id,
        organization_id=org.id,
        role=role.value,
        created_at=joined_at or utc_now(),
    )
    session.add(membership)
    await session.commit()
    return membership


async def make_category(session, org, name, assignees=()):
    category = Category(organization_id=org.id, name=name)
    session.add(category)
    await session.flush()
    base = utc_now()
    for offset, user in enumerate(assignees):
        session.add(CategoryAssignment(
            user_id=user.id,
            category_id=category.id,
            organization_id=org.id,
            created_at=base + timedelta(seconds=offset),
        ))
    await session.commit()
    return category


def auth_headers(user, organization_id=None, **extra):
    token = create_access_token(user.id, user.role, organization_id)
    return {"Authorization": f"Bearer {token}", **extra}
