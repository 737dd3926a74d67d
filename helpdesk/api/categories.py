"""Ticket category API and the per-category assignment queue."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.database import get_session
from helpdesk.errors import Conflict, NotFound
from helpdesk.models.category import (
    Category,
    CategoryAssignment,
    CategoryAssignUser,
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
)
from helpdesk.models.ticket import Ticket
from helpdesk.models.user import User
from helpdesk.services import ticket_workflow as workflow
from helpdesk.tenancy import (
    OrgAccess,
    OrganizationRef,
    get_membership,
    require_org_admin,
    require_public_organization,
    verify_organization_access,
)

router = APIRouter(prefix="/api/categories", tags=["categories"])
logger = logging.getLogger("helpdesk.categories")

DUPLICATE_NAME = "Category name already exists in this organization"


async def _name_taken(session: AsyncSession, organization_id: str, name: str, exclude_id: str | None = None) -> bool:
    query = select(Category.id).where(Category.organization_id == organization_id, Category.name == name)
    if exclude_id:
        query = query.where(Category.id != exclude_id)
    return await session.scalar(query) is not None


@router.get("")
async def list_categories(
    organization: OrganizationRef = Depends(require_public_organization),
    session: AsyncSession = Depends(get_session),
):
    result = await session.scalars(
        select(Category).where(Category.organization_id == organization.id).order_by(Category.name.asc())
    )
    return [CategoryResponse.serialize(c) for c in result]


@router.get("/user/{user_id}/assignments")
async def user_assignments(
    user_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    if await get_membership(session, user_id, access.organization_id) is None:
        raise NotFound("User is not a member of this organization")

    result = await session.execute(
        select(CategoryAssignment, Category)
        .join(Category, Category.id == CategoryAssignment.category_id)
        .where(CategoryAssignment.user_id == user_id, CategoryAssignment.organization_id == access.organization_id)
        .order_by(CategoryAssignment.created_at.asc())
    )
    return [
        {**CategoryResponse.serialize(category), "assignedAt": assignment.created_at.isoformat()}
        for assignment, category in result.all()
    ]


@router.get("/{category_id}")
async def get_category(
    category_id: str,
    organization: OrganizationRef = Depends(require_public_organization),
    session: AsyncSession = Depends(get_session),
):
    category = await workflow.get_category(session, organization.id, category_id)
    return CategoryResponse.serialize(category)


@router.post("", status_code=201)
async def create_category(
    body: CategoryCreate,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    if await _name_taken(session, access.organization_id, body.name):
        raise Conflict(DUPLICATE_NAME)

    category = Category(organization_id=access.organization_id, name=body.name, name_ar=body.name_ar)
    session.add(category)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict(DUPLICATE_NAME)
    await session.refresh(category)
    return CategoryResponse.serialize(category)


@router.put("/{category_id}")
async def update_category(
    category_id: str,
    body: CategoryUpdate,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    category = await workflow.get_category(session, access.organization_id, category_id)
    if body.name is not None and body.name != category.name:
        if await _name_taken(session, access.organization_id, body.name, exclude_id=category.id):
            raise Conflict(DUPLICATE_NAME)
        category.name = body.name
    if "name_ar" in body.model_fields_set:
        category.name_ar = body.name_ar

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict(DUPLICATE_NAME)
    await session.refresh(category)
    return CategoryResponse.serialize(category)


@router.delete("/{category_id}")
async def delete_category(
    category_id: str,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    """Delete a category; its tickets become uncategorized and its queue is dropped."""
    category = await workflow.get_category(session, access.organization_id, category_id)
    await session.execute(
        update(Ticket)
        .where(Ticket.category_id == category.id, Ticket.organization_id == access.organization_id)
        .values(category_id=None)
    )
    await session.execute(delete(CategoryAssignment).where(CategoryAssignment.category_id == category.id))
    await session.delete(category)
    await session.commit()
    return {"message": "Category deleted successfully"}


# ── Assignment queue ──────────────────────────────────────────

@router.post("/{category_id}/assign-user", status_code=201)
async def assign_user(
    category_id: str,
    body: CategoryAssignUser,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    """Queue a member on a category; new tickets in it go to the earliest queued user."""
    category = await workflow.get_category(session, access.organization_id, category_id)
    user = await workflow.get_member(session, access.organization_id, body.user_id)

    existing = await session.scalar(
        select(CategoryAssignment.id).where(
            CategoryAssignment.user_id == user.id, CategoryAssignment.category_id == category.id
        )
    )
    if existing:
        raise Conflict("User is already assigned to this category")

    assignment = CategoryAssignment(user_id=user.id, category_id=category.id, organization_id=access.organization_id)
    session.add(assignment)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict("User is already assigned to this category")
    await session.refresh(assignment)

    logger.info("user queued on category %s", category.id, extra={"organization_id": access.organization_id})
    return {
        "id": assignment.id,
        "userId": user.id,
        "categoryId": category.id,
        "organizationId": access.organization_id,
        "createdAt": assignment.created_at.isoformat(),
        "user": {"id": user.id, "name": user.name, "email": user.email},
        "category": {"id": category.id, "name": category.name, "nameAr": category.name_ar},
    }


@router.delete("/{category_id}/assign-user/{user_id}")
async def unassign_user(
    category_id: str,
    user_id: str,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    category = await workflow.get_category(session, access.organization_id, category_id)
    assignment = await session.scalar(
        select(CategoryAssignment).where(
            CategoryAssignment.user_id == user_id,
            CategoryAssignment.category_id == category.id,
            CategoryAssignment.organization_id == access.organization_id,
        )
    )
    if assignment is None:
        raise NotFound("Assignment not found")
    await session.delete(assignment)
    await session.commit()
    return {"message": "Category assignment removed successfully"}


@router.get("/{category_id}/assigned-users")
async def assigned_users(
    category_id: str,
    access: OrgAccess = Depends(verify_organization_access),
    session: AsyncSession = Depends(get_session),
):
    category = await workflow.get_category(session, access.organization_id, category_id)
    result = await session.execute(
        select(User, CategoryAssignment)
        .join(CategoryAssignment, CategoryAssignment.user_id == User.id)
        .where(
            CategoryAssignment.category_id == category.id,
            CategoryAssignment.organization_id == access.organization_id,
        )
        .order_by(CategoryAssignment.created_at.asc(), CategoryAssignment.id.asc())
    )
    return [
        {"id": user.id, "name": user.name, "email": user.email, "assignedAt": assignment.created_at.isoformat()}
        for user, assignment in result.all()
    ]
