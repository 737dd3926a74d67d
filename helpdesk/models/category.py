"""Ticket categories and the per-category assignee queue."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import Field

from helpdesk.database import Base, new_id
from helpdesk.models.schema import ApiModel
from helpdesk.utils.time import utc_now


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("name", "organization_id", name="uq_category_name_org"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    name_ar: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class CategoryAssignment(Base):
    __tablename__ = "category_assignments"
    __table_args__ = (UniqueConstraint("user_id", "category_id", name="uq_category_assignment"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), index=True
    )
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# ── Pydantic Schemas ─────────────────────────────────────────

class CategoryCreate(ApiModel):
    name: str = Field(min_length=1)
    name_ar: str | None = None


class CategoryUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=1)
    name_ar: str | None = None


class CategoryResponse(ApiModel):
    id: str
    organization_id: str
    name: str
    name_ar: str | None = None
    created_at: datetime


class CategoryAssignUser(ApiModel):
    user_id: str
