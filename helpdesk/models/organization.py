"""Organization (tenant) and membership models."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import EmailStr, Field

from helpdesk.database import Base, new_id
from helpdesk.models.schema import ApiModel
from helpdesk.utils.time import utc_now


class OrganizationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"


class MembershipRole(str, enum.Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    subdomain: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=OrganizationStatus.ACTIVE.value)
    join_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    settings_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class UserOrganization(Base):
    __tablename__ = "user_organizations"
    __table_args__ = (UniqueConstraint("user_id", "organization_id", name="uq_user_organization"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    role: Mapped[str] = mapped_column(String(20), default=MembershipRole.MEMBER.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# ── Pydantic Schemas ─────────────────────────────────────────

class OrganizationCreate(ApiModel):
    name: str = Field(min_length=2)
    slug: str = Field(min_length=2)
    subdomain: str | None = None


class OrganizationUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=2)
    subdomain: str | None = None
    settings: dict | None = None


class OrganizationResponse(ApiModel):
    id: str
    name: str
    slug: str
    subdomain: str | None = None
    status: str
    join_date: datetime
    expiry_date: datetime | None = None
    created_at: datetime


class OrganizationPublic(ApiModel):
    id: str
    name: str
    slug: str
    subdomain: str | None = None


class MemberAdd(ApiModel):
    email: EmailStr
    role: MembershipRole = MembershipRole.MEMBER


class MemberRoleUpdate(ApiModel):
    role: MembershipRole


class OrganizationStatusUpdate(ApiModel):
    status: OrganizationStatus | None = None
    expiry_date: datetime | None = None
