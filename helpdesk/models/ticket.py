"""Ticket, status, comment, attachment and time entry models."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Literal, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import EmailStr, Field

from helpdesk.database import Base, new_id
from helpdesk.models.schema import ApiModel
from helpdesk.models.user import UserSummary
from helpdesk.utils.time import utc_now


class TicketPriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TicketStatus(Base):
    __tablename__ = "ticket_statuses"
    __table_args__ = (UniqueConstraint("name", "organization_id", name="uq_status_name_org"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(100))
    name_ar: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    color: Mapped[str] = mapped_column(String(20), default="#6b7280")
    order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[str] = mapped_column(Text)
    status_id: Mapped[str] = mapped_column(
        ForeignKey("ticket_statuses.id", ondelete="RESTRICT"), index=True
    )
    priority: Mapped[str] = mapped_column(String(20), default=TicketPriority.MEDIUM.value, index=True)
    category_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    submitter_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    submitter_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    public_token: Mapped[Optional[str]] = mapped_column(String(8), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ticket_id: Mapped[str] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    content: Mapped[str] = mapped_column(Text)
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class Attachment(Base):
    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ticket_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=True, index=True
    )
    comment_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("comments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    filename: Mapped[str] = mapped_column(String(255))
    original_name: Mapped[str] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(255))
    size: Mapped[int] = mapped_column(Integer)
    path: Mapped[str] = mapped_column(String(1024))
    uploaded_by: Mapped[Optional[str]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TimeEntry(Base):
    __tablename__ = "time_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ticket_id: Mapped[str] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    hours: Mapped[int] = mapped_column(Integer, default=0)
    minutes: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# ── Pydantic Schemas ─────────────────────────────────────────

class TicketCreate(ApiModel):
    title: str = Field(min_length=3, max_length=500)
    description: str = Field(min_length=10)
    priority: TicketPriority = TicketPriority.MEDIUM
    category_id: str | None = None


class PublicTicketCreate(ApiModel):
    title: str = Field(min_length=3, max_length=500)
    description: str = Field(min_length=10)
    submitter_name: str = Field(min_length=2)
    submitter_email: EmailStr
    category_id: str | None = None


class TicketUpdate(ApiModel):
    title: str | None = Field(default=None, min_length=3, max_length=500)
    description: str | None = Field(default=None, min_length=10)
    status_id: str | None = None
    priority: TicketPriority | None = None
    category_id: str | None = None
    assigned_to: str | None = None


class BulkTicketAction(ApiModel):
    action: Literal["update", "delete", "assign", "changeStatus", "changePriority"]
    ticket_ids: list[str] = Field(min_length=1)
    status_id: str | None = None
    priority: TicketPriority | None = None
    assigned_to: str | None = None
    category_id: str | None = None


class StatusResponse(ApiModel):
    id: str
    organization_id: str
    name: str
    name_ar: str | None = None
    color: str
    order: int


class StatusCreate(ApiModel):
    name: str = Field(min_length=1, max_length=100)
    name_ar: str | None = None
    color: str = "#6b7280"
    order: int | None = None


class StatusUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    name_ar: str | None = None
    color: str | None = None
    order: int | None = None


class TicketResponse(ApiModel):
    id: str
    organization_id: str
    title: str
    description: str
    status_id: str
    priority: str
    category_id: str | None = None
    user_id: str | None = None
    submitter_name: str | None = None
    submitter_email: str | None = None
    assigned_to: str | None = None
    public_token: str | None = None
    created_at: datetime
    updated_at: datetime


class CommentCreate(ApiModel):
    content: str = Field(min_length=1)


class CommentResponse(ApiModel):
    id: str
    ticket_id: str
    user_id: str
    content: str
    is_edited: bool
    edited_at: datetime | None = None
    created_at: datetime
    user: UserSummary | None = None


class PublicTicketView(ApiModel):
    """What an anonymous holder of the tracking token may see."""

    id: str
    title: str
    description: str
    priority: str
    submitter_name: str | None = None
    public_token: str | None = None
    created_at: datetime
    updated_at: datetime
    status: StatusResponse | None = None
    comments: list[CommentResponse] = Field(default_factory=list)


class AttachmentResponse(ApiModel):
    id: str
    ticket_id: str | None = None
    comment_id: str | None = None
    filename: str
    original_name: str
    mime_type: str
    size: int
    uploaded_by: str | None = None
    created_at: datetime


class TimeEntryCreate(ApiModel):
    hours: int = Field(ge=0)
    minutes: int = Field(ge=0, le=59)
    description: str | None = None
    date: datetime | None = None


class TimeEntryResponse(ApiModel):
    id: str
    ticket_id: str
    user_id: str
    hours: int
    minutes: int
    description: str | None = None
    date: datetime
    created_at: datetime
