"""User, login OTP and password reset models."""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import EmailStr, Field

from helpdesk.database import Base, new_id
from helpdesk.models.schema import ApiModel
from helpdesk.utils.time import utc_now


class GlobalRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default=GlobalRole.USER.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class LoginOTP(Base):
    __tablename__ = "login_otps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), index=True)
    otp: Mapped[str] = mapped_column(String(6))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class PasswordReset(Base):
    __tablename__ = "password_resets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), index=True)
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# ── Pydantic Schemas ─────────────────────────────────────────

class SignupRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=2)
    organization_name: str | None = None
    organization_slug: str | None = None


class LoginRequest(ApiModel):
    email: EmailStr
    password: str


class RequestOTPRequest(LoginRequest):
    lang: str = "en"


class VerifyOTPRequest(ApiModel):
    email: EmailStr
    otp: str = Field(min_length=6, max_length=6)


class ForgotPasswordRequest(ApiModel):
    email: EmailStr
    lang: str = "en"


class ResetPasswordRequest(ApiModel):
    token: str
    password: str = Field(min_length=6)


class ChangePasswordRequest(ApiModel):
    current_password: str
    new_password: str = Field(min_length=6)


class UserResponse(ApiModel):
    id: str
    email: str
    name: str
    role: str
    created_at: datetime


class UserSummary(ApiModel):
    id: str
    email: str
    name: str
