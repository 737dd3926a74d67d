"""Authentication API: signup, OTP login and password management.

Login is two-step: ``/request-otp`` checks the password and emails a 6-digit
code, ``/verify-otp`` trades the code for a bearer token. The token carries the
user's earliest organization as a default tenant hint.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.config import Settings, get_settings
from helpdesk.database import get_session
from helpdesk.errors import (
    AppError,
    AuthenticationRequired,
    Conflict,
    NotFound,
    UpstreamServiceError,
    ValidationFailed,
)
from helpdesk.models.organization import MembershipRole, Organization, UserOrganization
from helpdesk.models.user import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginOTP,
    LoginRequest,
    PasswordReset,
    RequestOTPRequest,
    ResetPasswordRequest,
    SignupRequest,
    User,
    UserResponse,
    VerifyOTPRequest,
)
from helpdesk.security import Actor, authenticate, create_access_token, hash_password, verify_password
from helpdesk.services import mailer
from helpdesk.services.ticket_workflow import seed_default_statuses
from helpdesk.tenancy import SLUG_TOO_SHORT, identifier_taken, normalize_slug
from helpdesk.utils.time import as_utc, utc_in, utc_now
from helpdesk.workers.mail_dispatcher import dispatcher

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger("helpdesk.auth")

RESET_MESSAGE = "If the email exists, a password reset link has been sent"


def _generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


async def user_organizations(session: AsyncSession, user_id: str) -> list[dict]:
    """Memberships of a user, earliest first, as {id, name, slug, role} dicts."""
    result = await session.execute(
        select(UserOrganization, Organization)
        .join(Organization, Organization.id == UserOrganization.organization_id)
        .where(UserOrganization.user_id == user_id)
        .order_by(UserOrganization.created_at.asc(), UserOrganization.id.asc())
    )
    return [
        {"id": org.id, "name": org.name, "slug": org.slug, "role": membership.role}
        for membership, org in result.all()
    ]


async def _user_payload(session: AsyncSession, user: User) -> dict:
    return {**UserResponse.serialize(user), "organizations": await user_organizations(session, user.id)}


# ── Signup ────────────────────────────────────────────────────

@router.post("/signup", status_code=201)
async def signup(
    body: SignupRequest,
    session: AsyncSession = Depends(get_session),
    cfg: Settings = Depends(get_settings),
):
    """Create a user, optionally with a new organization they administer."""
    email = body.email.lower()
    existing = await session.scalar(select(User.id).where(User.email == email))
    if existing:
        raise Conflict("User already exists")

    organization = None
    if body.organization_name and body.organization_slug:
        slug = normalize_slug(body.organization_slug)
        if len(slug) < 2:
            raise ValidationFailed(SLUG_TOO_SHORT, [{"field": "organizationSlug", "message": SLUG_TOO_SHORT}])
        if await identifier_taken(session, slug):
            raise Conflict("Organization slug already exists")
        organization = Organization(
            name=body.organization_name,
            slug=slug,
            join_date=utc_now(),
            expiry_date=utc_in(days=365),
        )

    user = User(email=email, hashed_password=hash_password(body.password), name=body.name)
    session.add(user)
    try:
        if organization is not None:
            session.add(organization)
            await session.flush()
            session.add(
                UserOrganization(user_id=user.id, organization_id=organization.id, role=MembershipRole.ADMIN.value)
            )
            seed_default_statuses(session, organization.id)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict("User or organization already exists")
    await session.refresh(user)

    organization_id = organization.id if organization else None
    logger.info("user signed up", extra={"organization_id": organization_id})
    token = create_access_token(user.id, user.role, organization_id, cfg)
    return {
        "message": "User created successfully",
        "user": await _user_payload(session, user),
        "token": token,
        "organizationId": organization_id,
    }


# ── OTP login ─────────────────────────────────────────────────

@router.post("/request-otp")
async def request_otp(
    body: RequestOTPRequest,
    session: AsyncSession = Depends(get_session),
    cfg: Settings = Depends(get_settings),
):
    """Check the password and email a one-time code; mail failures are reported."""
    email = body.email.lower()
    user = await session.scalar(select(User).where(User.email == email))
    if user is None or not verify_password(body.password, user.hashed_password):
        raise AuthenticationRequired("Invalid credentials")

    otp = _generate_otp()
    await session.execute(delete(LoginOTP).where(LoginOTP.email == email))
    session.add(LoginOTP(email=email, otp=otp, expires_at=utc_in(minutes=cfg.otp_ttl_minutes)))
    await session.commit()

    try:
        await mailer.send("login_otp", email, {"otp": otp}, body.lang, cfg)
    except mailer.MailConfigurationError as exc:
        logger.error("OTP email not sent: %s", exc, extra={"mail_kind": "login_otp"})
        raise UpstreamServiceError("Email service is not configured. Please contact the administrator.")
    except mailer.MailDeliveryError as exc:
        logger.error("OTP email delivery failed: %s", exc, extra={"mail_kind": "login_otp"})
        raise UpstreamServiceError(
            "Failed to send OTP email. Please try again later or contact support.",
            status_code=422,
        )

    return {"message": "OTP sent to your email"}


@router.post("/verify-otp")
async def verify_otp(
    body: VerifyOTPRequest,
    session: AsyncSession = Depends(get_session),
    cfg: Settings = Depends(get_settings),
):
    email = body.email.lower()
    result = await session.execute(
        select(LoginOTP)
        .where(LoginOTP.email == email, LoginOTP.otp == body.otp, LoginOTP.used.is_(False))
        .order_by(LoginOTP.created_at.desc())
        .limit(1)
    )
    record = result.scalar_one_or_none()
    if record is None or as_utc(record.expires_at) <= utc_now():
        raise AuthenticationRequired("Invalid or expired OTP")

    record.used = True
    await session.commit()

    user = await session.scalar(select(User).where(User.email == email))
    if user is None:
        raise AuthenticationRequired("User not found")

    payload = await _user_payload(session, user)
    default_org = payload["organizations"][0]["id"] if payload["organizations"] else None
    return {
        "message": "Login successful",
        "user": payload,
        "token": create_access_token(user.id, user.role, default_org, cfg),
    }


@router.post("/login")
async def login(body: LoginRequest):
    """Password-only login is retired; clients must use the OTP flow."""
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Please use /api/auth/request-otp endpoint to initiate login",
            "requiresOtp": True,
        },
    )


# ── Passwords ─────────────────────────────────────────────────

@router.post("/forgot-password")
async def forgot_password(
    body: ForgotPasswordRequest,
    session: AsyncSession = Depends(get_session),
    cfg: Settings = Depends(get_settings),
):
    email = body.email.lower()
    user = await session.scalar(select(User.id).where(User.email == email))
    if user is None:
        return {"message": RESET_MESSAGE}

    token = secrets.token_hex(32)
    session.add(PasswordReset(email=email, token=token, expires_at=utc_in(minutes=cfg.reset_token_ttl_minutes)))
    await session.commit()

    reset_url = f"{cfg.frontend_url.rstrip('/')}/reset-password?token={token}"
    dispatcher.enqueue("password_reset", email, {"reset_url": reset_url}, body.lang)
    return {"message": RESET_MESSAGE}


@router.post("/reset-password")
async def reset_password(
    body: ResetPasswordRequest,
    session: AsyncSession = Depends(get_session),
):
    reset = await session.scalar(select(PasswordReset).where(PasswordReset.token == body.token))
    if reset is None or as_utc(reset.expires_at) < utc_now():
        raise AppError("Invalid or expired token", status_code=400)

    user = await session.scalar(select(User).where(User.email == reset.email))
    if user is None:
        raise AppError("Invalid or expired token", status_code=400)

    user.hashed_password = hash_password(body.password)
    await session.delete(reset)
    await session.commit()
    return {"message": "Password reset successfully"}


@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    user = await session.get(User, actor.user_id)
    if user is None:
        raise NotFound("User not found")
    if not verify_password(body.current_password, user.hashed_password):
        raise AuthenticationRequired("Current password is incorrect")

    user.hashed_password = hash_password(body.new_password)
    await session.commit()
    return {"message": "Password changed successfully"}


@router.get("/me")
async def me(
    actor: Actor = Depends(authenticate),
    session: AsyncSession = Depends(get_session),
):
    user = await session.get(User, actor.user_id)
    if user is None:
        raise NotFound("User not found")
    return {"user": await _user_payload(session, user)}
