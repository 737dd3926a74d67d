"""Bearer token identity: token issuing, verification and the auth dependencies.

The actor is derived from the signed token alone; nothing is read from the
database here. The token may carry a default organization id which callers
treat as a hint, never as proof of membership.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from helpdesk.config import Settings, get_settings, settings as default_settings
from helpdesk.errors import AccessDenied, AuthenticationRequired
from helpdesk.models.user import GlobalRole
from helpdesk.utils.time import utc_now

logger = logging.getLogger("helpdesk.security")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    user_id: str
    global_role: str
    organization_id: Optional[str] = None

    @property
    def is_platform_admin(self) -> bool:
        return self.global_role == GlobalRole.ADMIN.value

    @property
    def is_super_admin(self) -> bool:
        return self.global_role == GlobalRole.SUPERADMIN.value


# ── Passwords ─────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# ── Tokens ────────────────────────────────────────────────────

def create_access_token(
    user_id: str,
    role: str,
    organization_id: str | None = None,
    cfg: Settings = default_settings,
) -> str:
    payload = {
        "sub": user_id,
        "role": role,
        "exp": utc_now() + timedelta(minutes=cfg.jwt_expire_minutes),
    }
    if organization_id:
        payload["organization_id"] = organization_id
    return jwt.encode(payload, cfg.jwt_secret, algorithm=cfg.jwt_algorithm)


def decode_access_token(token: str, cfg: Settings = default_settings) -> Actor:
    """Verify a token and return its actor; any failure is the same generic 401."""
    try:
        payload = jwt.decode(token, cfg.jwt_secret, algorithms=[cfg.jwt_algorithm])
    except JWTError:
        raise AuthenticationRequired("Invalid or expired token")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not isinstance(user_id, str) or not user_id or role not in {r.value for r in GlobalRole}:
        raise AuthenticationRequired("Invalid or expired token")

    organization_id = payload.get("organization_id")
    return Actor(
        user_id=user_id,
        global_role=role,
        organization_id=organization_id if isinstance(organization_id, str) else None,
    )


# ── Dependencies ──────────────────────────────────────────────

async def authenticate(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    cfg: Settings = Depends(get_settings),
) -> Actor:
    """Strict identity: 401 when the bearer token is missing or does not verify."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationRequired()
    return decode_access_token(credentials.credentials, cfg)


async def optional_authenticate(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    cfg: Settings = Depends(get_settings),
) -> Optional[Actor]:
    """Identity when present; anonymous requests and bad tokens continue as None."""
    if credentials is None or not credentials.credentials:
        return None
    try:
        return decode_access_token(credentials.credentials, cfg)
    except AuthenticationRequired:
        logger.debug("ignoring invalid bearer token on optional-auth route")
        return None


async def require_super_admin(actor: Actor = Depends(authenticate)) -> Actor:
    if not actor.is_super_admin:
        raise AccessDenied("Super admin access required")
    return actor
