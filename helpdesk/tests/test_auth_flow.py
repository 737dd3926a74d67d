"""Signup, OTP login and password reset flows."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from helpdesk.models.ticket import TicketStatus
from helpdesk.models.user import LoginOTP, PasswordReset
from helpdesk.security import decode_access_token, hash_password, verify_password
from helpdesk.services import mailer
from helpdesk.tests.factories import auth_headers, make_user


@pytest.fixture
def otp_outbox(monkeypatch):
    sent = []

    async def _fake_send(kind, recipient, variables, lang="en", cfg=None):
        sent.append({"kind": kind, "recipient": recipient, "variables": variables, "lang": lang})

    monkeypatch.setattr(mailer, "send", _fake_send)
    return sent


@pytest.mark.asyncio
async def test_signup_with_organization(client, db_session):
    r = await client.post(
        "/api/auth/signup",
        json={
            "email": "Owner@Acme.test",
            "password": "secret123",
            "name": "Owner",
            "organizationName": "Acme Corp",
            "organizationSlug": "Acme Corp",
        },
    )
    assert r.status_code == 201
    body = r.json()
    assert body["user"]["email"] == "owner@acme.test"
    assert body["user"]["organizations"] == [
        {"id": body["organizationId"], "name": "Acme Corp", "slug": "acme-corp", "role": "ADMIN"}
    ]
    actor = decode_access_token(body["token"])
    assert actor.organization_id == body["organizationId"]

    names = list(await db_session.scalars(
        select(TicketStatus.name)
        .where(TicketStatus.organization_id == body["organizationId"])
        .order_by(TicketStatus.order)
    ))
    assert names == ["Open", "In Progress", "Resolved", "Closed"]


@pytest.mark.asyncio
async def test_signup_duplicates(client, db_session):
    await make_user(db_session, "taken@acme.test")
    r = await client.post(
        "/api/auth/signup", json={"email": "taken@acme.test", "password": "secret123", "name": "Dup"}
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "User already exists"

    first = {"password": "secret123", "name": "One", "organizationName": "Acme", "organizationSlug": "acme"}
    assert (await client.post("/api/auth/signup", json={**first, "email": "a@x.test"})).status_code == 201
    r = await client.post("/api/auth/signup", json={**first, "email": "b@x.test"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Organization slug already exists"


@pytest.mark.asyncio
async def test_signup_validation_errors_are_400(client):
    r = await client.post("/api/auth/signup", json={"email": "not-an-email", "password": "1", "name": "X"})
    assert r.status_code == 400
    body = r.json()
    assert body["detail"] == "Validation error"
    assert {e["field"] for e in body["errors"]} >= {"email", "password"}


@pytest.mark.asyncio
async def test_password_login_requires_otp(client):
    r = await client.post("/api/auth/login", json={"email": "a@x.test", "password": "whatever"})
    assert r.status_code == 400
    assert r.json()["requiresOtp"] is True


@pytest.mark.asyncio
async def test_otp_login_round_trip(client, db_session, otp_outbox):
    user = await make_user(db_session, "agent@acme.test", password="secret123")

    r = await client.post("/api/auth/request-otp", json={"email": "agent@acme.test", "password": "secret123"})
    assert r.status_code == 200
    assert len(otp_outbox) == 1 and otp_outbox[0]["kind"] == "login_otp"
    code = otp_outbox[0]["variables"]["otp"]
    assert len(code) == 6 and code.isdigit()

    r = await client.post("/api/auth/verify-otp", json={"email": "agent@acme.test", "otp": code})
    assert r.status_code == 200
    assert decode_access_token(r.json()["token"]).user_id == user.id

    r = await client.post("/api/auth/verify-otp", json={"email": "agent@acme.test", "otp": code})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid or expired OTP"


@pytest.mark.asyncio
async def test_request_otp_replaces_older_codes(client, db_session, otp_outbox):
    await make_user(db_session, "agent@acme.test", password="secret123")
    for _ in range(3):
        await client.post("/api/auth/request-otp", json={"email": "agent@acme.test", "password": "secret123"})
    rows = list(await db_session.scalars(select(LoginOTP).where(LoginOTP.email == "agent@acme.test")))
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_request_otp_with_wrong_password(client, db_session, otp_outbox):
    await make_user(db_session, "agent@acme.test", password="secret123")
    r = await client.post("/api/auth/request-otp", json={"email": "agent@acme.test", "password": "nope"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid credentials"
    assert otp_outbox == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, status_code",
    [
        (mailer.MailConfigurationError("no transport"), 500),
        (mailer.MailDeliveryError("smtp refused"), 422),
    ],
)
async def test_request_otp_mail_failures(client, db_session, monkeypatch, error, status_code):
    await make_user(db_session, "agent@acme.test", password="secret123")

    async def _failing_send(*args, **kwargs):
        raise error

    monkeypatch.setattr(mailer, "send", _failing_send)
    r = await client.post("/api/auth/request-otp", json={"email": "agent@acme.test", "password": "secret123"})
    assert r.status_code == status_code


@pytest.mark.asyncio
async def test_forgot_and_reset_password(client, db_session, sent_mail):
    await make_user(db_session, "agent@acme.test", password="secret123")

    r = await client.post("/api/auth/forgot-password", json={"email": "nobody@acme.test"})
    assert r.status_code == 200
    assert sent_mail.messages == []

    r = await client.post("/api/auth/forgot-password", json={"email": "agent@acme.test"})
    assert r.status_code == 200
    [message] = sent_mail.of_kind("password_reset")
    reset = await db_session.scalar(select(PasswordReset).where(PasswordReset.email == "agent@acme.test"))
    assert reset.token in message["variables"]["reset_url"]

    r = await client.post("/api/auth/reset-password", json={"token": reset.token, "password": "brand-new"})
    assert r.status_code == 200

    r = await client.post("/api/auth/reset-password", json={"token": reset.token, "password": "again-new"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_change_password(client, db_session):
    user = await make_user(db_session, "agent@acme.test", password="secret123")
    headers = auth_headers(user)

    r = await client.post(
        "/api/auth/change-password",
        json={"currentPassword": "wrong", "newPassword": "newsecret"},
        headers=headers,
    )
    assert r.status_code == 401

    r = await client.post(
        "/api/auth/change-password",
        json={"currentPassword": "secret123", "newPassword": "newsecret"},
        headers=headers,
    )
    assert r.status_code == 200
    await db_session.refresh(user)
    assert verify_password("newsecret", user.hashed_password)


def test_password_hashing():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("other", hashed)
    assert not verify_password("secret123", "not-a-bcrypt-hash")
