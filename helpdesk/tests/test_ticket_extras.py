"""Comments, attachments, time tracking, bulk actions and deletion."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import select

from helpdesk.models.activity import ActivityLog
from helpdesk.models.notification import Notification
from helpdesk.models.organization import MembershipRole
from helpdesk.models.ticket import Attachment, Comment, Ticket, TicketStatus, TimeEntry
from helpdesk.tests.factories import add_member, auth_headers, make_org, make_user


@pytest_asyncio.fixture
async def desk(db_session):
    org = await make_org(db_session, "acme-corp")
    admin = await make_user(db_session, "admin@acme.test", name="Admin")
    owner = await make_user(db_session, "owner@acme.test", name="Owner")
    other = await make_user(db_session, "other@acme.test", name="Other")
    await add_member(db_session, admin, org, role=MembershipRole.ADMIN)
    await add_member(db_session, owner, org)
    await add_member(db_session, other, org)
    return {"org": org, "admin": admin, "owner": owner, "other": other}


async def _raise_ticket(client, user, title="Broken chair"):
    r = await client.post(
        "/api/tickets",
        json={"title": title, "description": "Something needs fixing here."},
        headers=auth_headers(user),
    )
    assert r.status_code == 201
    return r.json()["id"]


async def _actions(session, ticket_id):
    return [row.action for row in await session.scalars(
        select(ActivityLog).where(ActivityLog.ticket_id == ticket_id).order_by(ActivityLog.created_at.asc())
    )]


# ── Comments ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_comment_edit_and_delete_rules(client, db_session, desk):
    owner, other, admin = desk["owner"], desk["other"], desk["admin"]
    ticket_id = await _raise_ticket(client, owner)

    r = await client.post(f"/api/tickets/{ticket_id}/comments", json={"content": "First"}, headers=auth_headers(owner))
    comment_id = r.json()["id"]
    assert r.json()["user"]["email"] == "owner@acme.test"

    r = await client.put(
        f"/api/tickets/{ticket_id}/comments/{comment_id}", json={"content": "Hijack"}, headers=auth_headers(admin)
    )
    assert r.status_code == 403
    assert r.json()["detail"] == "You can only edit your own comments"

    r = await client.put(
        f"/api/tickets/{ticket_id}/comments/{comment_id}", json={"content": "Edited"}, headers=auth_headers(owner)
    )
    assert r.status_code == 200
    assert r.json()["content"] == "Edited"
    assert r.json()["isEdited"] is True

    r = await client.delete(f"/api/tickets/{ticket_id}/comments/{comment_id}", headers=auth_headers(admin))
    assert r.status_code == 200
    assert await db_session.get(Comment, comment_id) is None

    actions = await _actions(db_session, ticket_id)
    assert actions[-3:] == ["COMMENT_ADDED", "COMMENT_EDITED", "COMMENT_DELETED"]


@pytest.mark.asyncio
async def test_strangers_cannot_comment(client, db_session, desk):
    ticket_id = await _raise_ticket(client, desk["owner"])
    r = await client.post(
        f"/api/tickets/{ticket_id}/comments", json={"content": "Hi"}, headers=auth_headers(desk["other"])
    )
    assert r.status_code == 403


# ── Attachments ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_attachment_upload_download_delete(client, db_session, desk, upload_dir):
    owner = desk["owner"]
    ticket_id = await _raise_ticket(client, owner)

    r = await client.post(
        f"/api/tickets/{ticket_id}/attachments",
        files={"file": ("notes.txt", b"printer log", "text/plain")},
        headers=auth_headers(owner),
    )
    assert r.status_code == 201
    attachment = r.json()
    assert attachment["originalName"] == "notes.txt"
    assert attachment["size"] == len(b"printer log")
    assert (upload_dir / attachment["filename"]).is_file()

    r = await client.get(f"/api/tickets/attachments/{attachment['id']}/file", headers=auth_headers(owner))
    assert r.status_code == 200
    assert r.content == b"printer log"

    r = await client.delete(f"/api/tickets/attachments/{attachment['id']}", headers=auth_headers(desk["other"]))
    assert r.status_code == 403

    r = await client.delete(f"/api/tickets/attachments/{attachment['id']}", headers=auth_headers(owner))
    assert r.status_code == 200
    assert not (upload_dir / attachment["filename"]).exists()
    assert await _actions(db_session, ticket_id) == ["TICKET_CREATED", "ATTACHMENT_ADDED", "ATTACHMENT_DELETED"]


@pytest.mark.asyncio
async def test_disallowed_mime_type(client, db_session, desk, upload_dir):
    ticket_id = await _raise_ticket(client, desk["owner"])
    r = await client.post(
        f"/api/tickets/{ticket_id}/attachments",
        files={"file": ("run.sh", b"#!/bin/sh", "application/x-sh")},
        headers=auth_headers(desk["owner"]),
    )
    assert r.status_code == 400
    assert r.json()["detail"].startswith("Invalid file type")
    assert await db_session.scalar(select(Attachment.id)) is None


@pytest.mark.asyncio
async def test_public_attachment_only_on_public_tickets(client, db_session, desk, upload_dir):
    r = await client.post(
        "/api/tickets/public",
        json={
            "title": "Projector",
            "description": "Projector shows no signal.",
            "submitterName": "Guest",
            "submitterEmail": "guest@example.com",
        },
        headers={"X-Organization-Slug": "acme-corp"},
    )
    public_id = r.json()["id"]
    private_id = await _raise_ticket(client, desk["owner"])

    upload = {"file": ("photo.png", b"\x89PNG fake", "image/png")}
    r = await client.post(
        f"/api/tickets/{public_id}/attachments/public", files=upload, headers={"X-Organization-Slug": "acme-corp"}
    )
    assert r.status_code == 201
    assert r.json()["uploadedBy"] is None

    r = await client.post(
        f"/api/tickets/{private_id}/attachments/public", files=upload, headers={"X-Organization-Slug": "acme-corp"}
    )
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_attachment_of_another_tenant_is_404(client, db_session, desk, upload_dir):
    ticket_id = await _raise_ticket(client, desk["owner"])
    r = await client.post(
        f"/api/tickets/{ticket_id}/attachments",
        files={"file": ("a.txt", b"data", "text/plain")},
        headers=auth_headers(desk["owner"]),
    )
    attachment_id = r.json()["id"]

    other_org = await make_org(db_session, "other-org")
    stranger = await make_user(db_session, "admin@other.test")
    await add_member(db_session, stranger, other_org, role=MembershipRole.ADMIN)

    r = await client.get(f"/api/tickets/attachments/{attachment_id}/file", headers=auth_headers(stranger))
    assert r.status_code == 404


# ── Time tracking ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_time_entries(client, db_session, desk):
    owner, admin, other = desk["owner"], desk["admin"], desk["other"]
    ticket_id = await _raise_ticket(client, owner)

    r = await client.post(
        f"/api/tickets/{ticket_id}/time",
        json={"hours": 1, "minutes": 30, "description": "Diagnosis"},
        headers=auth_headers(owner),
    )
    assert r.status_code == 201
    entry_id = r.json()["id"]
    assert r.json()["user"]["id"] == owner.id

    r = await client.post(f"/api/tickets/{ticket_id}/time", json={"hours": 0, "minutes": 75}, headers=auth_headers(owner))
    assert r.status_code == 400

    r = await client.get(f"/api/tickets/{ticket_id}/time", headers=auth_headers(admin))
    assert [e["minutes"] for e in r.json()] == [30]

    assert (await client.delete(f"/api/tickets/time/{entry_id}", headers=auth_headers(other))).status_code == 403
    assert (await client.delete(f"/api/tickets/time/{entry_id}", headers=auth_headers(admin))).status_code == 200
    assert await db_session.get(TimeEntry, entry_id) is None
    assert (await client.delete(f"/api/tickets/time/{entry_id}", headers=auth_headers(admin))).status_code == 404

    assert (await _actions(db_session, ticket_id))[-2:] == ["TIME_LOGGED", "TIME_DELETED"]


# ── Bulk and delete ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_bulk_change_status(client, db_session, desk):
    org, owner, admin = desk["org"], desk["owner"], desk["admin"]
    ids = [await _raise_ticket(client, owner, f"Ticket {i}") for i in range(3)]
    resolved = await db_session.scalar(
        select(TicketStatus).where(TicketStatus.organization_id == org.id, TicketStatus.name == "Resolved")
    )

    r = await client.post(
        "/api/tickets/bulk",
        json={"action": "changeStatus", "ticketIds": ids, "statusId": resolved.id},
        headers=auth_headers(admin),
    )
    assert r.status_code == 200
    assert r.json()["count"] == 3

    tickets = list(await db_session.scalars(select(Ticket).where(Ticket.id.in_(ids))))
    assert {t.status_id for t in tickets} == {resolved.id}
    row = await db_session.scalar(
        select(ActivityLog).where(ActivityLog.ticket_id == ids[0], ActivityLog.field == "status")
    )
    assert (row.old_value, row.new_value) == ("Open", "Resolved")


@pytest.mark.asyncio
async def test_bulk_rejects_foreign_or_missing_ids(client, db_session, desk):
    ticket_id = await _raise_ticket(client, desk["owner"])
    r = await client.post(
        "/api/tickets/bulk",
        json={"action": "changePriority", "ticketIds": [ticket_id, "missing"], "priority": "LOW"},
        headers=auth_headers(desk["admin"]),
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Some tickets not found or access denied"

    r = await client.post(
        "/api/tickets/bulk",
        json={"action": "changePriority", "ticketIds": [ticket_id]},
        headers=auth_headers(desk["admin"]),
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_bulk_requires_org_admin(client, db_session, desk):
    ticket_id = await _raise_ticket(client, desk["owner"])
    r = await client.post(
        "/api/tickets/bulk",
        json={"action": "delete", "ticketIds": [ticket_id]},
        headers=auth_headers(desk["owner"]),
    )
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_delete_ticket_removes_dependants(client, db_session, desk, upload_dir):
    owner, admin = desk["owner"], desk["admin"]
    ticket_id = await _raise_ticket(client, owner)
    r = await client.post(f"/api/tickets/{ticket_id}/comments", json={"content": "Note"}, headers=auth_headers(owner))
    comment_id = r.json()["id"]
    await client.post(f"/api/tickets/{ticket_id}/comments", json={"content": "On it"}, headers=auth_headers(admin))
    r = await client.post(
        f"/api/tickets/{ticket_id}/comments/{comment_id}/attachments",
        files={"file": ("log.txt", b"log", "text/plain")},
        headers=auth_headers(owner),
    )
    stored = upload_dir / r.json()["filename"]
    await client.post(f"/api/tickets/{ticket_id}/time", json={"hours": 1, "minutes": 0}, headers=auth_headers(owner))

    assert (await client.delete(f"/api/tickets/{ticket_id}", headers=auth_headers(owner))).status_code == 403
    r = await client.delete(f"/api/tickets/{ticket_id}", headers=auth_headers(admin))
    assert r.status_code == 200

    assert await db_session.scalar(select(Ticket.id).where(Ticket.id == ticket_id)) is None
    assert await db_session.scalar(select(Comment.id)) is None
    assert await db_session.scalar(select(Attachment.id)) is None
    assert await db_session.scalar(select(TimeEntry.id)) is None
    assert not stored.exists()
    assert await _actions(db_session, ticket_id) == []
    assert await db_session.scalar(select(Notification.id).where(Notification.ticket_id == ticket_id)) is None


@pytest.mark.asyncio
async def test_bulk_delete_leaves_no_log_or_notification_rows(client, db_session, desk):
    owner, admin = desk["owner"], desk["admin"]
    ids = [await _raise_ticket(client, owner, f"Ticket {i}") for i in range(2)]
    for ticket_id in ids:
        await client.post(f"/api/tickets/{ticket_id}/comments", json={"content": "Seen"}, headers=auth_headers(admin))
    assert await db_session.scalar(select(Notification.id).where(Notification.ticket_id.in_(ids))) is not None

    r = await client.post(
        "/api/tickets/bulk", json={"action": "delete", "ticketIds": ids}, headers=auth_headers(admin)
    )
    assert r.status_code == 200
    assert r.json()["count"] == 2

    assert await db_session.scalar(select(ActivityLog.id).where(ActivityLog.ticket_id.in_(ids))) is None
    assert await db_session.scalar(select(Notification.id).where(Notification.ticket_id.in_(ids))) is None
