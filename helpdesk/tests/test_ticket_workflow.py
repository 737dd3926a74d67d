"""Ticket creation, auto-assignment, tracking tokens and update fan-out."""

from __future__ import annotations

import re

import pytest
import pytest_asyncio
from sqlalchemy import select

from helpdesk.errors import NotFound, TokenAllocationError
from helpdesk.models.activity import ActivityLog
from helpdesk.models.notification import Notification
from helpdesk.models.organization import MembershipRole
from helpdesk.models.ticket import Ticket, TicketStatus
from helpdesk.services import activity, notifications
from helpdesk.services import ticket_workflow as workflow
from helpdesk.tenancy import OrganizationRef
from helpdesk.tests.factories import add_member, auth_headers, make_category, make_org, make_user

TOKEN_PATTERN = re.compile(r"^[A-HJ-NP-Z2-9]{8}$")


async def _notifications(session, user_id=None, type=None):
    query = select(Notification)
    if user_id:
        query = query.where(Notification.user_id == user_id)
    if type:
        query = query.where(Notification.type == type)
    return list(await session.scalars(query))


async def _activity(session, ticket_id):
    result = await session.scalars(
        select(ActivityLog).where(ActivityLog.ticket_id == ticket_id).order_by(ActivityLog.created_at.asc())
    )
    return list(result)


async def _status(session, org, name):
    return await session.scalar(
        select(TicketStatus).where(TicketStatus.organization_id == org.id, TicketStatus.name == name)
    )


@pytest_asyncio.fixture
async def helpdesk(db_session):
    """Tenant with an admin, two queued agents on "Hardware" and a plain member."""
    org = await make_org(db_session, "acme-corp")
    admin = await make_user(db_session, "admin@acme.test", name="Admin")
    first = await make_user(db_session, "first@acme.test", name="First Agent")
    second = await make_user(db_session, "second@acme.test", name="Second Agent")
    member = await make_user(db_session, "member@acme.test", name="Member")
    await add_member(db_session, admin, org, role=MembershipRole.ADMIN)
    for user in (first, second, member):
        await add_member(db_session, user, org)
    hardware = await make_category(db_session, org, "Hardware", assignees=[first, second])
    return {
        "org": org,
        "admin": admin,
        "first": first,
        "second": second,
        "member": member,
        "hardware": hardware,
    }


class TestPublicTokens:
    def test_token_shape(self):
        for _ in range(50):
            assert TOKEN_PATTERN.match(workflow.generate_public_token())

    @pytest.mark.asyncio
    async def test_allocation_gives_up_after_max_attempts(self, db_session, monkeypatch):
        org = await make_org(db_session, "acme-corp")
        status = await _status(db_session, org, "Open")
        db_session.add(Ticket(
            organization_id=org.id, title="Taken", description="Token owner", status_id=status.id,
            public_token="AAAAAAAA",
        ))
        await db_session.commit()

        calls = []

        def _always_taken():
            calls.append(1)
            return "AAAAAAAA"

        monkeypatch.setattr(workflow, "generate_public_token", _always_taken)
        with pytest.raises(TokenAllocationError) as exc_info:
            await workflow.allocate_public_token(db_session)
        assert exc_info.value.status_code == 503
        assert len(calls) == workflow.MAX_TOKEN_ATTEMPTS


@pytest.mark.asyncio
async def test_public_submission_is_auto_assigned_to_first_in_queue(client, db_session, helpdesk, sent_mail):
    r = await client.post(
        "/api/tickets/public",
        json={
            "title": "Printer broken",
            "description": "The second floor printer jams on every page.",
            "submitterName": "Dana",
            "submitterEmail": "Dana@Example.com",
            "categoryId": helpdesk["hardware"].id,
        },
        headers={"X-Organization-Slug": "acme-corp"},
    )
    assert r.status_code == 201
    body = r.json()
    assert TOKEN_PATTERN.match(body["publicToken"])
    assert body["assignedTo"] == helpdesk["first"].id
    assert body["userId"] is None
    assert body["submitterEmail"] == "dana@example.com"

    assigned = await _notifications(db_session, type="TICKET_ASSIGNED")
    assert sorted(n.user_id for n in assigned) == sorted([helpdesk["first"].id, helpdesk["second"].id])
    assert len(await _notifications(db_session, helpdesk["first"].id, "TICKET_ASSIGNED")) == 1

    assert [m["recipient"] for m in sent_mail.of_kind("ticket_submitted")] == ["dana@example.com"]
    assert sorted(m["recipient"] for m in sent_mail.of_kind("ticket_assigned")) == [
        "first@acme.test",
        "second@acme.test",
    ]
    submitted = sent_mail.of_kind("ticket_submitted")[0]["variables"]
    assert submitted["reference"] == body["publicToken"]
    assert "/org/acme-corp/track?token=" in submitted["tracking_url"]

    actions = [row.action for row in await _activity(db_session, body["id"])]
    assert actions == ["TICKET_CREATED"]


@pytest.mark.asyncio
async def test_public_tracking_view(client, db_session, helpdesk):
    r = await client.post(
        "/api/tickets/public",
        json={
            "title": "VPN down",
            "description": "Cannot reach the office network from home.",
            "submitterName": "Dana",
            "submitterEmail": "dana@example.com",
        },
        headers={"X-Organization-Slug": "acme-corp"},
    )
    token = r.json()["publicToken"]

    r = await client.get("/api/tickets/public", params={"token": token.lower(), "org": "acme-corp"})
    assert r.status_code == 200
    view = r.json()
    assert view["title"] == "VPN down"
    assert view["status"]["name"] == "Open"
    assert view["comments"] == []
    assert "submitterEmail" not in view

    assert (await client.get("/api/tickets/public", params={"org": "acme-corp"})).status_code == 400
    r = await client.get("/api/tickets/public", params={"token": "ZZZZZZZZ", "org": "acme-corp"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_signed_in_ticket_has_no_public_token(client, db_session, helpdesk, sent_mail):
    member = helpdesk["member"]
    r = await client.post(
        "/api/tickets",
        json={"title": "Laptop slow", "description": "Takes ten minutes to boot up.", "priority": "HIGH"},
        headers=auth_headers(member),
    )
    assert r.status_code == 201
    body = r.json()
    assert body["publicToken"] is None
    assert body["userId"] == member.id
    assert body["assignedTo"] is None
    assert body["priority"] == "HIGH"
    assert body["status"]["name"] == "Open"

    created = await _notifications(db_session, member.id, "TICKET_CREATED")
    assert len(created) == 1
    assert [m["recipient"] for m in sent_mail.of_kind("ticket_submitted")] == ["member@acme.test"]


@pytest.mark.asyncio
async def test_category_from_another_tenant_is_rejected(client, db_session, helpdesk):
    other = await make_org(db_session, "other-org")
    foreign = await make_category(db_session, other, "Foreign")

    r = await client.post(
        "/api/tickets",
        json={"title": "Wrong queue", "description": "Category belongs elsewhere.", "categoryId": foreign.id},
        headers=auth_headers(helpdesk["member"]),
    )
    assert r.status_code == 404
    assert r.json()["detail"] == "Category not found in this organization"


@pytest.mark.asyncio
async def test_every_queued_assignee_is_notified(db_session, sent_mail):
    org = await make_org(db_session, "big-org")
    agents = [await make_user(db_session, f"agent{i}@big.test", name=f"Agent {i}") for i in range(4)]
    for agent in agents:
        await add_member(db_session, agent, org)
    category = await make_category(db_session, org, "Network", assignees=agents)

    ticket = await workflow.create_ticket(
        db_session,
        OrganizationRef.from_model(org),
        title="Switch down",
        description="Core switch lost power overnight.",
        category_id=category.id,
        submitter=workflow.PublicSubmitter(name="Sam", email="sam@example.com"),
    )
    assert ticket.assigned_to == agents[0].id
    assigned = await _notifications(db_session, type="TICKET_ASSIGNED")
    assert len(assigned) == len(agents)
    assert {n.user_id for n in assigned} == {a.id for a in agents}


@pytest.mark.asyncio
async def test_create_requires_exactly_one_creator(db_session):
    org = OrganizationRef(id="x", name="X", slug="x")
    with pytest.raises(ValueError):
        await workflow.create_ticket(db_session, org, title="abc", description="0123456789")


@pytest.mark.asyncio
async def test_status_change_notifies_owner_and_logs_names(client, db_session, helpdesk, sent_mail):
    member, admin = helpdesk["member"], helpdesk["admin"]
    r = await client.post(
        "/api/tickets",
        json={"title": "Monitor flickers", "description": "Flickers whenever the fan spins up."},
        headers=auth_headers(member),
    )
    ticket_id = r.json()["id"]
    in_progress = await _status(db_session, helpdesk["org"], "In Progress")

    r = await client.put(
        f"/api/tickets/{ticket_id}",
        json={"statusId": in_progress.id, "priority": "URGENT"},
        headers=auth_headers(admin),
    )
    assert r.status_code == 200
    assert r.json()["statusId"] == in_progress.id

    changed = await _notifications(db_session, member.id, "TICKET_STATUS_CHANGED")
    assert len(changed) == 1
    mails = sent_mail.of_kind("ticket_status_changed")
    assert len(mails) == 1
    assert mails[0]["variables"]["old_status"] == "Open"
    assert mails[0]["variables"]["new_status"] == "In Progress"

    rows = {row.field: row for row in await _activity(db_session, ticket_id) if row.field}
    assert rows["status"].action == "STATUS_CHANGED"
    assert (rows["status"].old_value, rows["status"].new_value) == ("Open", "In Progress")
    assert (rows["priority"].old_value, rows["priority"].new_value) == ("MEDIUM", "URGENT")


@pytest.mark.asyncio
async def test_unchanged_update_writes_nothing(client, db_session, helpdesk):
    member = helpdesk["member"]
    r = await client.post(
        "/api/tickets",
        json={"title": "Keyboard", "description": "Some keys do not respond."},
        headers=auth_headers(member),
    )
    ticket_id = r.json()["id"]
    before = len(await _activity(db_session, ticket_id))

    r = await client.put(f"/api/tickets/{ticket_id}", json={"title": "Keyboard"}, headers=auth_headers(member))
    assert r.status_code == 200
    assert len(await _activity(db_session, ticket_id)) == before


@pytest.mark.asyncio
async def test_category_change_auto_assigns_unassigned_ticket(client, db_session, helpdesk, sent_mail):
    member, admin = helpdesk["member"], helpdesk["admin"]
    r = await client.post(
        "/api/tickets",
        json={"title": "Dock broken", "description": "USB-C dock stopped charging."},
        headers=auth_headers(member),
    )
    ticket_id = r.json()["id"]

    r = await client.put(
        f"/api/tickets/{ticket_id}",
        json={"categoryId": helpdesk["hardware"].id},
        headers=auth_headers(admin),
    )
    assert r.status_code == 200
    assert r.json()["assignedTo"] == helpdesk["first"].id
    assigned = await _notifications(db_session, type="TICKET_ASSIGNED")
    assert {n.user_id for n in assigned} == {helpdesk["first"].id, helpdesk["second"].id}


@pytest.mark.asyncio
async def test_assigning_non_member_is_rejected(client, db_session, helpdesk):
    outsider = await make_user(db_session, "outsider@else.test")
    r = await client.post(
        "/api/tickets",
        json={"title": "Chair", "description": "Chair wheel came off."},
        headers=auth_headers(helpdesk["member"]),
    )
    r = await client.put(
        f"/api/tickets/{r.json()['id']}",
        json={"assignedTo": outsider.id},
        headers=auth_headers(helpdesk["admin"]),
    )
    assert r.status_code == 404
    assert r.json()["detail"] == "User is not a member of this organization"


@pytest.mark.asyncio
async def test_members_only_see_their_own_tickets(client, db_session, helpdesk):
    member, other = helpdesk["member"], helpdesk["second"]
    await client.post(
        "/api/tickets",
        json={"title": "Mine", "description": "Raised by the member."},
        headers=auth_headers(member),
    )
    r = await client.post(
        "/api/tickets",
        json={"title": "Theirs", "description": "Raised by someone else."},
        headers=auth_headers(other),
    )
    theirs = r.json()["id"]

    r = await client.get("/api/tickets", headers=auth_headers(member))
    assert [t["title"] for t in r.json()] == ["Mine"]
    assert (await client.get(f"/api/tickets/{theirs}", headers=auth_headers(member))).status_code == 403

    r = await client.get("/api/tickets", headers=auth_headers(helpdesk["admin"]))
    assert {t["title"] for t in r.json()} == {"Mine", "Theirs"}


@pytest.mark.asyncio
async def test_comment_notifies_owner_and_assignee_but_not_author(client, db_session, helpdesk, sent_mail):
    member, first = helpdesk["member"], helpdesk["first"]
    r = await client.post(
        "/api/tickets",
        json={
            "title": "Scanner",
            "description": "Scanner produces blank pages.",
            "categoryId": helpdesk["hardware"].id,
        },
        headers=auth_headers(member),
    )
    ticket_id = r.json()["id"]

    r = await client.post(
        f"/api/tickets/{ticket_id}/comments",
        json={"content": "Looking into it now."},
        headers=auth_headers(first),
    )
    assert r.status_code == 201

    comment_notes = await _notifications(db_session, type="COMMENT_ADDED")
    assert [n.user_id for n in comment_notes] == [member.id]
    assert [m["recipient"] for m in sent_mail.of_kind("ticket_comment")] == ["member@acme.test"]

    r = await client.post(
        f"/api/tickets/{ticket_id}/comments",
        json={"content": "Thanks!"},
        headers=auth_headers(member),
    )
    assert r.status_code == 201
    assert len(sent_mail.of_kind("ticket_comment")) == 1


@pytest.mark.asyncio
async def test_get_ticket_outside_tenant_is_404(db_session):
    org = await make_org(db_session, "acme-corp")
    with pytest.raises(NotFound):
        await workflow.get_ticket(db_session, org.id, "does-not-exist")


@pytest.mark.asyncio
async def test_assignee_can_read_but_not_edit(client, db_session, helpdesk, sent_mail):
    member, first = helpdesk["member"], helpdesk["first"]
    r = await client.post(
        "/api/tickets",
        json={"title": "Printer jam", "description": "Paper stuck in tray two.", "categoryId": helpdesk["hardware"].id},
        headers=auth_headers(member),
    )
    ticket_id = r.json()["id"]
    assert r.json()["assignedTo"] == first.id

    assert (await client.get(f"/api/tickets/{ticket_id}", headers=auth_headers(first))).status_code == 200
    r = await client.put(
        f"/api/tickets/{ticket_id}",
        json={"title": "Rewritten by the agent", "assignedTo": None},
        headers=auth_headers(first),
    )
    assert r.status_code == 403
    assert r.json()["detail"] == "Access denied"

    ticket = await db_session.get(Ticket, ticket_id)
    await db_session.refresh(ticket)
    assert (ticket.title, ticket.assigned_to) == ("Printer jam", first.id)


def _missing(model, column):
    """Factory building ``model`` rows with ``column`` left null, so the insert fails."""

    def build(**fields):
        fields[column] = None
        return model(**fields)

    return build


@pytest.mark.asyncio
async def test_failed_side_effect_writes_do_not_fail_the_ticket(
    client, db_session, helpdesk, sent_mail, monkeypatch
):
    monkeypatch.setattr(activity, "ActivityLog", _missing(ActivityLog, "action"))
    monkeypatch.setattr(notifications, "Notification", _missing(Notification, "message"))
    member, admin = helpdesk["member"], helpdesk["admin"]

    r = await client.post(
        "/api/tickets",
        json={"title": "Projector", "description": "No image on the wall.", "categoryId": helpdesk["hardware"].id},
        headers=auth_headers(member),
    )
    assert r.status_code == 201
    assert r.json()["title"] == "Projector"
    assert r.json()["assignedTo"] == helpdesk["first"].id
    ticket_id = r.json()["id"]
    assert [m["recipient"] for m in sent_mail.of_kind("ticket_submitted")] == ["member@acme.test"]

    resolved = await _status(db_session, helpdesk["org"], "Resolved")
    r = await client.put(f"/api/tickets/{ticket_id}", json={"statusId": resolved.id}, headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json()["statusId"] == resolved.id
    assert len(sent_mail.of_kind("ticket_status_changed")) == 1

    assert await _activity(db_session, ticket_id) == []
    assert await _notifications(db_session) == []
    assert await db_session.scalar(select(Ticket.title).where(Ticket.id == ticket_id)) == "Projector"


@pytest.mark.asyncio
async def test_public_tracking_requires_a_token(client, db_session, helpdesk):
    r = await client.get("/api/tickets/public", params={"org": "acme-corp"})
    assert r.status_code == 400
    assert r.json() == {
        "detail": "Tracking token is required",
        "errors": [{"field": "token", "message": "Tracking token is required"}],
    }
