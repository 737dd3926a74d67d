"""In-app notification inbox."""

from __future__ import annotations

import pytest

from helpdesk.models.notification import NotificationType
from helpdesk.services.notifications import notify_user, notify_users
from helpdesk.tests.factories import auth_headers, make_user


@pytest.mark.asyncio
async def test_notify_users_deduplicates_and_skips_blanks(db_session):
    a = await make_user(db_session, "a@acme.test")
    b = await make_user(db_session, "b@acme.test")
    written = await notify_users(db_session, [a.id, b.id, a.id, None], NotificationType.TICKET_ASSIGNED, "T", "M")
    assert written == 2
    assert await notify_users(db_session, [], NotificationType.TICKET_ASSIGNED, "T", "M") == 0


@pytest.mark.asyncio
async def test_inbox_lifecycle(client, db_session):
    user = await make_user(db_session, "me@acme.test")
    stranger = await make_user(db_session, "you@acme.test")
    for i in range(3):
        assert await notify_user(db_session, user.id, NotificationType.COMMENT_ADDED, f"Title {i}", "Body", "t-1")
    await notify_user(db_session, stranger.id, NotificationType.COMMENT_ADDED, "Theirs", "Body")
    headers = auth_headers(user)

    r = await client.get("/api/notifications", headers=headers)
    assert r.status_code == 200
    inbox = r.json()
    assert len(inbox) == 3
    assert all(n["userId"] == user.id for n in inbox)

    r = await client.get("/api/notifications/unread-count", headers=headers)
    assert r.json() == {"count": 3}

    r = await client.put(f"/api/notifications/{inbox[0]['id']}/read", headers=headers)
    assert r.status_code == 200 and r.json()["read"] is True

    r = await client.get("/api/notifications", params={"unreadOnly": "true"}, headers=headers)
    assert len(r.json()) == 2

    r = await client.put("/api/notifications/read-all", headers=headers)
    assert r.status_code == 200
    assert (await client.get("/api/notifications/unread-count", headers=headers)).json() == {"count": 0}

    r = await client.delete(f"/api/notifications/{inbox[1]['id']}", headers=headers)
    assert r.status_code == 200
    assert len((await client.get("/api/notifications", headers=headers)).json()) == 2


@pytest.mark.asyncio
async def test_cannot_touch_someone_elses_notification(client, db_session):
    owner = await make_user(db_session, "owner@acme.test")
    intruder = await make_user(db_session, "intruder@acme.test")
    await notify_user(db_session, owner.id, NotificationType.TICKET_CREATED, "Mine", "Body")
    r = await client.get("/api/notifications", headers=auth_headers(owner))
    notification_id = r.json()[0]["id"]

    r = await client.put(f"/api/notifications/{notification_id}/read", headers=auth_headers(intruder))
    assert r.status_code == 404
    r = await client.delete(f"/api/notifications/{notification_id}", headers=auth_headers(intruder))
    assert r.status_code == 404
