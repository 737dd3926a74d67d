"""Tenant reports and the platform console."""

from __future__ import annotations

import csv
import io
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from helpdesk.api.reports import CSV_HEADERS, resolution_stats
from helpdesk.models.category import Category
from helpdesk.models.organization import MembershipRole, Organization, OrganizationStatus, UserOrganization
from helpdesk.models.ticket import Ticket, TicketStatus
from helpdesk.models.user import GlobalRole
from helpdesk.tests.factories import add_member, auth_headers, make_category, make_org, make_user
from helpdesk.utils.time import utc_now


async def _status(session, org, name):
    return await session.scalar(
        select(TicketStatus).where(TicketStatus.organization_id == org.id, TicketStatus.name == name)
    )


@pytest_asyncio.fixture
async def reporting(db_session):
    org = await make_org(db_session, "acme-corp")
    admin = await make_user(db_session, "admin@acme.test", name="Admin")
    agent = await make_user(db_session, "agent@acme.test", name="Agent")
    await add_member(db_session, admin, org, role=MembershipRole.ADMIN)
    await add_member(db_session, agent, org)
    hardware = await make_category(db_session, org, "Hardware")

    opened = await _status(db_session, org, "Open")
    resolved = await _status(db_session, org, "Resolved")
    closed = await _status(db_session, org, "Closed")
    start = utc_now() - timedelta(days=2)
    rows = [
        ("Printer", opened, "HIGH", None, None),
        ("Mouse", resolved, "LOW", hardware.id, agent.id),
        ("Screen", closed, "LOW", hardware.id, agent.id),
    ]
    for offset, (title, status, priority, category_id, assignee) in enumerate(rows):
        created = start + timedelta(hours=offset)
        db_session.add(Ticket(
            organization_id=org.id,
            title=title,
            description=f"{title} needs attention",
            status_id=status.id,
            priority=priority,
            category_id=category_id,
            user_id=admin.id,
            assigned_to=assignee,
            created_at=created,
            updated_at=created + timedelta(hours=2 * (offset + 1)),
        ))
    await db_session.commit()
    return {"org": org, "admin": admin, "agent": agent, "hardware": hardware}


def test_resolution_stats():
    assert resolution_stats([]) == {"avg": 0.0, "median": 0.0}
    assert resolution_stats([1.0, 2.0, 9.0]) == {"avg": 4.0, "median": 2.0}


@pytest.mark.asyncio
async def test_analytics(client, reporting):
    r = await client.get("/api/reports/analytics", headers=auth_headers(reporting["admin"]))
    assert r.status_code == 200
    data = r.json()

    assert data["totalTickets"] == 3
    by_priority = {row["priority"]: row["count"] for row in data["ticketsByPriority"]}
    assert by_priority == {"HIGH": 1, "LOW": 2}
    by_status = {row["status"]["name"]: row["count"] for row in data["ticketsByStatus"]}
    assert by_status == {"Open": 1, "Resolved": 1, "Closed": 1}
    assert [(row["user"]["email"], row["count"]) for row in data["ticketsByAssignee"]] == [("agent@acme.test", 2)]

    # Resolved after 4h and 6h.
    assert data["avgResolutionTime"] == 5.0
    assert data["medianResolutionTime"] == 5.0
    assert sum(day["total"] for day in data["ticketsOverTime"]) == 3


@pytest.mark.asyncio
async def test_reports_are_admin_only(client, reporting):
    r = await client.get("/api/reports/analytics", headers=auth_headers(reporting["agent"]))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_csv_export(client, reporting):
    r = await client.get("/api/reports/export", params={"priority": "low"}, headers=auth_headers(reporting["admin"]))
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "attachment; filename=tickets-" in r.headers["content-disposition"]

    rows = list(csv.reader(io.StringIO(r.text)))
    assert rows[0] == CSV_HEADERS
    assert sorted(row[1] for row in rows[1:]) == ["Mouse", "Screen"]
    assert {row[4] for row in rows[1:]} == {"Hardware"}
    assert {row[6] for row in rows[1:]} == {"Agent"}


@pytest.mark.asyncio
async def test_json_export(client, reporting):
    r = await client.get("/api/reports/export", params={"format": "json"}, headers=auth_headers(reporting["admin"]))
    assert r.status_code == 200
    assert {t["title"] for t in r.json()} == {"Printer", "Mouse", "Screen"}


# ── Platform console ──────────────────────────────────────────

@pytest_asyncio.fixture
async def root(db_session):
    return await make_user(db_session, "root@platform.test", role=GlobalRole.SUPERADMIN)


@pytest.mark.asyncio
async def test_admin_organization_listing(client, reporting, root):
    r = await client.get("/api/admin/organizations", headers=auth_headers(root))
    assert r.status_code == 200
    [org] = r.json()
    assert org["counts"] == {"users": 2, "tickets": 3, "categories": 1}
    assert org["admin"]["email"] == "admin@acme.test"


@pytest.mark.asyncio
async def test_admin_categories_and_analytics(client, db_session, reporting, root):
    r = await client.get("/api/admin/categories", headers=auth_headers(root))
    [category] = r.json()
    assert category["organization"]["slug"] == "acme-corp"
    assert category["counts"]["tickets"] == 2

    org = reporting["org"]
    org.expiry_date = utc_now() - timedelta(days=1)
    await db_session.commit()

    r = await client.get("/api/admin/analytics", headers=auth_headers(root))
    overview = r.json()["overview"]
    assert overview["totalOrganizations"] == 1
    assert overview["totalTickets"] == 3
    assert overview["expiredOrganizations"] == 1
    assert r.json()["usersByRole"] == {"USER": 2, "SUPERADMIN": 1}
    assert r.json()["ticketsByStatus"] == {"Open": 1, "Resolved": 1, "Closed": 1}


@pytest.mark.asyncio
async def test_admin_updates_organization_status(client, reporting, root):
    org_id = reporting["org"].id
    r = await client.put(
        f"/api/admin/organizations/{org_id}/status",
        json={"status": "SUSPENDED", "expiryDate": None},
        headers=auth_headers(root),
    )
    assert r.status_code == 200
    assert r.json()["status"] == OrganizationStatus.SUSPENDED.value
    assert r.json()["expiryDate"] is None

    r = await client.put("/api/admin/organizations/missing/status", json={"status": "ACTIVE"}, headers=auth_headers(root))
    assert r.status_code == 404
    assert r.json()["detail"] == "Organization not found"


@pytest.mark.asyncio
async def test_admin_deletes_organization_with_its_data(client, db_session, reporting, root):
    org_id = reporting["org"].id
    r = await client.delete(f"/api/admin/organizations/{org_id}", headers=auth_headers(root))
    assert r.status_code == 200
    assert r.json()["message"] == "Organization deleted successfully"

    assert await db_session.scalar(select(Organization.id)) is None
    assert await db_session.scalar(select(Ticket.id)) is None
    assert await db_session.scalar(select(Category.id)) is None
    assert await db_session.scalar(select(TicketStatus.id)) is None
    assert await db_session.scalar(select(UserOrganization.id)) is None
