#!/usr/bin/env python3
"""Seed a local database with demo tenants, users, categories and tickets.

Wipes the help desk tables first. Intended for development databases only.
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import timedelta

from sqlalchemy import delete

from helpdesk.config import settings
from helpdesk.database import Base, async_session, engine, load_models
from helpdesk.models.activity import ActivityLog
from helpdesk.models.category import Category, CategoryAssignment
from helpdesk.models.notification import Notification
from helpdesk.models.organization import MembershipRole, Organization, UserOrganization
from helpdesk.models.ticket import Attachment, Comment, Ticket, TicketStatus, TimeEntry
from helpdesk.models.user import GlobalRole, LoginOTP, PasswordReset, User
from helpdesk.security import hash_password
from helpdesk.services.ticket_workflow import generate_public_token, seed_default_statuses
from helpdesk.utils.time import utc_in, utc_now

# Children first; SQLite does not cascade.
WIPE_ORDER = (
    ActivityLog, Notification, TimeEntry, Attachment, Comment, Ticket, CategoryAssignment,
    Category, TicketStatus, UserOrganization, Organization, PasswordReset, LoginOTP, User,
)

USERS = (
    ("superadmin@ticketing.com", "Super Admin", GlobalRole.SUPERADMIN, "superadmin123"),
    ("admin1@ticketing.com", "Admin One", GlobalRole.ADMIN, "admin123"),
    ("admin2@ticketing.com", "Admin Two", GlobalRole.ADMIN, "admin123"),
    ("admin3@ticketing.com", "Admin Three", GlobalRole.ADMIN, "admin123"),
    ("john@example.com", "John Doe", GlobalRole.USER, "user123"),
    ("jane@example.com", "Jane Smith", GlobalRole.USER, "user123"),
)

ORGANIZATIONS = (
    ("Acme Corporation", "acme-corp", "acme", "admin1@ticketing.com"),
    ("Tech Solutions Inc", "tech-solutions", "tech", "admin2@ticketing.com"),
    ("Digital Innovations", "digital-innovations", "digital", "admin3@ticketing.com"),
)

MEMBERS = (
    ("john@example.com", "acme-corp"),
    ("jane@example.com", "acme-corp"),
    ("john@example.com", "tech-solutions"),
)

CATEGORIES = (
    ("acme-corp", "Technical Support", "الدعم الفني"),
    ("acme-corp", "Billing", "الفواتير"),
    ("acme-corp", "Feature Request", "طلب ميزة"),
    ("tech-solutions", "Bug Report", "تقرير خطأ"),
    ("digital-innovations", "General Inquiry", "استفسار عام"),
    ("digital-innovations", "Sales", "المبيعات"),
)

# (org, title, description, status, priority, category, reporter, assignee)
TICKETS = (
    ("acme-corp", "Unable to login to dashboard",
     "I am unable to login to the dashboard. Getting an error message.",
     "Open", "HIGH", "Technical Support", "john@example.com", "admin1@ticketing.com"),
    ("acme-corp", "Payment processing issue",
     "The payment is not being processed correctly for subscription renewals.",
     "In Progress", "URGENT", "Billing", "jane@example.com", "john@example.com"),
    ("acme-corp", "Add dark mode feature",
     "It would be great to have a dark mode option for the application.",
     "Open", "LOW", "Feature Request", "john@example.com", None),
    ("tech-solutions", "Application crashes on mobile",
     "The application crashes when opening on mobile devices.",
     "Resolved", "HIGH", "Bug Report", "jane@example.com", "admin2@ticketing.com"),
    ("acme-corp", "Email notifications not working",
     "I am not receiving email notifications for ticket updates.",
     "Open", "MEDIUM", "Technical Support", "john@example.com", None),
)


async def seed() -> dict:
    load_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        for model in WIPE_ORDER:
            await session.execute(delete(model))

        users = {}
        for email, name, role, password in USERS:
            users[email] = User(email=email, name=name, role=role.value, hashed_password=hash_password(password))
        session.add_all(users.values())

        orgs, statuses = {}, {}
        for name, slug, subdomain, _ in ORGANIZATIONS:
            orgs[slug] = Organization(
                name=name, slug=slug, subdomain=subdomain, join_date=utc_now(), expiry_date=utc_in(days=365)
            )
        session.add_all(orgs.values())
        await session.flush()

        for _, slug, _, admin_email in ORGANIZATIONS:
            session.add(UserOrganization(
                user_id=users[admin_email].id, organization_id=orgs[slug].id, role=MembershipRole.ADMIN.value
            ))
            statuses[slug] = {s.name: s for s in seed_default_statuses(session, orgs[slug].id)}
        for email, slug in MEMBERS:
            session.add(UserOrganization(user_id=users[email].id, organization_id=orgs[slug].id))

        categories = {}
        for slug, name, name_ar in CATEGORIES:
            categories[(slug, name)] = Category(organization_id=orgs[slug].id, name=name, name_ar=name_ar)
        session.add_all(categories.values())
        await session.flush()

        support = categories[("acme-corp", "Technical Support")]
        session.add(CategoryAssignment(
            user_id=users["admin1@ticketing.com"].id, category_id=support.id, organization_id=support.organization_id
        ))

        start = utc_now() - timedelta(days=len(TICKETS))
        for offset, (slug, title, description, status, priority, category, reporter, assignee) in enumerate(TICKETS):
            created = start + timedelta(days=offset)
            session.add(Ticket(
                organization_id=orgs[slug].id,
                title=title,
                description=description,
                status_id=statuses[slug][status].id,
                priority=priority,
                category_id=categories[(slug, category)].id,
                user_id=users[reporter].id,
                assigned_to=users[assignee].id if assignee else None,
                created_at=created,
                updated_at=created + timedelta(hours=6),
            ))

        session.add(Ticket(
            organization_id=orgs["acme-corp"].id,
            title="Projector in room 4 has no signal",
            description="Submitted from the public form by a visitor.",
            status_id=statuses["acme-corp"]["Open"].id,
            category_id=support.id,
            submitter_name="Walk-in Guest",
            submitter_email="guest@example.com",
            assigned_to=users["admin1@ticketing.com"].id,
            public_token=generate_public_token(),
        ))
        await session.commit()

    return {
        "users": len(USERS),
        "organizations": len(ORGANIZATIONS),
        "categories": len(CATEGORIES),
        "tickets": len(TICKETS) + 1,
    }


def main() -> int:
    if settings.is_production:
        print(json.dumps({"ok": False, "error": "refusing to seed a production database"}))
        return 1
    counts = asyncio.run(seed())
    print(json.dumps({"ok": True, "database": settings.database_url.split("@")[-1], **counts}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
