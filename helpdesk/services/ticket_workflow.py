"""Ticket creation/update workflow: tokens, auto-assignment and side-effect fan-out.

Every mutation commits the ticket row first. Activity rows, in-app
notifications and email are then attempted in that order; each is best-effort
and a failure there never undoes or fails the ticket change.

Auto-assignment gives the ticket to the first user in the category's
assignment queue (insertion order) and notifies everyone in the queue.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.errors import NotFound, TokenAllocationError
from helpdesk.models.activity import ActivityAction, ActivityLog
from helpdesk.models.category import Category, CategoryAssignment
from helpdesk.models.notification import Notification, NotificationType
from helpdesk.models.organization import UserOrganization
from helpdesk.models.ticket import Attachment, Comment, Ticket, TicketPriority, TicketStatus, TimeEntry
from helpdesk.models.user import User
from helpdesk.security import Actor
from helpdesk.services import activity, notifications
from helpdesk.services.activity import FieldChange
from helpdesk.services.mailer import tracking_link
from helpdesk.tenancy import OrgAccess, OrganizationRef
from helpdesk.workers.mail_dispatcher import MailDispatcher, dispatcher as default_dispatcher

logger = logging.getLogger("helpdesk.ticket_workflow")

PUBLIC_TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PUBLIC_TOKEN_LENGTH = 8
MAX_TOKEN_ATTEMPTS = 10
DEFAULT_LANG = "en"

# (name, Arabic name, color); order is the position in this tuple.
DEFAULT_STATUSES = (
    ("Open", "مفتوحة", "#3b82f6"),
    ("In Progress", "قيد التنفيذ", "#f59e0b"),
    ("Resolved", "تم الحل", "#10b981"),
    ("Closed", "مغلقة", "#6b7280"),
)


# ── Public tracking tokens ────────────────────────────────────

def generate_public_token() -> str:
    return "".join(secrets.choice(PUBLIC_TOKEN_ALPHABET) for _ in range(PUBLIC_TOKEN_LENGTH))


async def allocate_public_token(session: AsyncSession, attempts: int = MAX_TOKEN_ATTEMPTS) -> str:
    """Draw tokens until one is unused; raise TokenAllocationError after ``attempts`` collisions."""
    for _ in range(attempts):
        token = generate_public_token()
        taken = await session.scalar(select(Ticket.id).where(Ticket.public_token == token))
        if taken is None:
            return token
    logger.error("public token allocation exhausted after %s attempts", attempts)
    raise TokenAllocationError()


# ── Lookups ───────────────────────────────────────────────────

def seed_default_statuses(session: AsyncSession, organization_id: str) -> list[TicketStatus]:
    """Stage the default statuses for a new organization; the caller commits."""
    statuses = [
        TicketStatus(organization_id=organization_id, name=name, name_ar=name_ar, color=color, order=position)
        for position, (name, name_ar, color) in enumerate(DEFAULT_STATUSES)
    ]
    session.add_all(statuses)
    return statuses


async def default_status(session: AsyncSession, organization_id: str) -> TicketStatus:
    """Lowest-ordered status of the tenant, seeding the defaults when it has none."""
    result = await session.execute(
        select(TicketStatus)
        .where(TicketStatus.organization_id == organization_id)
        .order_by(TicketStatus.order.asc(), TicketStatus.created_at.asc())
        .limit(1)
    )
    status = result.scalar_one_or_none()
    if status is not None:
        return status

    statuses = seed_default_statuses(session, organization_id)
    await session.flush()
    return statuses[0]


async def get_status(session: AsyncSession, organization_id: str, status_id: str) -> TicketStatus:
    status = await session.scalar(
        select(TicketStatus).where(TicketStatus.id == status_id, TicketStatus.organization_id == organization_id)
    )
    if status is None:
        raise NotFound("Status not found")
    return status


async def get_category(session: AsyncSession, organization_id: str, category_id: str) -> Category:
    category = await session.scalar(
        select(Category).where(Category.id == category_id, Category.organization_id == organization_id)
    )
    if category is None:
        raise NotFound("Category not found in this organization")
    return category


async def get_ticket(session: AsyncSession, organization_id: str, ticket_id: str) -> Ticket:
    ticket = await session.scalar(
        select(Ticket).where(Ticket.id == ticket_id, Ticket.organization_id == organization_id)
    )
    if ticket is None:
        raise NotFound("Ticket not found")
    return ticket


async def get_member(session: AsyncSession, organization_id: str, user_id: str) -> User:
    user = await session.scalar(
        select(User)
        .join(UserOrganization, UserOrganization.user_id == User.id)
        .where(UserOrganization.organization_id == organization_id, User.id == user_id)
    )
    if user is None:
        raise NotFound("User is not a member of this organization")
    return user


async def category_assignees(session: AsyncSession, organization_id: str, category_id: str) -> list[User]:
    """Users queued on a category, in the order they were assigned."""
    result = await session.execute(
        select(User)
        .join(CategoryAssignment, CategoryAssignment.user_id == User.id)
        .where(
            CategoryAssignment.category_id == category_id,
            CategoryAssignment.organization_id == organization_id,
        )
        .order_by(CategoryAssignment.created_at.asc(), CategoryAssignment.id.asc())
    )
    return list(result.scalars())


async def submitter_contact(session: AsyncSession, ticket: Ticket) -> tuple[Optional[str], Optional[str]]:
    """(email, name) of whoever raised the ticket: the owning user or the public submitter."""
    if ticket.user_id:
        owner = await session.get(User, ticket.user_id)
        if owner is not None:
            return owner.email, owner.name
    return ticket.submitter_email, ticket.submitter_name


# ── Fan-out helpers ───────────────────────────────────────────

def _link_vars(ticket: Ticket, organization: OrganizationRef) -> dict:
    url, reference = tracking_link(ticket.id, ticket.public_token, organization.slug)
    return {"ticket_title": ticket.title, "tracking_url": url, "reference": reference}


async def _announce_assignment(
    session: AsyncSession,
    ticket: Ticket,
    organization: OrganizationRef,
    assignees: list[User],
    category_name: str,
    mail: MailDispatcher,
) -> None:
    await notifications.notify_users(
        session,
        [user.id for user in assignees],
        NotificationType.TICKET_ASSIGNED,
        "Ticket Assigned",
        f'You have been assigned to ticket "{ticket.title}".',
        ticket.id,
    )
    variables = {**_link_vars(ticket, organization), "category": category_name}
    for user in assignees:
        mail.enqueue("ticket_assigned", user.email, variables, DEFAULT_LANG)


# ── Creation ──────────────────────────────────────────────────

@dataclass(frozen=True)
class PublicSubmitter:
    name: str
    email: str


async def create_ticket(
    session: AsyncSession,
    organization: OrganizationRef,
    *,
    title: str,
    description: str,
    priority: TicketPriority = TicketPriority.MEDIUM,
    category_id: Optional[str] = None,
    actor: Optional[Actor] = None,
    submitter: Optional[PublicSubmitter] = None,
    mail: Optional[MailDispatcher] = None,
) -> Ticket:
    """Create a ticket for a signed-in actor, or for an anonymous ``submitter``.

    Anonymous tickets carry submitter name/email and a public tracking token;
    tickets raised by an actor carry neither.
    """
    if (actor is None) == (submitter is None):
        raise ValueError("exactly one of actor or submitter is required")
    mail = mail or default_dispatcher

    category = await get_category(session, organization.id, category_id) if category_id else None
    assignees = await category_assignees(session, organization.id, category.id) if category else []
    status = await default_status(session, organization.id)
    public_token = await allocate_public_token(session) if submitter else None

    ticket = Ticket(
        organization_id=organization.id,
        title=title,
        description=description,
        status_id=status.id,
        priority=TicketPriority(priority).value,
        category_id=category.id if category else None,
        user_id=actor.user_id if actor else None,
        submitter_name=submitter.name if submitter else None,
        submitter_email=submitter.email if submitter else None,
        assigned_to=assignees[0].id if assignees else None,
        public_token=public_token,
    )
    session.add(ticket)
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race for the tracking token between the check and the insert.
        await session.rollback()
        logger.warning("ticket insert rejected by a unique constraint", extra={"organization_id": organization.id})
        raise TokenAllocationError()
    await session.refresh(ticket)

    logger.info(
        "ticket created (public=%s, assignees=%s)",
        submitter is not None,
        len(assignees),
        extra={"organization_id": organization.id, "ticket_id": ticket.id},
    )

    await activity.record_action(
        session,
        ticket.id,
        actor.user_id if actor else None,
        ActivityAction.TICKET_CREATED.value,
        {"title": ticket.title, "priority": ticket.priority, "category_id": ticket.category_id},
    )

    if actor is not None:
        await notifications.notify_user(
            session,
            actor.user_id,
            NotificationType.TICKET_CREATED,
            "Ticket Created",
            f'Your ticket "{ticket.title}" has been created successfully.',
            ticket.id,
        )

    submitter_email, _ = await submitter_contact(session, ticket)
    mail.enqueue("ticket_submitted", submitter_email, _link_vars(ticket, organization), DEFAULT_LANG)

    if assignees:
        await _announce_assignment(session, ticket, organization, assignees, category.name, mail)

    return ticket


# ── Update ────────────────────────────────────────────────────

def _status_change(old: Optional[TicketStatus], new: Optional[TicketStatus]) -> FieldChange:
    return FieldChange("status", old.name if old else None, new.name if new else None)


async def update_ticket(
    session: AsyncSession,
    organization: OrganizationRef,
    ticket: Ticket,
    changes: dict[str, Any],
    actor: Actor,
    mail: Optional[MailDispatcher] = None,
) -> Ticket:
    """Apply a partial update. ``changes`` holds only the fields the caller sent."""
    mail = mail or default_dispatcher
    changes = dict(changes)

    if changes.get("title") is None:
        changes.pop("title", None)
    if changes.get("description") is None:
        changes.pop("description", None)
    if changes.get("priority") is None:
        changes.pop("priority", None)
    else:
        changes["priority"] = TicketPriority(changes["priority"]).value
    if changes.get("status_id") is None:
        changes.pop("status_id", None)

    old_status = await session.get(TicketStatus, ticket.status_id)
    new_status = old_status
    if "status_id" in changes:
        new_status = await get_status(session, organization.id, changes["status_id"])

    category: Optional[Category] = None
    if ticket.category_id:
        category = await session.get(Category, ticket.category_id)
    auto_assignees: list[User] = []
    if "category_id" in changes:
        category = None
        if changes["category_id"]:
            category = await get_category(session, organization.id, changes["category_id"])
            if not ticket.assigned_to and not changes.get("assigned_to"):
                auto_assignees = await category_assignees(session, organization.id, category.id)
                if auto_assignees:
                    changes["assigned_to"] = auto_assignees[0].id

    assignee: Optional[User] = None
    if changes.get("assigned_to"):
        assignee = await get_member(session, organization.id, changes["assigned_to"])

    before = {
        "status": ticket.status_id,
        "priority": ticket.priority,
        "assigned_to": ticket.assigned_to,
        "category_id": ticket.category_id,
        "title": ticket.title,
        "description": ticket.description,
    }
    after = {("status" if key == "status_id" else key): value for key, value in changes.items()}
    diff = activity.diff_fields(before, after)
    if not diff:
        return ticket

    for key, value in changes.items():
        setattr(ticket, key, value)
    await session.commit()
    await session.refresh(ticket)

    changed = {change.field for change in diff}
    diff = [_status_change(old_status, new_status) if c.field == "status" else c for c in diff]
    await activity.record_changes(session, ticket.id, actor.user_id, diff)

    submitter_email, _ = await submitter_contact(session, ticket)
    link_vars = _link_vars(ticket, organization)

    if "status" in changed:
        if ticket.user_id:
            await notifications.notify_user(
                session,
                ticket.user_id,
                NotificationType.TICKET_STATUS_CHANGED,
                "Ticket Status Updated",
                f'Ticket "{ticket.title}" status changed from '
                f"{old_status.name if old_status else '-'} to {new_status.name}.",
                ticket.id,
            )
        mail.enqueue(
            "ticket_status_changed",
            submitter_email,
            {
                **link_vars,
                "old_status": old_status.name if old_status else "-",
                "new_status": new_status.name,
            },
            DEFAULT_LANG,
        )

    if "assigned_to" in changed and ticket.assigned_to:
        recipients = auto_assignees or ([assignee] if assignee else [])
        await _announce_assignment(
            session, ticket, organization, recipients, category.name if category else "-", mail
        )

    return ticket


# ── Comments ──────────────────────────────────────────────────

async def add_comment(
    session: AsyncSession,
    organization: OrganizationRef,
    ticket: Ticket,
    author: User,
    content: str,
    mail: Optional[MailDispatcher] = None,
) -> Comment:
    """Add a comment, then notify owner and assignee and email the submitter (never the author)."""
    mail = mail or default_dispatcher

    comment = Comment(ticket_id=ticket.id, user_id=author.id, content=content)
    session.add(comment)
    await session.commit()
    await session.refresh(comment)

    await activity.record_action(
        session,
        ticket.id,
        author.id,
        ActivityAction.COMMENT_ADDED.value,
        {"comment_id": comment.id, "comment_author": author.name},
    )

    recipients = [uid for uid in (ticket.user_id, ticket.assigned_to) if uid and uid != author.id]
    await notifications.notify_users(
        session,
        recipients,
        NotificationType.COMMENT_ADDED,
        "New Comment",
        f'{author.name or "Someone"} added a comment to ticket "{ticket.title}".',
        ticket.id,
    )

    if ticket.user_id != author.id:
        submitter_email, _ = await submitter_contact(session, ticket)
        mail.enqueue(
            "ticket_comment",
            submitter_email,
            {**_link_vars(ticket, organization), "comment": content, "author": author.name or "Support Team"},
            DEFAULT_LANG,
        )

    return comment


async def count_tickets_with_status(session: AsyncSession, organization_id: str, status_id: str) -> int:
    return await session.scalar(
        select(func.count(Ticket.id)).where(
            Ticket.organization_id == organization_id, Ticket.status_id == status_id
        )
    ) or 0


def can_access_ticket(access: OrgAccess, ticket: Ticket) -> bool:
    """Admins see every ticket of the tenant; members only what they raised or hold."""
    return access.is_admin or access.user_id in (ticket.user_id, ticket.assigned_to)


def can_modify_ticket(access: OrgAccess, ticket: Ticket) -> bool:
    """Only the owner or an admin may edit; holding the ticket grants read access only."""
    return access.is_admin or ticket.user_id == access.user_id


async def purge_tickets(session: AsyncSession, ticket_ids: list[str]) -> list[str]:
    """Stage deletion of tickets and their dependants; returns stored filenames to unlink after commit."""
    if not ticket_ids:
        return []
    comment_ids = select(Comment.id).where(Comment.ticket_id.in_(ticket_ids))
    attachment_filter = or_(Attachment.ticket_id.in_(ticket_ids), Attachment.comment_id.in_(comment_ids))

    filenames = list((await session.scalars(select(Attachment.filename).where(attachment_filter))).all())
    await session.execute(delete(Attachment).where(attachment_filter))
    await session.execute(delete(TimeEntry).where(TimeEntry.ticket_id.in_(ticket_ids)))
    await session.execute(delete(ActivityLog).where(ActivityLog.ticket_id.in_(ticket_ids)))
    await session.execute(delete(Notification).where(Notification.ticket_id.in_(ticket_ids)))
    await session.execute(delete(Comment).where(Comment.ticket_id.in_(ticket_ids)))
    await session.execute(delete(Ticket).where(Ticket.id.in_(ticket_ids)))
    return filenames
