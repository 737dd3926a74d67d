"""Tenant reporting: ticket analytics and CSV/JSON export (org admins only)."""

from __future__ import annotations

import csv
import io
from collections import defaultdict
from datetime import datetime
from typing import Optional

import numpy as np
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.database import get_session
from helpdesk.models.category import Category, CategoryResponse
from helpdesk.models.ticket import StatusResponse, Ticket, TicketResponse, TicketStatus
from helpdesk.models.user import User, UserSummary
from helpdesk.tenancy import OrgAccess, require_org_admin
from helpdesk.utils.time import as_utc, utc_now

router = APIRouter(prefix="/api/reports", tags=["reports"])

RESOLVED_STATUS_NAMES = ("Resolved", "Closed")
CSV_HEADERS = ["ID", "Title", "Status", "Priority", "Category", "Created By", "Assigned To", "Created At", "Updated At"]


def _scoped(query, organization_id: str, start: Optional[datetime], end: Optional[datetime]):
    query = query.where(Ticket.organization_id == organization_id)
    if start:
        query = query.where(Ticket.created_at >= start)
    if end:
        query = query.where(Ticket.created_at <= end)
    return query


def resolution_stats(durations_hours: list[float]) -> dict:
    """Mean and median of resolution durations, rounded to 2 decimals."""
    if not durations_hours:
        return {"avg": 0.0, "median": 0.0}
    values = np.array(durations_hours, dtype=np.float64)
    return {
        "avg": round(float(np.mean(values)), 2),
        "median": round(float(np.median(values)), 2),
    }


async def _grouped(session: AsyncSession, column, organization_id, start, end) -> list[tuple]:
    query = _scoped(select(column, func.count(Ticket.id)), organization_id, start, end).group_by(column)
    return list((await session.execute(query)).all())


@router.get("/analytics")
async def analytics(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    org_id = access.organization_id

    statuses = {
        s.id: s for s in await session.scalars(select(TicketStatus).where(TicketStatus.organization_id == org_id))
    }
    categories = {
        c.id: c for c in await session.scalars(select(Category).where(Category.organization_id == org_id))
    }

    by_status = await _grouped(session, Ticket.status_id, org_id, start_date, end_date)
    by_priority = await _grouped(session, Ticket.priority, org_id, start_date, end_date)
    by_category = await _grouped(session, Ticket.category_id, org_id, start_date, end_date)
    by_assignee = [row for row in await _grouped(session, Ticket.assigned_to, org_id, start_date, end_date) if row[0]]

    assignee_ids = [row[0] for row in by_assignee]
    assignees = {
        u.id: u for u in await session.scalars(select(User).where(User.id.in_(assignee_ids)))
    } if assignee_ids else {}

    resolved_ids = [s.id for s in statuses.values() if s.name in RESOLVED_STATUS_NAMES]
    durations: list[float] = []
    if resolved_ids:
        rows = await session.execute(
            _scoped(select(Ticket.created_at, Ticket.updated_at), org_id, start_date, end_date)
            .where(Ticket.status_id.in_(resolved_ids))
        )
        for created_at, updated_at in rows.all():
            if created_at and updated_at:
                durations.append((as_utc(updated_at) - as_utc(created_at)).total_seconds() / 3600)
    resolution = resolution_stats(durations)

    per_day: dict[str, dict] = defaultdict(lambda: {"total": 0, "byStatus": defaultdict(int)})
    rows = await session.execute(
        _scoped(select(Ticket.created_at, Ticket.status_id), org_id, start_date, end_date).order_by(Ticket.created_at.asc())
    )
    for created_at, status_id in rows.all():
        bucket = per_day[as_utc(created_at).date().isoformat()]
        bucket["total"] += 1
        bucket["byStatus"][status_id] += 1

    total = await session.scalar(_scoped(select(func.count(Ticket.id)), org_id, start_date, end_date))

    return {
        "ticketsByStatus": [
            {
                "statusId": status_id,
                "count": count,
                "status": StatusResponse.serialize(statuses[status_id]) if status_id in statuses else None,
            }
            for status_id, count in by_status
        ],
        "ticketsByPriority": [{"priority": priority, "count": count} for priority, count in by_priority],
        "ticketsByCategory": [
            {
                "categoryId": category_id,
                "count": count,
                "category": CategoryResponse.serialize(categories[category_id]) if category_id in categories else None,
            }
            for category_id, count in by_category
        ],
        "ticketsByAssignee": [
            {
                "assignedTo": user_id,
                "count": count,
                "user": UserSummary.serialize(assignees[user_id]) if user_id in assignees else None,
            }
            for user_id, count in by_assignee
        ],
        "avgResolutionTime": resolution["avg"],
        "medianResolutionTime": resolution["median"],
        "ticketsOverTime": [
            {"date": day, "total": data["total"], "byStatus": dict(data["byStatus"])}
            for day, data in per_day.items()
        ],
        "totalTickets": total or 0,
    }


@router.get("/export")
async def export_tickets(
    format: str = "csv",
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    status: Optional[str] = None,
    priority: Optional[str] = None,
    access: OrgAccess = Depends(require_org_admin),
    session: AsyncSession = Depends(get_session),
):
    """Export the tenant's tickets; ``format=csv`` (default) or JSON otherwise."""
    query = _scoped(select(Ticket), access.organization_id, start_date, end_date)
    if status and status != "all":
        query = query.where(Ticket.status_id == status)
    if priority:
        query = query.where(Ticket.priority == priority.upper())
    tickets = list(await session.scalars(query.order_by(Ticket.created_at.desc())))

    if format != "csv":
        return [TicketResponse.serialize(t) for t in tickets]

    statuses = {
        s.id: s.name for s in await session.scalars(
            select(TicketStatus).where(TicketStatus.organization_id == access.organization_id)
        )
    }
    categories = {
        c.id: c.name for c in await session.scalars(
            select(Category).where(Category.organization_id == access.organization_id)
        )
    }
    user_ids = {uid for t in tickets for uid in (t.user_id, t.assigned_to) if uid}
    users = {
        u.id: u.name for u in await session.scalars(select(User).where(User.id.in_(user_ids)))
    } if user_ids else {}

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for ticket in tickets:
        writer.writerow([
            ticket.id,
            ticket.title,
            statuses.get(ticket.status_id, ""),
            ticket.priority,
            categories.get(ticket.category_id, "") if ticket.category_id else "",
            users.get(ticket.user_id) or ticket.submitter_email or "",
            users.get(ticket.assigned_to, "") if ticket.assigned_to else "",
            as_utc(ticket.created_at).isoformat(),
            as_utc(ticket.updated_at).isoformat(),
        ])

    filename = f"tickets-{int(utc_now().timestamp() * 1000)}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
