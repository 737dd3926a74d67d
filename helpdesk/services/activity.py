"""Ticket activity log writer.

Activity rows are best-effort: they are written after the ticket change is
committed, inside a savepoint. A failed write rolls back only that savepoint,
so instances already loaded in the session stay usable, and is logged instead
of failing the request.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.models.activity import ActivityLog

logger = logging.getLogger("helpdesk.activity")

# Order matters: one row per changed field, in this order.
TRACKED_FIELDS = ("status", "priority", "assigned_to", "category_id", "title", "description")


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any

    @property
    def action(self) -> str:
        return f"{self.field.upper()}_CHANGED"


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def diff_fields(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    fields: Iterable[str] = TRACKED_FIELDS,
) -> list[FieldChange]:
    """Changes between two snapshots, only for fields present in ``after``."""
    changes = []
    for field in fields:
        if field not in after:
            continue
        if before.get(field) != after[field]:
            changes.append(FieldChange(field, before.get(field), after[field]))
    return changes


async def _persist(session: AsyncSession, rows: list[ActivityLog]) -> bool:
    if not rows:
        return True
    try:
        async with session.begin_nested():
            session.add_all(rows)
    except SQLAlchemyError:
        logger.exception("failed to write activity log", extra={"ticket_id": rows[0].ticket_id})
        return False
    await session.commit()
    return True


async def record_action(
    session: AsyncSession,
    ticket_id: str,
    user_id: Optional[str],
    action: str,
    metadata: Optional[dict] = None,
) -> bool:
    row = ActivityLog(
        ticket_id=ticket_id,
        user_id=user_id,
        action=action,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    return await _persist(session, [row])


async def record_changes(
    session: AsyncSession,
    ticket_id: str,
    user_id: Optional[str],
    changes: Iterable[FieldChange],
) -> bool:
    rows = [
        ActivityLog(
            ticket_id=ticket_id,
            user_id=user_id,
            action=change.action,
            field=change.field,
            old_value=_as_text(change.old_value),
            new_value=_as_text(change.new_value),
        )
        for change in changes
    ]
    return await _persist(session, rows)
