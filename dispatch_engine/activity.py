"""Audit trail writers. Entries are write-once; nothing here updates or deletes."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import resolve_now
from .models import Activity, ActivityLogEntry, LogLevel


async def record_log(
    session: AsyncSession,
    tenant_id: str,
    *,
    source: str,
    action: str,
    message: str,
    level: LogLevel = LogLevel.INFO,
    metadata: dict[str, Any] | None = None,
    task_id: str | None = None,
    agent_id: str | None = None,
    now: int | None = None,
) -> ActivityLogEntry:
    """Append an operational log entry."""
    entry = ActivityLogEntry(
        tenant_id=tenant_id,
        timestamp=resolve_now(now),
        level=level,
        source=source,
        action=action,
        message=message,
        metadata_=metadata,
        task_id=task_id,
        agent_id=agent_id,
    )
    session.add(entry)
    await session.flush()
    return entry


async def record_activity(
    session: AsyncSession,
    tenant_id: str,
    *,
    type: str,
    agent_id: str,
    message: str,
    target_id: str | None = None,
    now: int | None = None,
) -> Activity:
    """Append an entry to an agent's activity feed."""
    activity = Activity(
        tenant_id=tenant_id,
        type=type,
        agent_id=agent_id,
        message=message,
        target_id=target_id,
        created_at=resolve_now(now),
    )
    session.add(activity)
    await session.flush()
    return activity


async def get_recent_log(
    session: AsyncSession,
    tenant_id: str,
    *,
    limit: int = 20,
    level: LogLevel | None = None,
    source: str | None = None,
) -> list[ActivityLogEntry]:
    """Newest-first log entries."""
    query = select(ActivityLogEntry).where(ActivityLogEntry.tenant_id == tenant_id)
    if level is not None:
        query = query.where(ActivityLogEntry.level == level)
    if source is not None:
        query = query.where(ActivityLogEntry.source == source)
    query = query.order_by(ActivityLogEntry.timestamp.desc()).limit(limit)

    result = await session.execute(query)
    return list(result.scalars().all())


async def get_task_activities(
    session: AsyncSession, tenant_id: str, task_id: str
) -> list[Activity]:
    result = await session.execute(
        select(Activity)
        .where(Activity.tenant_id == tenant_id, Activity.target_id == task_id)
        .order_by(Activity.created_at)
    )
    return list(result.scalars().all())
