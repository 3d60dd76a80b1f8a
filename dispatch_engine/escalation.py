"""Escalation routing along agent escalation paths, plus orchestration event logging.

Two escalation notions live here and are tracked independently:

* :func:`escalate` walks the last handler's ``escalation_path`` and appends an
  ``escalated`` history entry. It never touches ``escalation_attempts``.
* :func:`log_orchestration_event` records an event reported by an external
  orchestrator; only ``escalate`` events bump ``escalation_attempts``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .activity import record_activity, record_log
from .agents import AgentDirectory, AgentRef, ById, ByName
from .clock import resolve_now, start_of_day
from .errors import PreconditionFailedError
from .models import ActivityLogEntry, Agent, LogLevel, Task, TaskStatus

logger = logging.getLogger(__name__)

NO_ESCALATION_PATH = "No escalation path available"
ESCALATED_STATUS = "escalated"


class OrchestrationEventType(StrEnum):
    QA_GATE = "qa_gate"
    RETRY = "retry"
    ESCALATE = "escalate"
    HANDOFF = "handoff"
    DISPATCH = "dispatch"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class EscalationOutcome:
    task_id: str
    from_agent: str
    to_agent: str
    wrapped: bool
    history_length: int


# =============================================================================
# Path walking
# =============================================================================


def last_handler_ref(task: Task) -> AgentRef | None:
    """The most recent responsible party for a task.

    History entries name agents by free text; without history the last
    assignee (an agent id) is used.
    """
    history = task.escalation_history or []
    if history:
        return ByName(history[-1]["agentId"])
    assignees = task.assignee_ids or []
    if assignees:
        return ById(assignees[-1])
    return None


def next_in_path(path: list[str], current: str) -> tuple[str, bool]:
    """Next handler after ``current``; wraps to the head when at the end or absent.

    Returns ``(next_name, wrapped)``. Name comparison ignores case.
    """
    keys = [name.casefold() for name in path]
    try:
        index = keys.index(current.casefold())
    except ValueError:
        return path[0], True
    if index + 1 < len(path):
        return path[index + 1], False
    return path[0], True


async def escalate(
    session: AsyncSession,
    tenant_id: str,
    task_id: str,
    *,
    now: int | None = None,
) -> EscalationOutcome:
    """Hand a stuck task to the next agent in its last handler's escalation path."""
    task = await db.require_task(session, tenant_id, task_id)
    directory = await AgentDirectory.load(session, tenant_id)

    ref = last_handler_ref(task)
    if ref is None:
        raise PreconditionFailedError(NO_ESCALATION_PATH)

    handler = directory.resolve(ref)
    path = (handler.escalation_path if handler is not None else None) or []
    if handler is None or not path:
        raise PreconditionFailedError(NO_ESCALATION_PATH)

    next_name, wrapped = next_in_path(path, handler.name)
    timestamp = resolve_now(now)

    task.escalation_history = [
        *(task.escalation_history or []),
        {"agentId": next_name, "timestamp": timestamp, "status": ESCALATED_STATUS},
    ]

    message = f'escalated "{task.title}" from {handler.name} to {next_name}'
    primary = directory.by_id(task.assignee_ids[0]) if task.assignee_ids else None
    if primary is not None:
        await record_activity(
            session,
            tenant_id,
            type="escalation",
            agent_id=primary.id,
            message=message,
            target_id=task.id,
            now=timestamp,
        )
    await record_log(
        session,
        tenant_id,
        source=handler.name,
        action="escalation:route",
        message=message,
        level=LogLevel.WARN,
        metadata={"fromAgent": handler.name, "toAgent": next_name, "wrapped": wrapped},
        task_id=task.id,
        agent_id=next_name,
        now=timestamp,
    )

    logger.info("Task %s escalated %s -> %s (tenant=%s)", task.id, handler.name, next_name, tenant_id)
    return EscalationOutcome(
        task_id=task.id,
        from_agent=handler.name,
        to_agent=next_name,
        wrapped=wrapped,
        history_length=len(task.escalation_history),
    )


# =============================================================================
# Orchestration events
# =============================================================================


def build_reason(
    event_type: OrchestrationEventType,
    *,
    decision: str | None = None,
    from_agent: str | None = None,
    to_agent: str | None = None,
    reason: str | None = None,
    feedback: str | None = None,
) -> str:
    parts: list[str] = []
    if decision:
        parts.append(f"decision: {decision}")
    if from_agent and to_agent:
        parts.append(f"{from_agent} → {to_agent}")
    elif to_agent:
        parts.append(f"→ {to_agent}")
    if reason:
        parts.append(reason)
    if feedback:
        parts.append(f"feedback: {feedback}")
    return " | ".join(parts) or event_type.value


def build_message(
    event_type: OrchestrationEventType,
    task_title: str,
    *,
    decision: str | None = None,
    from_agent: str | None = None,
    to_agent: str | None = None,
    reason: str | None = None,
    feedback: str | None = None,
) -> str:
    src = f" from {from_agent}" if from_agent else ""
    dst = f" → {to_agent}" if to_agent else ""
    why = f" - {reason}" if reason else ""

    match event_type:
        case OrchestrationEventType.QA_GATE:
            return f'QA gate on "{task_title}": {decision or "reviewed"}{why}'
        case OrchestrationEventType.RETRY:
            note = f": {feedback}" if feedback else ""
            return f'Retry "{task_title}"{dst}{note}'
        case OrchestrationEventType.ESCALATE:
            return f'Escalated "{task_title}"{src}{dst}{why}'
        case OrchestrationEventType.HANDOFF:
            return f'Handoff "{task_title}"{src}{dst}{why}'
        case OrchestrationEventType.DISPATCH:
            return f'Dispatched "{task_title}"{dst}{why}'
        case OrchestrationEventType.BLOCKED:
            note = f": {reason}" if reason else ""
            return f'Blocked "{task_title}"{note}'


async def log_orchestration_event(
    session: AsyncSession,
    tenant_id: str,
    task_id: str,
    agent_name: str,
    event_type: OrchestrationEventType | str,
    *,
    decision: str | None = None,
    from_agent: str | None = None,
    to_agent: str | None = None,
    reason: str | None = None,
    feedback: str | None = None,
    metadata: dict[str, Any] | None = None,
    now: int | None = None,
) -> Task:
    """Record an orchestration event on a task's history and the activity log."""
    event_type = OrchestrationEventType(event_type)
    task = await db.require_task(session, tenant_id, task_id)
    timestamp = resolve_now(now)
    details = {
        "decision": decision,
        "from_agent": from_agent,
        "to_agent": to_agent,
        "reason": reason,
        "feedback": feedback,
    }

    task.escalation_history = [
        *(task.escalation_history or []),
        {
            "agentId": agent_name,
            "timestamp": timestamp,
            "status": event_type.value,
            "reason": build_reason(event_type, **details),
        },
    ]
    if event_type == OrchestrationEventType.ESCALATE:
        task.escalation_attempts = (task.escalation_attempts or 0) + 1

    message = build_message(event_type, task.title, **details)
    await record_log(
        session,
        tenant_id,
        source=agent_name,
        action=f"orchestration:{event_type.value}",
        message=message,
        level=LogLevel.WARN if event_type == OrchestrationEventType.ESCALATE else LogLevel.INFO,
        metadata={
            "decision": decision,
            "fromAgent": from_agent,
            "toAgent": to_agent,
            "feedback": feedback,
            **(metadata or {}),
        },
        task_id=task.id,
        now=timestamp,
    )

    directory = await AgentDirectory.load(session, tenant_id)
    agent: Agent | None = directory.by_name(agent_name)
    if agent is not None:
        await record_activity(
            session,
            tenant_id,
            type="orchestration",
            agent_id=agent.id,
            message=message,
            target_id=task.id,
            now=timestamp,
        )
    return task


async def get_task_escalation_timeline(
    session: AsyncSession, tenant_id: str, task_id: str
) -> list[dict[str, Any]]:
    task = await db.require_task(session, tenant_id, task_id)
    return list(task.escalation_history or [])


async def get_orchestration_metrics(
    session: AsyncSession,
    tenant_id: str,
    *,
    since: int | None = None,
    now: int | None = None,
) -> dict[str, Any]:
    """Orchestration event counts since ``since`` (default: today, UTC) and currently escalated tasks."""
    if since is None:
        since = start_of_day(resolve_now(now))
    result = await session.execute(
        select(ActivityLogEntry).where(
            ActivityLogEntry.tenant_id == tenant_id,
            ActivityLogEntry.timestamp >= since,
            ActivityLogEntry.action.startswith("orchestration:"),
        )
    )
    logs = list(result.scalars().all())

    counts: dict[str, int] = {}
    qa_accepted = 0
    for entry in logs:
        event = entry.action.removeprefix("orchestration:")
        counts[event] = counts.get(event, 0) + 1
        if event == OrchestrationEventType.QA_GATE and (entry.metadata_ or {}).get("decision") == "accept":
            qa_accepted += 1

    qa_total = counts.get(OrchestrationEventType.QA_GATE, 0)
    tasks = await db.list_tasks(session, tenant_id)
    escalated = sum(
        1
        for t in tasks
        if (t.escalation_attempts or 0) > 0
        and t.status in (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW)
    )

    return {
        "qa_gates": qa_total,
        "retries": counts.get(OrchestrationEventType.RETRY, 0),
        "escalations": counts.get(OrchestrationEventType.ESCALATE, 0),
        "handoffs": counts.get(OrchestrationEventType.HANDOFF, 0),
        "dispatches": counts.get(OrchestrationEventType.DISPATCH, 0),
        "pass_rate": round(qa_accepted / qa_total * 100) if qa_total else None,
        "escalated_tasks": escalated,
    }
