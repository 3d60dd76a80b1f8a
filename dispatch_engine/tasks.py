"""Task lifecycle writes: creation, routed submission, status and assignee changes, usage, results."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .activity import record_activity, record_log
from .agents import AgentDirectory, ByName, find_agent_by_routing_id
from .clock import resolve_now
from .errors import not_found
from .escalation import EscalationOutcome, escalate, last_handler_ref
from .models import Agent, LogLevel, Task, TaskPriority, TaskStatus, Usage
from .routing import (
    DEFAULT_BUSINESS_UNIT,
    PRIORITY_MAP,
    Classification,
    RequestPriority,
    Route,
    classify_task,
    route_task,
)

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 120
UNKNOWN_FAILURE = "Unknown failure"
EXHAUSTED_MESSAGE = "All escalation options exhausted for task"


class ResultAction(StrEnum):
    COMPLETED = "completed"
    ESCALATED = "escalated"
    FAILED = "failed"


@dataclass(frozen=True)
class ResultReport:
    """What :func:`report_task_result` did with the task."""

    action: ResultAction
    task_id: str
    escalation: EscalationOutcome | None = None
    reason: str | None = None


@dataclass(frozen=True)
class Submission:
    task: Task
    classification: Classification
    route: Route
    agent: Agent | None


async def _require_agent(session: AsyncSession, tenant_id: str, agent_id: str, entity: str = "Agent") -> Agent:
    agent = await db.get_agent(session, tenant_id, agent_id)
    if agent is None:
        raise not_found(entity)
    return agent


async def create_task(
    session: AsyncSession,
    tenant_id: str,
    title: str,
    *,
    description: str = "",
    status: TaskStatus = TaskStatus.INBOX,
    priority: TaskPriority | None = None,
    tags: list[str] | None = None,
    source: str = "manual",
    assignee_ids: list[str] | None = None,
    now: int | None = None,
) -> Task:
    """Create a new task."""
    for agent_id in assignee_ids or []:
        await _require_agent(session, tenant_id, agent_id, "Assignee")

    task = Task(
        tenant_id=tenant_id,
        title=title,
        description=description,
        status=status,
        priority=priority,
        tags=list(tags or []),
        source=source,
        assignee_ids=list(assignee_ids or []),
        escalation_history=[],
        escalation_attempts=0,
        needs_input=False,
        created_at=resolve_now(now),
    )
    session.add(task)
    await session.flush()
    return task


async def update_task_status(
    session: AsyncSession,
    tenant_id: str,
    task_id: str,
    status: TaskStatus,
    *,
    agent_id: str,
    now: int | None = None,
) -> Task:
    """Move a task to ``status`` on behalf of ``agent_id``.

    Leaving review clears ``needs_input`` and is recorded as a resolved input
    request.
    """
    task = await db.require_task(session, tenant_id, task_id)
    await _require_agent(session, tenant_id, agent_id)
    timestamp = resolve_now(now)

    was_needs_input = bool(task.needs_input)
    task.status = status
    if status != TaskStatus.REVIEW and was_needs_input:
        task.needs_input = False
    if status == TaskStatus.IN_PROGRESS and task.started_at is None:
        task.started_at = timestamp
    if status == TaskStatus.DONE:
        task.completed_at = timestamp

    await record_activity(
        session,
        tenant_id,
        type="status_update",
        agent_id=agent_id,
        message=f'changed status of "{task.title}" to {status}',
        target_id=task.id,
        now=timestamp,
    )
    if was_needs_input and status != TaskStatus.REVIEW:
        await record_activity(
            session,
            tenant_id,
            type="needs_input_resolved",
            agent_id=agent_id,
            message=f'resolved input needed on "{task.title}" → {status}',
            target_id=task.id,
            now=timestamp,
        )
    return task


async def update_assignees(
    session: AsyncSession,
    tenant_id: str,
    task_id: str,
    assignee_ids: list[str],
    *,
    agent_id: str,
    now: int | None = None,
) -> Task:
    task = await db.require_task(session, tenant_id, task_id)
    await _require_agent(session, tenant_id, agent_id)
    for assignee_id in assignee_ids:
        await _require_agent(session, tenant_id, assignee_id, "Assignee")

    task.assignee_ids = list(assignee_ids)
    await record_activity(
        session,
        tenant_id,
        type="assignees_update",
        agent_id=agent_id,
        message=f'updated assignees for "{task.title}"',
        target_id=task.id,
        now=now,
    )
    return task


async def flag_needs_input(
    session: AsyncSession, tenant_id: str, task_id: str, needs_input: bool = True
) -> Task:
    task = await db.require_task(session, tenant_id, task_id)
    task.needs_input = needs_input
    return task


async def link_run(
    session: AsyncSession, tenant_id: str, task_id: str, run_id: str, *, now: int | None = None
) -> Task:
    """Attach an execution run to a task and stamp its start time."""
    task = await db.require_task(session, tenant_id, task_id)
    task.run_id = run_id
    task.started_at = resolve_now(now)
    return task


async def record_usage(
    session: AsyncSession,
    tenant_id: str,
    *,
    model: str,
    cost: float,
    input_tokens: int = 0,
    output_tokens: int = 0,
    task_id: str | None = None,
    agent_name: str | None = None,
    run_id: str | None = None,
    now: int | None = None,
) -> Usage:
    """Log model spend and roll it onto the task totals."""
    task = await db.require_task(session, tenant_id, task_id) if task_id else None

    usage = Usage(
        tenant_id=tenant_id,
        task_id=task_id,
        agent_id=agent_name,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost=cost,
        run_id=run_id,
        created_at=resolve_now(now),
    )
    session.add(usage)

    if task is not None:
        task.total_cost = (task.total_cost or 0.0) + cost
        task.total_tokens = (task.total_tokens or 0) + input_tokens + output_tokens

    await session.flush()
    return usage


async def report_task_result(
    session: AsyncSession,
    tenant_id: str,
    task_id: str,
    *,
    succeeded: bool,
    result: dict[str, Any] | None = None,
    failure_reason: str | None = None,
    reporter: str | None = None,
    now: int | None = None,
) -> ResultReport:
    """Close a task on success; on failure hand it to the next agent in line.

    The failing agent is ``reporter`` or else the task's last handler. Each
    failure moves the task one hop along that agent's escalation path and
    reassigns it there. Once ``escalation_attempts`` reaches the path length,
    or there is no path at all, the task is archived with the error.
    """
    task = await db.require_task(session, tenant_id, task_id)
    timestamp = resolve_now(now)

    if succeeded:
        task.status = TaskStatus.DONE
        task.result = result
        task.completed_at = timestamp
        return ResultReport(ResultAction.COMPLETED, task.id)

    reason = failure_reason or UNKNOWN_FAILURE
    directory = await AgentDirectory.load(session, tenant_id)
    ref = ByName(reporter) if reporter is not None else last_handler_ref(task)
    handler = directory.resolve(ref) if ref is not None else None
    failed_name = directory.display_name(ref) if ref is not None else None
    if failed_name is not None:
        task.escalation_history = [
            *(task.escalation_history or []),
            {"agentId": failed_name, "timestamp": timestamp, "status": "failed", "reason": reason},
        ]

    path = (handler.escalation_path if handler is not None else None) or []
    attempts = task.escalation_attempts or 0
    if attempts >= len(path):
        return await _archive_failed(
            session, tenant_id, task, reason, result, source=failed_name, attempts=attempts, now=timestamp
        )

    task.result = {**(result or {}), "error": reason}
    outcome = await escalate(session, tenant_id, task.id, now=timestamp)
    next_agent = directory.by_name(outcome.to_agent)
    if next_agent is not None:
        task.assignee_ids = [next_agent.id]
    task.status = TaskStatus.ASSIGNED
    task.escalation_attempts = attempts + 1

    logger.info(
        "Task %s failed under %s (%s); reassigned to %s (attempt %d/%d)",
        task.id,
        outcome.from_agent,
        reason,
        outcome.to_agent,
        task.escalation_attempts,
        len(path),
    )
    return ResultReport(ResultAction.ESCALATED, task.id, escalation=outcome, reason=reason)


async def _archive_failed(
    session: AsyncSession,
    tenant_id: str,
    task: Task,
    reason: str,
    result: dict[str, Any] | None,
    *,
    source: str | None,
    attempts: int,
    now: int,
) -> ResultReport:
    message = f"{EXHAUSTED_MESSAGE}. Last failure: {reason}"
    task.status = TaskStatus.ARCHIVED
    task.result = {**(result or {}), "error": message}
    task.completed_at = now

    await record_log(
        session,
        tenant_id,
        source=source or "system",
        action="escalation:exhausted",
        message=f'gave up on "{task.title}" after {attempts} escalation(s): {reason}',
        level=LogLevel.ERROR,
        metadata={"attempts": attempts, "reason": reason},
        task_id=task.id,
        now=now,
    )
    logger.warning("Task %s archived after %d escalation(s): %s", task.id, attempts, reason)
    return ResultReport(ResultAction.FAILED, task.id, reason=message)


async def submit_task(
    session: AsyncSession,
    tenant_id: str,
    instruction: str,
    *,
    business_unit: str = DEFAULT_BUSINESS_UNIT,
    priority: RequestPriority | str = RequestPriority.NORMAL,
    from_agent: str | None = None,
    now: int | None = None,
) -> Submission:
    """Classify an instruction, route it to a role and create the task there.

    The task goes to the agent registered under the routed ``routing_id``.
    When no agent holds that role it lands unassigned in the inbox.
    """
    classification = classify_task(instruction)
    route = route_task(classification.task_type, instruction)
    agent = await find_agent_by_routing_id(
        session, tenant_id, route.routing_id, business_unit=business_unit
    )
    timestamp = resolve_now(now)

    task = await create_task(
        session,
        tenant_id,
        instruction[:TITLE_MAX_LENGTH],
        description=instruction,
        status=TaskStatus.ASSIGNED if agent is not None else TaskStatus.INBOX,
        priority=PRIORITY_MAP[RequestPriority(priority)],
        tags=[classification.task_type.lower(), business_unit],
        source="agent",
        assignee_ids=[agent.id] if agent is not None else None,
        now=timestamp,
    )
    task.task_type = classification.task_type
    task.business_unit = business_unit
    task.classification_confidence = classification.confidence

    await record_log(
        session,
        tenant_id,
        source=from_agent or "user",
        action="task:routed",
        message=f'routed "{task.title}" to {route.routing_id}: {route.rationale}',
        metadata={
            "taskType": classification.task_type.value,
            "confidence": classification.confidence,
            "routingId": route.routing_id,
            "phase": route.phase.value,
            "escalationPath": list(route.escalation_path),
            "assignee": agent.name if agent is not None else None,
        },
        task_id=task.id,
        agent_id=agent.name if agent is not None else None,
        now=timestamp,
    )
    logger.info(
        "Task %s classified %s (%.2f) and routed to %s%s",
        task.id,
        classification.task_type.value,
        classification.confidence,
        route.routing_id,
        f" ({agent.name})" if agent is not None else " (no agent holds the role; left in inbox)",
    )
    return Submission(task=task, classification=classification, route=route, agent=agent)
