"""Operator dispatch snapshot for the business-agent roster."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .agents import AgentDirectory, name_key
from .clock import elapsed_hours, hours_to_ms, resolve_now
from .config import settings
from .models import Agent, AgentStatus, Task, TaskStatus
from .selector import inbox_queue, priority_label


@dataclass
class CurrentTask:
    id: str
    title: str
    status: str
    started_at: int | None


@dataclass
class IdleAgent:
    id: str
    name: str
    status: str
    role: str


@dataclass
class ActiveAgent:
    id: str
    name: str
    role: str
    current_task: CurrentTask | None


@dataclass
class QueuedTask:
    id: str
    title: str
    priority: str
    tags: list[str]
    created_at: int
    source: str | None


@dataclass
class StalledTask:
    id: str
    title: str
    assignees: list[str]
    started_at: int
    hours_stalled: int


@dataclass
class DispatchSummary:
    timestamp: int
    idle_agents: list[IdleAgent] = field(default_factory=list)
    active_agents: list[ActiveAgent] = field(default_factory=list)
    inbox_tasks: list[QueuedTask] = field(default_factory=list)
    stalled_tasks: list[StalledTask] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        return {
            "idle": len(self.idle_agents),
            "active": len(self.active_agents),
            "queue_depth": len(self.inbox_tasks),
            "stalled": len(self.stalled_tasks),
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["summary"] = self.counts
        return data


def _current_task(task: Task) -> CurrentTask:
    return CurrentTask(id=task.id, title=task.title, status=task.status, started_at=task.started_at)


def resolve_current_task(agent: Agent, tasks: list[Task]) -> CurrentTask | None:
    """The agent's recorded current task, else their first in-progress assignment."""
    by_id = {t.id: t for t in tasks}
    if agent.current_task_id and agent.current_task_id in by_id:
        return _current_task(by_id[agent.current_task_id])
    for task in tasks:
        if task.status == TaskStatus.IN_PROGRESS and agent.id in (task.assignee_ids or []):
            return _current_task(task)
    return None


def build_summary(
    agents: list[Agent],
    tasks: list[Task],
    *,
    now: int,
    stall_threshold_hours: float,
) -> DispatchSummary:
    summary = DispatchSummary(timestamp=now)

    for agent in agents:
        if agent.status in (AgentStatus.IDLE, AgentStatus.OFF):
            summary.idle_agents.append(
                IdleAgent(id=agent.id, name=agent.name, status=agent.status, role=agent.role)
            )
        elif agent.status == AgentStatus.ACTIVE:
            summary.active_agents.append(
                ActiveAgent(
                    id=agent.id,
                    name=agent.name,
                    role=agent.role,
                    current_task=resolve_current_task(agent, tasks),
                )
            )

    summary.inbox_tasks = [
        QueuedTask(
            id=t.id,
            title=t.title,
            priority=priority_label(t.priority),
            tags=list(t.tags or []),
            created_at=t.created_at,
            source=t.source,
        )
        for t in inbox_queue(tasks)
    ]

    stall_ms = hours_to_ms(stall_threshold_hours)
    for task in tasks:
        if task.status != TaskStatus.IN_PROGRESS:
            continue
        started = task.started_at if task.started_at is not None else task.created_at
        if now - started <= stall_ms:
            continue
        summary.stalled_tasks.append(
            StalledTask(
                id=task.id,
                title=task.title,
                assignees=[a.name for a in agents if a.id in (task.assignee_ids or [])],
                started_at=started,
                hours_stalled=elapsed_hours(started, now),
            )
        )

    return summary


async def build_dispatch_summary(
    session: AsyncSession,
    tenant_id: str,
    *,
    business_agents: list[str] | None = None,
    now: int | None = None,
) -> DispatchSummary:
    """Read-only snapshot of who is free, who is busy, what is queued and what is stuck."""
    roster = {name_key(n) for n in (business_agents or settings.business_agents)}
    directory = await AgentDirectory.load(session, tenant_id)
    agents = [a for a in directory if a.name_key in roster]
    tasks = await db.list_tasks(session, tenant_id)

    return build_summary(
        agents,
        tasks,
        now=resolve_now(now),
        stall_threshold_hours=settings.stall_threshold_hours,
    )
