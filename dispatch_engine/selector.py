"""Next-work selection: which single task an agent should pick up."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .agents import find_agent_by_name
from .models import Agent, Task, TaskStatus

PRIORITY_ORDER: dict[str, int] = {
    "urgent": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
}
UNSET_PRIORITY_RANK = 4


def priority_rank(priority: str | None) -> int:
    return PRIORITY_ORDER.get(priority or "", UNSET_PRIORITY_RANK)


def priority_label(priority: str | None) -> str:
    return priority or "none"


def inbox_queue(tasks: Iterable[Task]) -> list[Task]:
    """Unassigned inbox tasks, most urgent first, then oldest first."""
    queue = [
        t for t in tasks if t.status == TaskStatus.INBOX and not t.assignee_ids
    ]
    return sorted(queue, key=lambda t: (priority_rank(t.priority), t.created_at))


@dataclass(frozen=True)
class Selection:
    task: Task | None
    reason: str


def pick_next_task(agent: Agent, tasks: list[Task]) -> Selection:
    """Apply the selection pools in order; ``tasks`` must be in stable order."""
    mine = [t for t in tasks if agent.id in (t.assignee_ids or [])]

    for task in mine:
        if task.status == TaskStatus.IN_PROGRESS and not task.needs_input:
            return Selection(task, "Assigned to you, status: in_progress")

    for task in mine:
        if task.status == TaskStatus.ASSIGNED:
            return Selection(task, "Assigned to you, status: assigned")

    queue = inbox_queue(tasks)
    if queue:
        task = queue[0]
        return Selection(task, f"Unassigned inbox task (priority: {priority_label(task.priority)})")

    return Selection(None, "No tasks available")


async def select_next_task(session: AsyncSession, tenant_id: str, agent_name: str) -> Selection:
    """Pick the next task for ``agent_name``. Read-only."""
    agent = await find_agent_by_name(session, tenant_id, agent_name)
    if agent is None:
        return Selection(None, f'Agent "{agent_name}" not found')

    tasks = await db.list_tasks(session, tenant_id)
    return pick_next_task(agent, tasks)
