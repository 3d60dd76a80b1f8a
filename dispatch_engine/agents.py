"""Agent roster: registration and the one canonical way to resolve agent references.

Escalation history stores free-text agent *names* while task assignees store
agent *ids*. Both are wrapped in an :data:`AgentRef` and resolved here, with
name matching always case-insensitive.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DuplicateAgentError, not_found
from .models import Agent, AgentStatus


@dataclass(frozen=True)
class ById:
    agent_id: str


@dataclass(frozen=True)
class ByName:
    name: str


AgentRef = ById | ByName


def name_key(name: str) -> str:
    return name.strip().casefold()


class AgentDirectory:
    """In-memory index over one tenant's agents.

    Built once per operation from a single snapshot so that every lookup in
    that operation sees the same roster.
    """

    def __init__(self, agents: Iterable[Agent]) -> None:
        self._agents = list(agents)
        self._by_id = {a.id: a for a in self._agents}
        self._by_key = {a.name_key or name_key(a.name): a for a in self._agents}

    @classmethod
    async def load(cls, session: AsyncSession, tenant_id: str) -> AgentDirectory:
        result = await session.execute(
            select(Agent).where(Agent.tenant_id == tenant_id).order_by(Agent.created_at, Agent.id)
        )
        return cls(result.scalars().all())

    def __iter__(self):
        return iter(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def resolve(self, ref: AgentRef) -> Agent | None:
        match ref:
            case ById(agent_id=agent_id):
                return self._by_id.get(agent_id)
            case ByName(name=name):
                return self._by_key.get(name_key(name))

    def by_name(self, name: str) -> Agent | None:
        return self.resolve(ByName(name))

    def by_id(self, agent_id: str) -> Agent | None:
        return self.resolve(ById(agent_id))

    def display_name(self, ref: AgentRef) -> str:
        """Canonical name for a reference; unknown names are kept verbatim."""
        agent = self.resolve(ref)
        if agent is not None:
            return agent.name
        match ref:
            case ById(agent_id=agent_id):
                return agent_id
            case ByName(name=name):
                return name


async def find_agent_by_name(session: AsyncSession, tenant_id: str, name: str) -> Agent | None:
    """Single-agent lookup by name, case-insensitive, tenant-scoped."""
    result = await session.execute(
        select(Agent).where(Agent.tenant_id == tenant_id, Agent.name_key == name_key(name))
    )
    return result.scalar_one_or_none()


async def find_agent_by_routing_id(
    session: AsyncSession,
    tenant_id: str,
    routing_id: str,
    *,
    business_unit: str | None = None,
) -> Agent | None:
    """Agent holding a routing role, preferring one from ``business_unit``.

    Agents without a unit (or in the shared ``cross`` unit) come next; ties go
    to the earliest registered.
    """
    result = await session.execute(
        select(Agent)
        .where(Agent.tenant_id == tenant_id, Agent.routing_id == routing_id)
        .order_by(Agent.created_at, Agent.id)
    )
    candidates = list(result.scalars().all())

    def unit_rank(agent: Agent) -> int:
        if business_unit is not None and agent.business_unit == business_unit:
            return 0
        if agent.business_unit in (None, "cross"):
            return 1
        return 2

    return min(candidates, key=unit_rank, default=None)


async def register_agent(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    *,
    role: str = "",
    status: AgentStatus = AgentStatus.IDLE,
    escalation_path: list[str] | None = None,
    routing_id: str | None = None,
    business_unit: str | None = None,
    now: int | None = None,
) -> Agent:
    """Create an agent; names are unique per tenant ignoring case."""
    if await find_agent_by_name(session, tenant_id, name) is not None:
        raise DuplicateAgentError(f'Agent "{name}" already exists')

    agent = Agent(
        tenant_id=tenant_id,
        name=name,
        name_key=name_key(name),
        role=role,
        status=status,
        escalation_path=list(escalation_path) if escalation_path is not None else None,
        routing_id=routing_id,
        business_unit=business_unit,
    )
    if now is not None:
        agent.created_at = now
    session.add(agent)
    await session.flush()
    return agent


async def set_agent_status(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    status: AgentStatus,
    *,
    current_task_id: str | None = None,
    now: int | None = None,
) -> Agent:
    """Explicit status transition; the only path that changes ``Agent.status``."""
    agent = await find_agent_by_name(session, tenant_id, name)
    if agent is None:
        raise not_found(f'Agent "{name}"')

    agent.status = status
    if status == AgentStatus.ACTIVE:
        agent.current_task_id = current_task_id
        if now is not None:
            agent.last_active_at = now
    elif current_task_id is None:
        agent.current_task_id = None
    return agent


async def set_escalation_path(
    session: AsyncSession, tenant_id: str, name: str, path: list[str]
) -> Agent:
    agent = await find_agent_by_name(session, tenant_id, name)
    if agent is None:
        raise not_found(f'Agent "{name}"')
    agent.escalation_path = list(path)
    return agent
