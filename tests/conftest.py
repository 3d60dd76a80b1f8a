"""Shared test fixtures and configuration for pytest."""

import itertools
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dispatch_engine.agents import register_agent
from dispatch_engine.clock import MS_PER_HOUR
from dispatch_engine.models import Agent, AgentStatus, Base, Task, TaskStatus

TENANT = "acme"
OTHER_TENANT = "globex"
NOW = 1_700_000_000_000
HOUR = MS_PER_HOUR

# roster order follows registration order
_registration_clock = itertools.count(NOW - 100 * HOUR)


@pytest_asyncio.fixture
async def session() -> AsyncGenerator[AsyncSession]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as s:
        yield s
    await engine.dispose()


class RecordingDispatcher:
    """Webhook dispatcher that keeps every enqueued event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def enqueue(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append((tenant_id, event, payload))


class FailingDispatcher:
    def enqueue(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        raise ConnectionError("webhook backend unavailable")


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


async def add_agent(
    session: AsyncSession,
    name: str,
    *,
    status: AgentStatus = AgentStatus.IDLE,
    escalation_path: list[str] | None = None,
    tenant_id: str = TENANT,
    role: str = "",
) -> Agent:
    return await register_agent(
        session,
        tenant_id,
        name,
        role=role,
        status=status,
        escalation_path=escalation_path,
        now=next(_registration_clock),
    )


async def add_task(
    session: AsyncSession,
    title: str,
    *,
    status: TaskStatus = TaskStatus.INBOX,
    assignees: list[Agent] | None = None,
    priority: str | None = None,
    created_at: int = NOW - 2 * HOUR,
    started_at: int | None = None,
    completed_at: int | None = None,
    needs_input: bool = False,
    history: list[dict[str, Any]] | None = None,
    tenant_id: str = TENANT,
) -> Task:
    task = Task(
        tenant_id=tenant_id,
        title=title,
        status=status,
        assignee_ids=[a.id for a in assignees or []],
        tags=[],
        priority=priority,
        needs_input=needs_input,
        started_at=started_at,
        completed_at=completed_at,
        escalation_history=list(history or []),
        escalation_attempts=0,
        created_at=created_at,
    )
    session.add(task)
    await session.flush()
    return task
