"""Async database connection and tenant-scoped reads for the dispatch engine."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, not_found, schema_not_initialized_message
from .models import Agent, Base, RiskSignal, Task, TaskStatus, Usage

# Create async engine and session factory
engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions.

    One session is one transaction: commit on success, rollback on any error.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


# =============================================================================
# Task Reads
# =============================================================================


async def get_task(session: AsyncSession, tenant_id: str, task_id: str) -> Task | None:
    """Get a task by id; tasks of other tenants read as missing."""
    result = await session.execute(
        select(Task).where(Task.id == task_id, Task.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def require_task(session: AsyncSession, tenant_id: str, task_id: str) -> Task:
    task = await get_task(session, tenant_id, task_id)
    if task is None:
        raise not_found("Task")
    return task


async def list_tasks(
    session: AsyncSession,
    tenant_id: str,
    *,
    status: TaskStatus | str | None = None,
) -> list[Task]:
    """List a tenant's tasks in stable creation order."""
    query = select(Task).where(Task.tenant_id == tenant_id)
    if status is not None:
        query = query.where(Task.status == status)
    query = query.order_by(Task.created_at, Task.id)

    result = await session.execute(query)
    return list(result.scalars().all())


# =============================================================================
# Agent Reads
# =============================================================================


async def get_agent(session: AsyncSession, tenant_id: str, agent_id: str) -> Agent | None:
    result = await session.execute(
        select(Agent).where(Agent.id == agent_id, Agent.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


# =============================================================================
# Usage / Signal Reads
# =============================================================================


async def list_usage_since(session: AsyncSession, tenant_id: str, since: int) -> list[Usage]:
    """Usage rows created at or after ``since`` (epoch ms)."""
    result = await session.execute(
        select(Usage)
        .where(Usage.tenant_id == tenant_id, Usage.created_at >= since)
        .order_by(Usage.created_at)
    )
    return list(result.scalars().all())


async def list_unresolved_signals(session: AsyncSession, tenant_id: str) -> list[RiskSignal]:
    result = await session.execute(
        select(RiskSignal).where(
            RiskSignal.tenant_id == tenant_id, RiskSignal.resolved_at.is_(None)
        )
    )
    return list(result.scalars().all())
