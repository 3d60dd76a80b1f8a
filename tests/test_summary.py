import pytest

from conftest import HOUR, NOW, OTHER_TENANT, TENANT, add_agent, add_task
from dispatch_engine.agents import set_agent_status
from dispatch_engine.models import AgentStatus, TaskStatus
from dispatch_engine.summary import build_dispatch_summary


@pytest.mark.asyncio
async def test_snapshot_splits_roster_and_ignores_outsiders(session) -> None:
    await add_agent(session, "Maven", role="Research")
    await add_agent(session, "Morgan", status=AgentStatus.OFF)
    chase = await add_agent(session, "Chase", role="Sales")
    await add_agent(session, "Outsider", status=AgentStatus.ACTIVE)
    await add_agent(session, "Harper", status=AgentStatus.BLOCKED)

    work = await add_task(
        session, "Pipeline review", status=TaskStatus.IN_PROGRESS, assignees=[chase], started_at=NOW - HOUR
    )
    await set_agent_status(session, TENANT, "chase", AgentStatus.ACTIVE, current_task_id=work.id, now=NOW)

    snapshot = await build_dispatch_summary(session, TENANT, now=NOW)

    assert [a.name for a in snapshot.idle_agents] == ["Maven", "Morgan"]
    assert [a.status for a in snapshot.idle_agents] == ["idle", "off"]
    (active,) = snapshot.active_agents
    assert active.name == "Chase"
    assert active.current_task is not None
    assert active.current_task.id == work.id
    assert snapshot.counts == {"idle": 2, "active": 1, "queue_depth": 0, "stalled": 0}


@pytest.mark.asyncio
async def test_current_task_falls_back_to_in_progress_assignment(session) -> None:
    forge = await add_agent(session, "Forge", status=AgentStatus.ACTIVE)
    await add_task(session, "Queued", status=TaskStatus.ASSIGNED, assignees=[forge])
    building = await add_task(
        session, "Build", status=TaskStatus.IN_PROGRESS, assignees=[forge], started_at=NOW - HOUR
    )

    snapshot = await build_dispatch_summary(session, TENANT, now=NOW)

    (active,) = snapshot.active_agents
    assert active.current_task is not None
    assert active.current_task.id == building.id


@pytest.mark.asyncio
async def test_inbox_queue_and_stalled_work(session) -> None:
    harper = await add_agent(session, "Harper", status=AgentStatus.ACTIVE)
    await add_task(session, "Later", priority="low", created_at=NOW - 5 * HOUR)
    await add_task(session, "Now", priority="urgent", created_at=NOW - HOUR)
    await add_task(session, "Someday", created_at=NOW - 9 * HOUR)
    stalled = await add_task(
        session, "Slow", status=TaskStatus.IN_PROGRESS, assignees=[harper], started_at=NOW - 5 * HOUR
    )
    await add_task(
        session, "Exactly four", status=TaskStatus.IN_PROGRESS, assignees=[harper], started_at=NOW - 4 * HOUR
    )
    await add_task(
        session, "Never started", status=TaskStatus.IN_PROGRESS, assignees=[harper], created_at=NOW - 6 * HOUR
    )

    snapshot = await build_dispatch_summary(session, TENANT, now=NOW)

    assert [(t.title, t.priority) for t in snapshot.inbox_tasks] == [
        ("Now", "urgent"),
        ("Later", "low"),
        ("Someday", "none"),
    ]
    assert [(t.title, t.hours_stalled) for t in snapshot.stalled_tasks] == [
        ("Never started", 6),
        ("Slow", 5),
    ]
    slow = next(t for t in snapshot.stalled_tasks if t.id == stalled.id)
    assert slow.assignees == ["Harper"]


@pytest.mark.asyncio
async def test_to_dict_carries_counts(session) -> None:
    await add_agent(session, "Maven")
    await add_task(session, "Inbox item")

    data = (await build_dispatch_summary(session, TENANT, now=NOW)).to_dict()

    assert data["timestamp"] == NOW
    assert data["summary"] == {"idle": 1, "active": 0, "queue_depth": 1, "stalled": 0}
    assert data["inbox_tasks"][0]["title"] == "Inbox item"


@pytest.mark.asyncio
async def test_custom_roster(session) -> None:
    await add_agent(session, "Maven")
    await add_agent(session, "Scout")

    snapshot = await build_dispatch_summary(session, TENANT, business_agents=["scout"], now=NOW)

    assert [a.name for a in snapshot.idle_agents] == ["Scout"]


@pytest.mark.asyncio
async def test_snapshot_ignores_other_tenants(session) -> None:
    await add_agent(session, "Maven")
    theirs = await add_agent(session, "Maven", status=AgentStatus.ACTIVE, tenant_id=OTHER_TENANT)
    await add_task(session, "Their inbox", priority="urgent", tenant_id=OTHER_TENANT)
    await add_task(
        session,
        "Their stall",
        status=TaskStatus.IN_PROGRESS,
        assignees=[theirs],
        started_at=NOW - 9 * HOUR,
        tenant_id=OTHER_TENANT,
    )

    snapshot = await build_dispatch_summary(session, TENANT, now=NOW)

    assert [a.name for a in snapshot.idle_agents] == ["Maven"]
    assert snapshot.active_agents == []
    assert snapshot.inbox_tasks == []
    assert snapshot.stalled_tasks == []
    assert snapshot.counts == {"idle": 1, "active": 0, "queue_depth": 0, "stalled": 0}
