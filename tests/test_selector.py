import pytest

from conftest import HOUR, NOW, OTHER_TENANT, TENANT, add_agent, add_task
from dispatch_engine.models import TaskStatus
from dispatch_engine.selector import inbox_queue, priority_rank, select_next_task


def test_priority_rank_orders_unset_last() -> None:
    assert [priority_rank(p) for p in ("urgent", "high", "medium", "low", None)] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_in_progress_assignment_beats_inbox(session) -> None:
    maven = await add_agent(session, "Maven")
    await add_task(session, "Urgent inbox", priority="urgent")
    await add_task(session, "Assigned work", status=TaskStatus.ASSIGNED, assignees=[maven])
    mine = await add_task(session, "Ongoing work", status=TaskStatus.IN_PROGRESS, assignees=[maven])

    selection = await select_next_task(session, TENANT, "Maven")

    assert selection.task is not None
    assert selection.task.id == mine.id
    assert selection.reason == "Assigned to you, status: in_progress"


@pytest.mark.asyncio
async def test_in_progress_waiting_for_input_is_skipped(session) -> None:
    maven = await add_agent(session, "Maven")
    await add_task(
        session, "Blocked on human", status=TaskStatus.IN_PROGRESS, assignees=[maven], needs_input=True
    )
    assigned = await add_task(session, "Assigned work", status=TaskStatus.ASSIGNED, assignees=[maven])

    selection = await select_next_task(session, TENANT, "maven")

    assert selection.task is not None
    assert selection.task.id == assigned.id
    assert selection.reason == "Assigned to you, status: assigned"


@pytest.mark.asyncio
async def test_inbox_sorted_by_priority_then_age(session) -> None:
    await add_agent(session, "Chase")
    low = await add_task(session, "Low", priority="low", created_at=NOW - 3 * HOUR)
    urgent = await add_task(session, "Urgent", priority="urgent", created_at=NOW - 2 * HOUR)
    high = await add_task(session, "High", priority="high", created_at=NOW - 1 * HOUR)
    unset = await add_task(session, "Unprioritised", created_at=NOW - 5 * HOUR)

    selection = await select_next_task(session, TENANT, "Chase")

    assert selection.task is not None
    assert selection.task.id == urgent.id
    assert selection.reason == "Unassigned inbox task (priority: urgent)"
    assert [t.id for t in inbox_queue([low, urgent, high, unset])] == [urgent.id, high.id, low.id, unset.id]


@pytest.mark.asyncio
async def test_unset_priority_reads_as_none(session) -> None:
    await add_agent(session, "Chase")
    await add_task(session, "Unprioritised")

    selection = await select_next_task(session, TENANT, "Chase")

    assert selection.reason == "Unassigned inbox task (priority: none)"


@pytest.mark.asyncio
async def test_assigned_inbox_tasks_are_not_in_the_pool(session) -> None:
    maven = await add_agent(session, "Maven")
    await add_agent(session, "Chase")
    await add_task(session, "Someone else's", assignees=[maven])

    selection = await select_next_task(session, TENANT, "Chase")

    assert selection.task is None
    assert selection.reason == "No tasks available"


@pytest.mark.asyncio
async def test_unknown_agent_is_reported_not_raised(session) -> None:
    await add_agent(session, "Maven", tenant_id=OTHER_TENANT)

    selection = await select_next_task(session, TENANT, "Maven")

    assert selection.task is None
    assert selection.reason == 'Agent "Maven" not found'
