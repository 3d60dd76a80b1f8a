import pytest

from conftest import NOW, OTHER_TENANT, TENANT, add_agent, add_task
from dispatch_engine.activity import get_recent_log, get_task_activities
from dispatch_engine.errors import NotFoundError, PreconditionFailedError
from dispatch_engine.escalation import (
    NO_ESCALATION_PATH,
    OrchestrationEventType,
    build_message,
    escalate,
    get_orchestration_metrics,
    get_task_escalation_timeline,
    log_orchestration_event,
    next_in_path,
)
from dispatch_engine.models import TaskStatus

PATH = ["Alpha", "Bravo", "Charlie"]


async def _roster(session):
    return [await add_agent(session, name, escalation_path=PATH) for name in PATH]


def test_next_in_path_wraps_and_ignores_case() -> None:
    assert next_in_path(PATH, "bravo") == ("Charlie", False)
    assert next_in_path(PATH, "Charlie") == ("Alpha", True)
    assert next_in_path(PATH, "Delta") == ("Alpha", True)


@pytest.mark.asyncio
async def test_escalate_walks_path_then_wraps(session) -> None:
    _, bravo, _ = await _roster(session)
    task = await add_task(session, "Stuck", status=TaskStatus.IN_PROGRESS, assignees=[bravo])

    first = await escalate(session, TENANT, task.id, now=NOW)
    assert (first.from_agent, first.to_agent, first.wrapped) == ("Bravo", "Charlie", False)

    second = await escalate(session, TENANT, task.id, now=NOW + 1)
    assert (second.from_agent, second.to_agent, second.wrapped) == ("Charlie", "Alpha", True)

    history = await get_task_escalation_timeline(session, TENANT, task.id)
    assert history == [
        {"agentId": "Charlie", "timestamp": NOW, "status": "escalated"},
        {"agentId": "Alpha", "timestamp": NOW + 1, "status": "escalated"},
    ]
    assert task.escalation_attempts == 0


@pytest.mark.asyncio
async def test_escalate_resolves_history_names_case_insensitively(session) -> None:
    await _roster(session)
    task = await add_task(
        session,
        "Handed around",
        history=[{"agentId": "bravo", "timestamp": NOW - 10, "status": "handoff"}],
    )

    outcome = await escalate(session, TENANT, task.id, now=NOW)

    assert outcome.from_agent == "Bravo"
    assert outcome.to_agent == "Charlie"
    assert outcome.history_length == 2


@pytest.mark.asyncio
async def test_escalate_records_log_and_primary_activity(session) -> None:
    _, bravo, _ = await _roster(session)
    task = await add_task(session, "Stuck", status=TaskStatus.IN_PROGRESS, assignees=[bravo])

    await escalate(session, TENANT, task.id, now=NOW)

    log = await get_recent_log(session, TENANT)
    assert [e.action for e in log] == ["escalation:route"]
    assert log[0].level == "warn"
    assert log[0].metadata_ == {"fromAgent": "Bravo", "toAgent": "Charlie", "wrapped": False}

    activities = await get_task_activities(session, TENANT, task.id)
    assert [(a.type, a.agent_id) for a in activities] == [("escalation", bravo.id)]


@pytest.mark.asyncio
async def test_escalate_without_handler_changes_nothing(session) -> None:
    await _roster(session)
    task = await add_task(session, "Orphan")

    with pytest.raises(PreconditionFailedError, match=NO_ESCALATION_PATH):
        await escalate(session, TENANT, task.id, now=NOW)

    assert task.escalation_history == []
    assert await get_recent_log(session, TENANT) == []


@pytest.mark.asyncio
async def test_escalate_handler_without_path_fails(session) -> None:
    loner = await add_agent(session, "Loner")
    task = await add_task(session, "Stuck", status=TaskStatus.IN_PROGRESS, assignees=[loner])

    with pytest.raises(PreconditionFailedError):
        await escalate(session, TENANT, task.id, now=NOW)
    assert task.escalation_history == []


@pytest.mark.asyncio
async def test_escalate_other_tenant_task_is_not_found(session) -> None:
    _, bravo, _ = await _roster(session)
    task = await add_task(session, "Stuck", assignees=[bravo])

    with pytest.raises(NotFoundError, match="Task not found"):
        await escalate(session, OTHER_TENANT, task.id, now=NOW)


@pytest.mark.asyncio
async def test_only_escalate_events_bump_attempts(session) -> None:
    _, bravo, _ = await _roster(session)
    task = await add_task(session, "Flaky", status=TaskStatus.IN_PROGRESS, assignees=[bravo])

    await log_orchestration_event(
        session, TENANT, task.id, "Bravo", OrchestrationEventType.RETRY, feedback="tests red", now=NOW
    )
    assert task.escalation_attempts == 0

    await log_orchestration_event(
        session,
        TENANT,
        task.id,
        "Bravo",
        "escalate",
        from_agent="Bravo",
        to_agent="Charlie",
        reason="stuck",
        now=NOW + 1,
    )
    assert task.escalation_attempts == 1

    history = await get_task_escalation_timeline(session, TENANT, task.id)
    assert [h["status"] for h in history] == ["retry", "escalate"]
    assert history[0]["reason"] == "feedback: tests red"
    assert history[1]["reason"] == "Bravo → Charlie | stuck"

    activities = await get_task_activities(session, TENANT, task.id)
    assert [a.type for a in activities] == ["orchestration", "orchestration"]


@pytest.mark.asyncio
async def test_unknown_event_type_is_rejected(session) -> None:
    task = await add_task(session, "Anything")

    with pytest.raises(ValueError):
        await log_orchestration_event(session, TENANT, task.id, "Bravo", "teleport", now=NOW)
    assert task.escalation_history == []


def test_event_messages() -> None:
    assert build_message(OrchestrationEventType.QA_GATE, "Ship it", decision="accept") == (
        'QA gate on "Ship it": accept'
    )
    assert build_message(OrchestrationEventType.BLOCKED, "Ship it", reason="no creds") == (
        'Blocked "Ship it": no creds'
    )
    assert build_message(
        OrchestrationEventType.HANDOFF, "Ship it", from_agent="Alpha", to_agent="Bravo", reason="shift end"
    ) == 'Handoff "Ship it" from Alpha → Bravo - shift end'


@pytest.mark.asyncio
async def test_orchestration_metrics(session) -> None:
    _, bravo, _ = await _roster(session)
    task = await add_task(session, "Flaky", status=TaskStatus.IN_PROGRESS, assignees=[bravo])

    for decision in ("accept", "reject"):
        await log_orchestration_event(
            session, TENANT, task.id, "Bravo", OrchestrationEventType.QA_GATE, decision=decision, now=NOW
        )
    await log_orchestration_event(session, TENANT, task.id, "Bravo", OrchestrationEventType.ESCALATE, now=NOW)

    metrics = await get_orchestration_metrics(session, TENANT, since=NOW - 1)

    assert metrics["qa_gates"] == 2
    assert metrics["pass_rate"] == 50
    assert metrics["escalations"] == 1
    assert metrics["retries"] == 0
    assert metrics["escalated_tasks"] == 1

    tomorrow = await get_orchestration_metrics(session, TENANT, now=NOW + 24 * 60 * 60 * 1000)
    assert tomorrow["qa_gates"] == 0
    assert tomorrow["pass_rate"] is None
