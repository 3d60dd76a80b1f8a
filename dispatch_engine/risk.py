"""Risk signal detection over recent tasks and usage.

A scan evaluates every heuristic against one snapshot of the tenant, drops
candidates that already have an unresolved signal with the same dedup key
and stores the rest. High/critical ones come back as ``alerts``; callers that
own the transaction hand them to :func:`dispatch_alerts` after it commits.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .agents import AgentDirectory, ById, ByName
from .clock import MS_PER_HOUR, elapsed_hours, hours_to_ms, resolve_now
from .config import Settings, settings
from .errors import not_found
from .models import RiskSignal, Severity, SignalType, Task, TaskStatus, Usage
from .webhooks import RISK_SIGNAL_EVENT, WebhookDispatcher

logger = logging.getLogger(__name__)

ALERTING_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


@dataclass(frozen=True)
class RiskThresholds:
    failure_window_hours: float = 24.0
    failure_threshold: int = 3
    stale_high_hours: float = 4.0
    stale_critical_hours: float = 8.0
    autonomy_window_hours: float = 6.0
    autonomy_done_threshold: int = 10
    budget_window_hours: float = 24.0
    budget_spike_multiplier: float = 2.0
    budget_critical_multiplier: float = 3.0
    budget_baseline_hours: int = 23

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> RiskThresholds:
        return cls(
            failure_window_hours=cfg.failure_window_hours,
            failure_threshold=cfg.failure_threshold,
            stale_high_hours=cfg.stale_high_hours,
            stale_critical_hours=cfg.stale_critical_hours,
            autonomy_window_hours=cfg.autonomy_window_hours,
            autonomy_done_threshold=cfg.autonomy_done_threshold,
            budget_spike_multiplier=cfg.budget_spike_multiplier,
            budget_critical_multiplier=cfg.budget_critical_multiplier,
            budget_baseline_hours=cfg.budget_baseline_hours,
        )


@dataclass(frozen=True)
class DedupKey:
    signal_type: SignalType
    agent_id: str | None = None
    task_id: str | None = None

    def label(self) -> str:
        """``"<signalType>:<key>"``; tenant-wide signals carry no key suffix."""
        key = self.task_id if self.task_id is not None else self.agent_id
        return self.signal_type.value if key is None else f"{self.signal_type.value}:{key}"


@dataclass(frozen=True)
class RiskCandidate:
    signal_type: SignalType
    severity: Severity
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    agent_id: str | None = None
    task_id: str | None = None

    @property
    def key(self) -> DedupKey:
        return DedupKey(self.signal_type, self.agent_id, self.task_id)

    def webhook_payload(self) -> dict[str, Any]:
        return {
            "signalType": self.signal_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "agentId": self.agent_id,
        }


@dataclass
class ScanContext:
    """Everything a heuristic may look at, read once per scan."""

    now: int
    tasks: list[Task]
    usage: list[Usage]
    directory: AgentDirectory
    thresholds: RiskThresholds


@dataclass(frozen=True)
class AnalysisResult:
    created: list[str]
    alerts: list[RiskCandidate] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.created)


class SignalLedger:
    """Dedup keys of unresolved signals, including ones created by the current scan."""

    def __init__(self, signals: Iterable[RiskSignal] = ()) -> None:
        self._keys: set[DedupKey] = set()
        for signal in signals:
            if signal.resolved_at is None:
                self._keys.add(DedupKey(SignalType(signal.signal_type), signal.agent_id, signal.task_id))

    def __contains__(self, key: DedupKey) -> bool:
        return key in self._keys

    def add(self, key: DedupKey) -> None:
        self._keys.add(key)


# =============================================================================
# Heuristics
# =============================================================================


def activity_time(task: Task) -> int:
    return task.completed_at if task.completed_at is not None else task.created_at


def attributable_agents(task: Task, directory: AgentDirectory) -> list[str]:
    """Canonical names credited with a task's outcome.

    The last escalation handler if there is one, otherwise every assignee.
    """
    history = task.escalation_history or []
    if history:
        return [directory.display_name(ByName(history[-1]["agentId"]))]
    return [directory.display_name(ById(agent_id)) for agent_id in task.assignee_ids or []]


def detect_repeated_failures(ctx: ScanContext) -> list[RiskCandidate]:
    """Agents with several tasks bounced to review needing input."""
    th = ctx.thresholds
    cutoff = ctx.now - hours_to_ms(th.failure_window_hours)
    failures: Counter[str] = Counter()
    for task in ctx.tasks:
        if task.status == TaskStatus.REVIEW and task.needs_input and activity_time(task) >= cutoff:
            failures.update(attributable_agents(task, ctx.directory))

    window = f"{th.failure_window_hours:g}h"
    return [
        RiskCandidate(
            signal_type=SignalType.REPEATED_FAILURES,
            severity=Severity.HIGH,
            agent_id=agent,
            message=f"Agent has {count} tasks requiring review in the last {window}",
            metadata={"failureCount": count},
        )
        for agent, count in failures.items()
        if count >= th.failure_threshold
    ]


def detect_stale_tasks(ctx: ScanContext) -> list[RiskCandidate]:
    """In-progress tasks that started too long ago."""
    th = ctx.thresholds
    high_cutoff = ctx.now - hours_to_ms(th.stale_high_hours)
    critical_cutoff = ctx.now - hours_to_ms(th.stale_critical_hours)

    candidates: list[RiskCandidate] = []
    for task in ctx.tasks:
        if task.status != TaskStatus.IN_PROGRESS or task.started_at is None:
            continue
        if task.started_at > high_cutoff:
            continue
        hours = elapsed_hours(task.started_at, ctx.now)
        candidates.append(
            RiskCandidate(
                signal_type=SignalType.STALE_TASK,
                severity=Severity.CRITICAL if task.started_at <= critical_cutoff else Severity.HIGH,
                task_id=task.id,
                message=f'Task "{task.title}" has been in_progress for {hours}h',
                metadata={"startedAt": task.started_at, "durationHours": hours},
            )
        )
    return candidates


def detect_autonomy_spikes(ctx: ScanContext) -> list[RiskCandidate]:
    """Agents closing many tasks without any of them passing through review."""
    th = ctx.thresholds
    cutoff = ctx.now - hours_to_ms(th.autonomy_window_hours)
    done: Counter[str] = Counter()
    reviewed: Counter[str] = Counter()
    for task in ctx.tasks:
        if activity_time(task) < cutoff:
            continue
        for agent in attributable_agents(task, ctx.directory):
            if task.status == TaskStatus.DONE:
                done[agent] += 1
            elif task.status == TaskStatus.REVIEW:
                reviewed[agent] += 1

    window = f"{th.autonomy_window_hours:g}"
    return [
        RiskCandidate(
            signal_type=SignalType.AUTONOMY_SPIKE,
            severity=Severity.MEDIUM,
            agent_id=agent,
            message=f"Agent completed {count} tasks in {window}h with no review - possible autonomy spike",
            metadata={"completedCount": count, "reviewedCount": 0, "windowHours": th.autonomy_window_hours},
        )
        for agent, count in done.items()
        if count >= th.autonomy_done_threshold and reviewed[agent] == 0
    ]


def _round_tenth(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def detect_budget_burn(ctx: ScanContext) -> list[RiskCandidate]:
    """Current-hour spend against the hourly average of the rest of the window.

    The average divides by a fixed number of baseline hours, not by the hours
    that actually have data.
    """
    th = ctx.thresholds
    window_start = ctx.now - hours_to_ms(th.budget_window_hours)
    hour_start = ctx.now - MS_PER_HOUR
    recent = [u for u in ctx.usage if u.created_at >= window_start]
    if not recent:
        return []

    current = sum(u.cost for u in recent if u.created_at >= hour_start)
    baseline = sum(u.cost for u in recent if u.created_at < hour_start)
    average = baseline / max(1, th.budget_baseline_hours)

    if average <= 0 or current <= th.budget_spike_multiplier * average:
        return []

    ratio = _round_tenth(current / average)
    severity = Severity.CRITICAL if current > th.budget_critical_multiplier * average else Severity.HIGH
    return [
        RiskCandidate(
            signal_type=SignalType.BUDGET_BURN_SPIKE,
            severity=severity,
            message=(
                f"Current hour cost (${current:.2f}) is {ratio}x the 24h hourly average (${average:.2f})"
            ),
            metadata={"currentHourCost": current, "avgHourlyCost": average, "ratio": ratio},
        )
    ]


Heuristic = Callable[[ScanContext], list[RiskCandidate]]

HEURISTICS: dict[SignalType, Heuristic] = {
    SignalType.REPEATED_FAILURES: detect_repeated_failures,
    SignalType.STALE_TASK: detect_stale_tasks,
    SignalType.AUTONOMY_SPIKE: detect_autonomy_spikes,
    SignalType.BUDGET_BURN_SPIKE: detect_budget_burn,
}

_unhandled = set(SignalType) - HEURISTICS.keys()
if _unhandled:
    raise RuntimeError(f"No heuristic registered for: {sorted(_unhandled)}")


# =============================================================================
# Scan
# =============================================================================


def collect_candidates(ctx: ScanContext) -> list[RiskCandidate]:
    """Run every heuristic; one failing heuristic does not stop the others."""
    candidates: list[RiskCandidate] = []
    for signal_type, heuristic in HEURISTICS.items():
        try:
            candidates.extend(heuristic(ctx))
        except Exception:
            logger.exception("Risk heuristic %s failed; continuing with the rest", signal_type.value)
    return candidates


def _notify(dispatcher: WebhookDispatcher, tenant_id: str, candidate: RiskCandidate) -> None:
    try:
        dispatcher.enqueue(tenant_id, RISK_SIGNAL_EVENT, candidate.webhook_payload())
    except Exception as exc:
        logger.warning("Webhook dispatch for %s failed: %s", candidate.key.label(), exc)


def dispatch_alerts(dispatcher: WebhookDispatcher, tenant_id: str, result: AnalysisResult) -> int:
    """Hand a scan's alerts to webhook delivery. Returns the number handed over.

    Call once the scan's transaction has committed.
    """
    for candidate in result.alerts:
        _notify(dispatcher, tenant_id, candidate)
    return len(result.alerts)


async def analyze_risks(
    session: AsyncSession,
    tenant_id: str,
    *,
    dispatcher: WebhookDispatcher | None = None,
    thresholds: RiskThresholds | None = None,
    now: int | None = None,
) -> AnalysisResult:
    """Scan a tenant and create deduplicated risk signals.

    With a ``dispatcher`` the alerts are enqueued right after the flush, inside
    the caller's transaction. Leave it out to send them after commit instead.
    """
    now = resolve_now(now)
    thresholds = thresholds or RiskThresholds.from_settings()
    window_start = now - hours_to_ms(max(thresholds.failure_window_hours, thresholds.budget_window_hours))

    ctx = ScanContext(
        now=now,
        tasks=await db.list_tasks(session, tenant_id),
        usage=await db.list_usage_since(session, tenant_id, window_start),
        directory=await AgentDirectory.load(session, tenant_id),
        thresholds=thresholds,
    )
    ledger = SignalLedger(await db.list_unresolved_signals(session, tenant_id))

    created: list[RiskCandidate] = []
    for candidate in collect_candidates(ctx):
        if candidate.key in ledger:
            continue
        session.add(
            RiskSignal(
                tenant_id=tenant_id,
                signal_type=candidate.signal_type,
                severity=candidate.severity,
                agent_id=candidate.agent_id,
                task_id=candidate.task_id,
                message=candidate.message,
                metadata_=candidate.metadata,
                created_at=now,
            )
        )
        ledger.add(candidate.key)
        created.append(candidate)
        logger.warning(
            "Risk signal %s (%s) for tenant %s: %s",
            candidate.key.label(),
            candidate.severity.value,
            tenant_id,
            candidate.message,
        )
    await session.flush()

    result = AnalysisResult(
        created=[c.key.label() for c in created],
        alerts=[c for c in created if c.severity in ALERTING_SEVERITIES],
    )
    if dispatcher is not None:
        dispatch_alerts(dispatcher, tenant_id, result)
    return result


# =============================================================================
# Operator views
# =============================================================================


async def resolve_signal(
    session: AsyncSession, tenant_id: str, signal_id: str, *, now: int | None = None
) -> RiskSignal:
    """Mark a signal resolved so the same condition may be reported again."""
    result = await session.execute(
        select(RiskSignal).where(RiskSignal.id == signal_id, RiskSignal.tenant_id == tenant_id)
    )
    signal = result.scalar_one_or_none()
    if signal is None:
        raise not_found("Signal")
    if signal.resolved_at is None:
        signal.resolved_at = resolve_now(now)
    return signal


async def get_active_signals(
    session: AsyncSession, tenant_id: str, *, limit: int | None = None
) -> list[RiskSignal]:
    """Unresolved signals, newest first."""
    result = await session.execute(
        select(RiskSignal)
        .where(RiskSignal.tenant_id == tenant_id, RiskSignal.resolved_at.is_(None))
        .order_by(RiskSignal.created_at.desc(), RiskSignal.id)
        .limit(limit or settings.active_signal_limit)
    )
    return list(result.scalars().all())


async def get_signal_counts(session: AsyncSession, tenant_id: str) -> dict[str, int]:
    counts = {"total": 0, **{severity.value: 0 for severity in Severity}}
    for signal in await db.list_unresolved_signals(session, tenant_id):
        counts["total"] += 1
        counts[signal.severity] += 1
    return counts
