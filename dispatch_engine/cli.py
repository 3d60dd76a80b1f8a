"""Main CLI entry point for the dispatch engine."""

import asyncio
import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .agents import register_agent
from .config import settings
from .escalation import (
    OrchestrationEventType,
    escalate,
    get_orchestration_metrics,
    get_task_escalation_timeline,
    log_orchestration_event,
)
from .models import AgentStatus, TaskPriority
from .risk import analyze_risks, dispatch_alerts, get_active_signals, get_signal_counts, resolve_signal
from .selector import select_next_task
from .summary import build_dispatch_summary
from .routing import DEFAULT_BUSINESS_UNIT, RequestPriority
from .tasks import ResultAction, create_task, report_task_result, submit_task
from .webhooks import RedisWebhookDispatcher, run_webhook_worker

console = Console()

SEVERITY_STYLES = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "dim"}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Logging level (default from DISPATCH_LOG_LEVEL)")
def main(log_level: str | None) -> None:
    """Work dispatch, escalation and risk detection for agent rosters."""
    _configure_logging(log_level or settings.log_level)


@main.command("init-db")
def init_db() -> None:
    """Create all tables (development databases only)."""
    asyncio.run(db.init_db())
    console.print("[green]Schema created.[/green]")


@main.command("add-agent")
@click.argument("tenant")
@click.argument("name")
@click.option("--role", default="", help="Agent role description")
@click.option(
    "--status",
    type=click.Choice([s.value for s in AgentStatus]),
    default=AgentStatus.IDLE.value,
    show_default=True,
)
@click.option("--escalate-to", "escalation_path", multiple=True, help="Escalation path entry (repeatable, in order)")
@click.option("--routing-id", default=None, help="Routing role this agent takes work for (e.g. backend-dev)")
@click.option("--business-unit", default=None)
def add_agent(
    tenant: str,
    name: str,
    role: str,
    status: str,
    escalation_path: tuple[str, ...],
    routing_id: str | None,
    business_unit: str | None,
) -> None:
    """Register an agent NAME for TENANT."""

    async def run() -> None:
        async with db.get_session() as session:
            agent = await register_agent(
                session,
                tenant,
                name,
                role=role,
                status=AgentStatus(status),
                escalation_path=list(escalation_path) or None,
                routing_id=routing_id,
                business_unit=business_unit,
            )
            console.print(f"[green]Agent created:[/green] {agent.name} ({agent.id})")

    asyncio.run(run())


@main.command("add-task")
@click.argument("tenant")
@click.argument("title")
@click.option("--priority", type=click.Choice([p.value for p in TaskPriority]), default=None)
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
def add_task(tenant: str, title: str, priority: str | None, tags: tuple[str, ...]) -> None:
    """Put a new task titled TITLE in TENANT's inbox."""

    async def run() -> None:
        async with db.get_session() as session:
            task = await create_task(
                session,
                tenant,
                title,
                priority=TaskPriority(priority) if priority else None,
                tags=list(tags),
            )
            console.print(f"[green]Task created:[/green] {task.id}")

    asyncio.run(run())


@main.command()
@click.argument("tenant")
@click.argument("instruction")
@click.option("--business-unit", default=DEFAULT_BUSINESS_UNIT, show_default=True)
@click.option(
    "--priority",
    type=click.Choice([p.value for p in RequestPriority]),
    default=RequestPriority.NORMAL.value,
    show_default=True,
)
@click.option("--from-agent", default=None, help="Who is submitting (default: user)")
def submit(tenant: str, instruction: str, business_unit: str, priority: str, from_agent: str | None) -> None:
    """Classify INSTRUCTION and route it to the agent holding the matching role."""

    async def run() -> None:
        async with db.get_session() as session:
            submission = await submit_task(
                session,
                tenant,
                instruction,
                business_unit=business_unit,
                priority=RequestPriority(priority),
                from_agent=from_agent,
            )
            task = submission.task
            assignee = submission.agent.name if submission.agent is not None else "[yellow]inbox[/yellow]"
            path = " → ".join(submission.route.escalation_path) or "-"
            console.print(
                Panel(
                    f"[bold]{task.title}[/bold]\n\n"
                    f"Type: [cyan]{submission.classification.task_type}[/cyan] "
                    f"({submission.classification.confidence:.2f})\n"
                    f"Role: {submission.route.routing_id} → {assignee}\n"
                    f"Escalation: {path}\n"
                    f"Rationale: {submission.route.rationale}",
                    title=f"Submitted: {task.id}",
                )
            )

    asyncio.run(run())


@main.command()
@click.argument("tenant")
@click.argument("task_id")
@click.option("--failed", is_flag=True, help="Report a failure instead of a completion")
@click.option("--reason", default=None, help="Failure reason")
@click.option("--reporter", default=None, help="Agent reporting the failure (default: last handler)")
def report(tenant: str, task_id: str, failed: bool, reason: str | None, reporter: str | None) -> None:
    """Report TASK_ID completed, or failed and escalate it."""

    async def run() -> None:
        async with db.get_session() as session:
            outcome = await report_task_result(
                session, tenant, task_id, succeeded=not failed, failure_reason=reason, reporter=reporter
            )

        match outcome.action:
            case ResultAction.COMPLETED:
                console.print(f"[green]Completed[/green] {outcome.task_id}")
            case ResultAction.ESCALATED:
                hop = outcome.escalation
                console.print(
                    f"[yellow]Failed[/yellow] {outcome.task_id}: reassigned {hop.from_agent} → "
                    f"[bold]{hop.to_agent}[/bold]"
                )
            case ResultAction.FAILED:
                console.print(f"[red]Archived[/red] {outcome.task_id}: {outcome.reason}")

    asyncio.run(run())


@main.command("next-task")
@click.argument("tenant")
@click.argument("agent_name")
def next_task(tenant: str, agent_name: str) -> None:
    """Show which task AGENT_NAME should work on next."""

    async def run() -> None:
        async with db.get_session() as session:
            selection = await select_next_task(session, tenant, agent_name)

        if selection.task is None:
            console.print(f"[yellow]{selection.reason}[/yellow]")
            return
        task = selection.task
        console.print(
            Panel(
                f"[bold]{task.title}[/bold]\n\n"
                f"Status: [cyan]{task.status}[/cyan]\n"
                f"Priority: {task.priority or 'none'}\n"
                f"Reason: {selection.reason}",
                title=f"Next task: {task.id}",
            )
        )

    asyncio.run(run())


@main.command("escalate")
@click.argument("tenant")
@click.argument("task_id")
def escalate_cmd(tenant: str, task_id: str) -> None:
    """Route TASK_ID to the next agent in its escalation path."""

    async def run() -> None:
        async with db.get_session() as session:
            outcome = await escalate(session, tenant, task_id)
        wrap_note = " [dim](wrapped to head of path)[/dim]" if outcome.wrapped else ""
        console.print(
            f"[green]Escalated[/green] {outcome.task_id}: {outcome.from_agent} → "
            f"[bold]{outcome.to_agent}[/bold]{wrap_note}"
        )

    asyncio.run(run())


@main.command("log-event")
@click.argument("tenant")
@click.argument("task_id")
@click.argument("agent_name")
@click.argument("event_type", type=click.Choice([e.value for e in OrchestrationEventType]))
@click.option("--decision", default=None)
@click.option("--from-agent", default=None)
@click.option("--to-agent", default=None)
@click.option("--reason", default=None)
@click.option("--feedback", default=None)
def log_event(
    tenant: str,
    task_id: str,
    agent_name: str,
    event_type: str,
    decision: str | None,
    from_agent: str | None,
    to_agent: str | None,
    reason: str | None,
    feedback: str | None,
) -> None:
    """Record an orchestration event reported by AGENT_NAME."""

    async def run() -> None:
        async with db.get_session() as session:
            task = await log_orchestration_event(
                session,
                tenant,
                task_id,
                agent_name,
                OrchestrationEventType(event_type),
                decision=decision,
                from_agent=from_agent,
                to_agent=to_agent,
                reason=reason,
                feedback=feedback,
            )
            console.print(
                f"[green]Logged {event_type}[/green] on {task.id} "
                f"(escalation attempts: {task.escalation_attempts})"
            )

    asyncio.run(run())


@main.command()
@click.argument("tenant")
@click.argument("task_id")
def timeline(tenant: str, task_id: str) -> None:
    """Show the escalation history of TASK_ID."""

    async def run() -> None:
        async with db.get_session() as session:
            history = await get_task_escalation_timeline(session, tenant, task_id)

        if not history:
            console.print("[dim]No escalation history.[/dim]")
            return
        table = Table(title=f"Escalation timeline: {task_id}")
        table.add_column("#", style="cyan")
        table.add_column("Agent")
        table.add_column("Status")
        table.add_column("Timestamp")
        table.add_column("Reason")
        for i, entry in enumerate(history, start=1):
            table.add_row(
                str(i),
                str(entry.get("agentId")),
                str(entry.get("status")),
                str(entry.get("timestamp")),
                entry.get("reason") or "-",
            )
        console.print(table)

    asyncio.run(run())


@main.command()
@click.argument("tenant")
def metrics(tenant: str) -> None:
    """Today's orchestration event counts for TENANT."""

    async def run() -> None:
        async with db.get_session() as session:
            data = await get_orchestration_metrics(session, tenant)

        table = Table(title=f"Orchestration metrics: {tenant}")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        for key, value in data.items():
            table.add_row(key, "-" if value is None else str(value))
        console.print(table)

    asyncio.run(run())


@main.command("analyze-risks")
@click.argument("tenant")
@click.option("--no-webhooks", is_flag=True, help="Do not enqueue webhook events")
def analyze_risks_cmd(tenant: str, no_webhooks: bool) -> None:
    """Scan TENANT for anomalies and create risk signals."""

    async def run() -> None:
        async with db.get_session() as session:
            result = await analyze_risks(session, tenant)
        if not no_webhooks and result.alerts:
            dispatcher = RedisWebhookDispatcher()
            dispatch_alerts(dispatcher, tenant, result)
            await dispatcher.drain()

        if not result.created:
            console.print("[green]No new risk signals.[/green]")
            return
        console.print(f"[yellow]{result.count} new signal(s):[/yellow]")
        for label in result.created:
            console.print(f"  • {label}")

    asyncio.run(run())


@main.command()
@click.argument("tenant")
@click.option("--limit", default=50, help="Number of signals to show")
def signals(tenant: str, limit: int) -> None:
    """List active risk signals for TENANT."""

    async def run() -> None:
        async with db.get_session() as session:
            active = await get_active_signals(session, tenant, limit=limit)
            counts = await get_signal_counts(session, tenant)

        if not active:
            console.print("[green]No active risk signals.[/green]")
            return
        table = Table(title=f"Active risk signals ({counts['total']})")
        table.add_column("ID", style="dim")
        table.add_column("Type", style="cyan")
        table.add_column("Severity")
        table.add_column("Agent / Task")
        table.add_column("Message")
        for s in active:
            style = SEVERITY_STYLES.get(s.severity, "")
            table.add_row(
                s.id,
                s.signal_type,
                f"[{style}]{s.severity}[/{style}]" if style else s.severity,
                s.agent_id or s.task_id or "-",
                s.message,
            )
        console.print(table)

    asyncio.run(run())


@main.command("resolve-signal")
@click.argument("tenant")
@click.argument("signal_id")
def resolve_signal_cmd(tenant: str, signal_id: str) -> None:
    """Mark SIGNAL_ID resolved."""

    async def run() -> None:
        async with db.get_session() as session:
            await resolve_signal(session, tenant, signal_id)
        console.print(f"[green]Resolved[/green] {signal_id}")

    asyncio.run(run())


@main.command()
@click.argument("tenant")
@click.option("--json", "as_json", is_flag=True, help="Print the raw snapshot as JSON")
def summary(tenant: str, as_json: bool) -> None:
    """Dispatch snapshot: idle/active agents, inbox queue, stalled work."""

    async def run() -> None:
        async with db.get_session() as session:
            snapshot = await build_dispatch_summary(session, tenant)

        if as_json:
            click.echo(json.dumps(snapshot.to_dict(), indent=2))
            return

        counts = snapshot.counts
        console.print(
            Panel(
                f"Idle: {counts['idle']}  Active: {counts['active']}  "
                f"Queue: {counts['queue_depth']}  Stalled: {counts['stalled']}",
                title=f"Dispatch summary: {tenant}",
            )
        )

        if snapshot.active_agents:
            table = Table(title="Active agents")
            table.add_column("Agent", style="cyan")
            table.add_column("Role")
            table.add_column("Current task")
            for a in snapshot.active_agents:
                table.add_row(a.name, a.role, a.current_task.title if a.current_task else "-")
            console.print(table)

        if snapshot.inbox_tasks:
            table = Table(title="Inbox queue")
            table.add_column("Priority", style="cyan")
            table.add_column("Title")
            table.add_column("Tags")
            for t in snapshot.inbox_tasks:
                table.add_row(t.priority, t.title, ", ".join(t.tags) or "-")
            console.print(table)

        if snapshot.stalled_tasks:
            table = Table(title="Stalled tasks")
            table.add_column("Title")
            table.add_column("Assignees")
            table.add_column("Hours", justify="right")
            for t in snapshot.stalled_tasks:
                table.add_row(t.title, ", ".join(t.assignees) or "-", str(t.hours_stalled))
            console.print(table)

    asyncio.run(run())


@main.command("webhook-worker")
@click.option("--consumer", default="worker-1", help="Consumer name within the worker group")
@click.option("--max-batches", type=int, default=None, help="Stop after this many reads")
def webhook_worker(consumer: str, max_batches: int | None) -> None:
    """Deliver queued webhook events."""
    handled = asyncio.run(
        run_webhook_worker(consumer=consumer, max_batches=max_batches, handle_signals=True)
    )
    console.print(f"[green]Delivered {handled} event(s).[/green]")


if __name__ == "__main__":
    main()
