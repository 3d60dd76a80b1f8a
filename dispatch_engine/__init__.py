"""
Dispatch Engine

Work dispatch and governance for a roster of agents: next-task selection,
escalation along per-agent escalation paths, risk signal detection and an
operator dispatch snapshot, with PostgreSQL-backed state.
"""

__version__ = "0.1.0"

# Configuration
from dispatch_engine.config import Settings

# Errors
from dispatch_engine.errors import (
    DispatchError,
    DuplicateAgentError,
    NotFoundError,
    PreconditionFailedError,
)

# Escalation
from dispatch_engine.escalation import (
    EscalationOutcome,
    OrchestrationEventType,
    escalate,
    log_orchestration_event,
)

# Core models
from dispatch_engine.models import (
    Agent,
    AgentStatus,
    RiskSignal,
    Severity,
    SignalType,
    Task,
    TaskPriority,
    TaskStatus,
)

# Risk detection
from dispatch_engine.risk import AnalysisResult, RiskThresholds, analyze_risks, dispatch_alerts, resolve_signal

# Routing
from dispatch_engine.routing import Classification, Route, TaskType, classify_task, route_task

# Selection
from dispatch_engine.selector import Selection, select_next_task

# Dispatch snapshot
from dispatch_engine.summary import DispatchSummary, build_dispatch_summary

# Task lifecycle
from dispatch_engine.tasks import ResultAction, ResultReport, Submission, report_task_result, submit_task

__all__ = [
    # Version
    "__version__",
    # Models
    "Agent",
    "Task",
    "RiskSignal",
    "AgentStatus",
    "TaskStatus",
    "TaskPriority",
    "SignalType",
    "Severity",
    # Config
    "Settings",
    # Errors
    "DispatchError",
    "NotFoundError",
    "PreconditionFailedError",
    "DuplicateAgentError",
    # Selection
    "Selection",
    "select_next_task",
    # Escalation
    "EscalationOutcome",
    "OrchestrationEventType",
    "escalate",
    "log_orchestration_event",
    # Risk
    "AnalysisResult",
    "RiskThresholds",
    "analyze_risks",
    "dispatch_alerts",
    "resolve_signal",
    # Routing
    "Classification",
    "Route",
    "TaskType",
    "classify_task",
    "route_task",
    # Tasks
    "ResultAction",
    "ResultReport",
    "Submission",
    "report_task_result",
    "submit_task",
    # Summary
    "DispatchSummary",
    "build_dispatch_summary",
]
