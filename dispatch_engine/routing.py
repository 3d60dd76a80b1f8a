"""Instruction classification and routing to a role.

A free-text instruction is scored against keyword and pattern rules per task
type, then routed to a routing id (a role such as ``backend-dev``) together
with the default escalation chain for that kind of work. Agents opt into a
role through ``Agent.routing_id``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from .models import TaskPriority


class TaskType(StrEnum):
    CODING = "CODING"
    REASONING = "REASONING"
    CONTENT = "CONTENT"
    RESEARCH = "RESEARCH"
    COMMUNICATION = "COMMUNICATION"
    FINANCE = "FINANCE"
    OPERATIONS = "OPERATIONS"
    STRATEGY = "STRATEGY"
    ROUTING_ONLY = "ROUTING_ONLY"


class RequestPriority(StrEnum):
    CRITICAL = "CRITICAL"
    URGENT = "URGENT"
    NORMAL = "NORMAL"
    LOW = "LOW"


class Phase(StrEnum):
    CODING = "coding"
    REASONING = "reasoning"
    ANY = "any"


PRIORITY_MAP: dict[RequestPriority, TaskPriority] = {
    RequestPriority.CRITICAL: TaskPriority.URGENT,
    RequestPriority.URGENT: TaskPriority.HIGH,
    RequestPriority.NORMAL: TaskPriority.MEDIUM,
    RequestPriority.LOW: TaskPriority.LOW,
}

DEFAULT_BUSINESS_UNIT = "cross"
UNCLASSIFIED_CONFIDENCE = 0.3


@dataclass(frozen=True)
class ClassificationRule:
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern[str], ...]


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


CLASSIFICATION_RULES: dict[TaskType, ClassificationRule] = {
    TaskType.CODING: ClassificationRule(
        keywords=(
            "code", "build", "implement", "debug", "fix bug", "script",
            "function", "api", "endpoint", "component", "deploy", "refactor",
            "database", "query", "migration", "webhook", "integration",
        ),
        patterns=(
            _rx(r"\b(write|create|build|implement|fix|debug|refactor)\b.*\b(code|function|api|component|script|endpoint)\b"),
            _rx(r"\b(typescript|javascript|python|react|node|sql|css|html)\b"),
        ),
    ),
    TaskType.REASONING: ClassificationRule(
        keywords=(
            "analyze", "calculate", "test", "validate", "schedule",
            "optimize", "route", "efficiency", "compare", "evaluate",
        ),
        patterns=(
            _rx(r"\b(analyze|calculate|test|validate|optimize|compare)\b"),
            _rx(r"\b(data|numbers|metrics|performance|efficiency)\b"),
        ),
    ),
    TaskType.CONTENT: ClassificationRule(
        keywords=(
            "write", "draft", "copy", "post", "email campaign", "social media",
            "blog", "ad copy", "review response", "documentation",
        ),
        patterns=(
            _rx(r"\b(write|draft|create)\b.*\b(post|copy|email|content|campaign|ad)\b"),
            _rx(r"\b(social media|facebook|instagram|linkedin|google business)\b"),
        ),
    ),
    TaskType.RESEARCH: ClassificationRule(
        keywords=(
            "research", "competitor", "market", "trend", "analysis",
            "investigate", "benchmark", "compare vendors",
        ),
        patterns=(
            _rx(r"\b(research|investigate|benchmark|compare)\b.*\b(market|competitor|vendor|tool|trend)\b"),
        ),
    ),
    TaskType.COMMUNICATION: ClassificationRule(
        keywords=(
            "email", "reply", "respond", "schedule meeting", "follow up",
            "reminder", "calendar", "reschedule", "confirm",
        ),
        patterns=(_rx(r"\b(email|reply|respond|schedule|follow.up|remind)\b"),),
    ),
    TaskType.FINANCE: ClassificationRule(
        keywords=(
            "expense", "invoice", "budget", "p&l", "profit", "cost",
            "revenue", "pricing", "quote", "estimate", "roi",
        ),
        patterns=(
            _rx(r"\b(expense|invoice|budget|profit|cost|revenue|pricing|quote)\b"),
            re.compile(r"\$\d+"),
        ),
    ),
    TaskType.OPERATIONS: ClassificationRule(
        keywords=(
            "dispatch", "schedule crew", "assign job", "route", "fleet",
            "maintenance", "onboard", "hire", "train", "policy",
        ),
        patterns=(_rx(r"\b(dispatch|crew|assign|fleet|maintenance|onboard|hire|train)\b"),),
    ),
    TaskType.STRATEGY: ClassificationRule(
        keywords=(
            "strategy", "architecture", "decision", "expand", "launch",
            "pivot", "roadmap", "franchise", "package", "pricing strategy",
        ),
        patterns=(
            _rx(r"\b(strategy|architecture|decision|roadmap|expand|launch)\b"),
            _rx(r"\b(should we|what if|long.term|big picture)\b"),
        ),
    ),
    TaskType.ROUTING_ONLY: ClassificationRule(keywords=(), patterns=()),
}


@dataclass(frozen=True)
class Classification:
    task_type: TaskType
    confidence: float


def score_instruction(instruction: str, rule: ClassificationRule) -> int:
    """One point per keyword contained, two per pattern matched."""
    lowered = instruction.lower()
    score = sum(1 for keyword in rule.keywords if keyword in lowered)
    score += sum(2 for pattern in rule.patterns if pattern.search(instruction))
    return score


def classify_task(instruction: str) -> Classification:
    """Best-scoring task type; ties go to the type declared first.

    Confidence is ``best / (total + 1)`` over all types that scored.
    """
    scores = {
        task_type: score
        for task_type, rule in CLASSIFICATION_RULES.items()
        if (score := score_instruction(instruction, rule)) > 0
    }
    if not scores:
        return Classification(TaskType.ROUTING_ONLY, UNCLASSIFIED_CONFIDENCE)

    best_type = max(scores, key=scores.__getitem__)
    return Classification(best_type, scores[best_type] / (sum(scores.values()) + 1))


@dataclass(frozen=True)
class Route:
    routing_id: str
    phase: Phase
    escalation_path: tuple[str, ...]
    rationale: str


@dataclass(frozen=True)
class RouteRule:
    """Send matching instructions of ``task_type`` to ``route``.

    A rule without ``pattern`` is the fallback for its task type. ``unless``
    hands the instruction to ``otherwise`` instead.
    """

    task_type: TaskType
    route: Route
    pattern: re.Pattern[str] | None = None
    unless: re.Pattern[str] | None = None
    otherwise: Route | None = None


def _route(routing_id: str, phase: Phase, path: tuple[str, ...], rationale: str) -> Route:
    return Route(routing_id, phase, path, rationale)


_TO_ARCHITECT = ("architect",)
_VIA_BACKEND = ("backend-dev", "architect")

ROUTE_RULES: tuple[RouteRule, ...] = (
    RouteRule(TaskType.STRATEGY, _route("architect", Phase.ANY, (), "Strategic decision requires Lead Architect")),
    RouteRule(
        TaskType.CODING,
        _route("frontend-dev", Phase.CODING, _VIA_BACKEND, "Frontend/UI task"),
        pattern=_rx(r"\b(react|component|ui|ux|frontend|css|tailwind|layout|dashboard)\b"),
    ),
    RouteRule(
        TaskType.CODING,
        _route("auto-eng", Phase.CODING, _VIA_BACKEND, "Automation/integration task"),
        pattern=_rx(r"\b(zapier|ghl|gohighlevel|workflow|automation|webhook|integration|zap)\b"),
    ),
    RouteRule(
        TaskType.CODING,
        _route("devops", Phase.CODING, _VIA_BACKEND, "Infrastructure/deployment task"),
        pattern=_rx(r"\b(deploy|ci.?cd|docker|server|infra|nginx|ssl|env|ollama|pipeline)\b"),
    ),
    RouteRule(TaskType.CODING, _route("backend-dev", Phase.CODING, _TO_ARCHITECT, "General backend/coding task")),
    RouteRule(
        TaskType.REASONING,
        _route("qa", Phase.REASONING, _VIA_BACKEND, "QA/testing task"),
        pattern=_rx(r"\b(test|qa|bug|validation|verify|review code)\b"),
    ),
    RouteRule(
        TaskType.REASONING,
        _route("dispatcher", Phase.REASONING, _TO_ARCHITECT, "Scheduling/dispatch task"),
        pattern=_rx(r"\b(schedule|dispatch|crew|assign|route|calendar)\b"),
    ),
    RouteRule(
        TaskType.REASONING,
        _route("fleet", Phase.REASONING, ("finance", "architect"), "Fleet management task"),
        pattern=_rx(r"\b(fleet|fuel|driver|vehicle|maintenance|mile)\b"),
    ),
    RouteRule(
        TaskType.REASONING,
        _route("finance", Phase.REASONING, _TO_ARCHITECT, "Financial/analytical reasoning task"),
    ),
    RouteRule(
        TaskType.CONTENT,
        _route("tech-writer", Phase.ANY, ("marketing",), "Technical documentation"),
        pattern=_rx(r"\b(doc|readme|api doc|technical|documentation)\b"),
    ),
    RouteRule(TaskType.CONTENT, _route("marketing", Phase.ANY, _TO_ARCHITECT, "Marketing/creative content")),
    RouteRule(TaskType.RESEARCH, _route("research", Phase.ANY, _TO_ARCHITECT, "Research and analysis task")),
    RouteRule(
        TaskType.COMMUNICATION,
        _route("exec-sec", Phase.ANY, ("sales", "architect"), "Communication/scheduling task"),
    ),
    RouteRule(
        TaskType.FINANCE,
        _route("estimator", Phase.ANY, ("finance", "architect"), "Quoting/estimation task"),
        pattern=_rx(r"\b(quote|estimate|pricing|sq.?ft|square foot)\b"),
    ),
    RouteRule(TaskType.FINANCE, _route("finance", Phase.REASONING, _TO_ARCHITECT, "Financial analysis task")),
    RouteRule(
        TaskType.OPERATIONS,
        _route("hr", Phase.ANY, _TO_ARCHITECT, "HR/training task"),
        pattern=_rx(r"\b(onboard|hire|train|policy|hr|employee)\b"),
    ),
    RouteRule(
        TaskType.OPERATIONS,
        _route("dispatcher", Phase.REASONING, _TO_ARCHITECT, "Operations/dispatch task"),
        pattern=_rx(r"\b(dispatch|schedule|crew|assign|job)\b"),
    ),
    RouteRule(
        TaskType.OPERATIONS,
        _route("fleet", Phase.REASONING, _TO_ARCHITECT, "Fleet operations task"),
        pattern=_rx(r"\b(fleet|fuel|vehicle|maintenance)\b"),
    ),
    RouteRule(
        TaskType.OPERATIONS,
        _route("cust-service", Phase.ANY, ("sales", "architect"), "Customer service task"),
        pattern=_rx(r"\b(customer|complaint|review|feedback|chat|sms)\b"),
        unless=_rx(r"\b(lead|sale|convert|close|upsell|follow.up)\b"),
        otherwise=_route("sales", Phase.ANY, _TO_ARCHITECT, "Sales/lead qualification (revenue-critical)"),
    ),
    RouteRule(
        TaskType.OPERATIONS,
        _route("dispatcher", Phase.REASONING, _TO_ARCHITECT, "General operations task"),
    ),
)

FALLBACK_ROUTE = _route(
    "exec-sec", Phase.ANY, _TO_ARCHITECT, "Unclassified task - defaulting to Executive Secretary"
)


def route_task(task_type: TaskType, instruction: str) -> Route:
    """First matching rule for ``task_type``; unknown types fall back to the executive secretary."""
    for rule in ROUTE_RULES:
        if rule.task_type != task_type:
            continue
        if rule.pattern is not None and not rule.pattern.search(instruction):
            continue
        if rule.unless is not None and rule.otherwise is not None and rule.unless.search(instruction):
            return rule.otherwise
        return rule.route
    return FALLBACK_ROUTE
