"""Error types and helpers for the dispatch engine."""

from __future__ import annotations

import re
from collections.abc import Iterator

import click


class DispatchError(click.ClickException):
    """Base class for errors surfaced to callers of a dispatch operation."""


class NotFoundError(DispatchError):
    """Raised when an entity is missing or belongs to another tenant."""


class PreconditionFailedError(DispatchError):
    """Raised when an operation cannot proceed from the current state."""


class DuplicateAgentError(DispatchError):
    """Raised when an agent name clashes (case-insensitively) within a tenant."""


class SchemaNotInitializedError(DispatchError):
    """Raised when the database schema/migrations have not been applied."""


def not_found(entity_name: str) -> NotFoundError:
    return NotFoundError(f"{entity_name} not found")


# missing-table messages that name the table
_MISSING_TABLE_PATTERNS = (
    re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE),  # PostgreSQL
    re.compile(r"no such table:\s*(?P<table>\w+)", re.IGNORECASE),  # SQLite
)
# asyncpg class name or SQLSTATE when the message does not name the table
_MISSING_TABLE_MARKERS = ("undefinedtableerror", "sqlstate 42p01")
_UNQUOTED_RELATION_RE = re.compile(r"\brelation\b.*\bdoes not exist\b", re.IGNORECASE)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def missing_table_name(exc: BaseException) -> str | None:
    """Name of the table a driver error complains about, if it says."""
    for link in _exception_chain(exc):
        text = str(link)
        for pattern in _MISSING_TABLE_PATTERNS:
            if match := pattern.search(text):
                return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """True when ``exc`` (or anything it was raised from) reports a missing table."""
    if missing_table_name(exc) is not None:
        return True
    for link in _exception_chain(exc):
        text = str(link)
        haystack = f"{type(link).__name__} {text}".lower()
        if any(marker in haystack for marker in _MISSING_TABLE_MARKERS):
            return True
        if _UNQUOTED_RELATION_RE.search(text):
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    subject = f"table `{table}` is missing" if table else "tables are missing"
    return "\n".join(
        [
            f"The dispatch database is not set up ({subject}).",
            "Apply the migrations: `alembic upgrade head`",
            "Or, for a throwaway database: `dispatch init-db`",
        ]
    )
