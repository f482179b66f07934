"""Error types and helpers for the codeforge engine."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

import click


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


class CodeforgeError(RuntimeError):
    """Base class for engine errors."""


class QuotaExceededError(CodeforgeError):
    """Admission control refused a provider call; retry after ``reset_at``."""

    def __init__(self, operation: str, reset_at: datetime | None, *, count: int = 0, limit: int = 0) -> None:
        self.operation = operation
        self.reset_at = reset_at
        self.count = count
        self.limit = limit
        when = reset_at.isoformat() if reset_at else "unknown"
        super().__init__(f"Rate limit exceeded for {operation} ({count}/{limit}), resets at {when}")


class SandboxError(CodeforgeError):
    """Base class for sandbox provider failures."""


class SandboxNotFoundError(SandboxError):
    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} not found")


class SandboxTimeoutError(SandboxError):
    def __init__(self, sandbox_id: str, operation: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} timed out during {operation}")


class SandboxAuthenticationError(SandboxError):
    pass


class SandboxExpiredError(SandboxError):
    """The job's inherited sandbox is gone and its files cannot be restored."""

    def __init__(self, sandbox_id: str | None) -> None:
        self.sandbox_id = sandbox_id
        super().__init__("Sandbox is no longer active")


class SandboxProviderError(SandboxError):
    pass


class CircuitOpenError(SandboxError):
    """Raised when the circuit breaker rejects a call without attempting it."""


class CompletionAPIError(CodeforgeError):
    """Raised when the completion gateway returns an error."""


class EnvelopeParseError(CodeforgeError):
    """Raised when a role's output does not match its expected envelope."""

    def __init__(self, role: str, reason: str) -> None:
        self.role = role
        self.reason = reason
        super().__init__(f"{role} output did not match envelope: {reason}")


# =============================================================================
# Schema detection
# =============================================================================

_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or for local development: `codeforge init-db`",
    ]
    return "\n".join(lines)


# =============================================================================
# Sanitization
# =============================================================================

_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"sk-[A-Za-z0-9_-]{20,}"), "[API_KEY_REDACTED]"),
    (re.compile(r"e2b_[A-Za-z0-9]{20,}"), "[API_KEY_REDACTED]"),
    (re.compile(r"gsk_[A-Za-z0-9]+"), "[API_KEY_REDACTED]"),
    (re.compile(r"AIza[A-Za-z0-9_-]+"), "[API_KEY_REDACTED]"),
    (re.compile(r"Bearer\s+[A-Za-z0-9._-]+", re.IGNORECASE), "[BEARER_TOKEN_REDACTED]"),
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), "[JWT_TOKEN_REDACTED]"),
    (re.compile(r"(password|secret|token|api[_-]?key|key)\s*[:=]\s*\S+", re.IGNORECASE), r"\1=[REDACTED]"),
]

_TRACEBACK_MARKER = "Traceback (most recent call last)"


def sanitize_error(error: Any, limit: int = 500) -> str:
    """Render an error for user-facing logs: redacted, single-frame, truncated."""
    if isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}"
    else:
        text = str(error)

    if _TRACEBACK_MARKER in text:
        # Keep only the final exception line of a formatted traceback.
        lines = [line for line in text.strip().splitlines() if line.strip()]
        text = lines[-1] if lines else ""

    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)

    text = text.strip()
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text
