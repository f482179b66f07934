"""
Base workflow abstractions for durable pipeline runs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import JobStatus


class WorkflowOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass
class WorkflowContext:
    """Context passed through workflow execution."""

    job_id: str
    state: dict[str, Any] = field(default_factory=dict)
    replayed: list[str] = field(default_factory=list)

    def get(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.state[key] = value


# =============================================================================
# Step results
# =============================================================================


@dataclass(frozen=True)
class Ok:
    """Step finished; ``output`` is checkpointed and replayed on resume."""

    output: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryableError:
    """Step failed in a way worth retrying with backoff."""

    error: str
    retry_after: Optional[float] = None


@dataclass(frozen=True)
class FatalError:
    """Step failed permanently; the job fails without further attempts."""

    error: str


@dataclass(frozen=True)
class Deferred:
    """A provider quota is exhausted; resume the run after ``resume_at``."""

    reason: str
    resume_at: Optional[datetime] = None


StepResult = Ok | RetryableError | FatalError | Deferred


# =============================================================================
# Steps
# =============================================================================


class WorkflowStep(ABC):
    """Base class for a workflow step."""

    name: str
    description: str = ""
    # Job status entered when the step starts, if any.
    job_status: JobStatus | None = None

    @abstractmethod
    async def execute(self, ctx: WorkflowContext) -> StepResult:
        pass

    async def persist(self, session: AsyncSession, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        """Write the step's records in the same transaction as its checkpoint."""
        del session
        del ctx
        del output

    def apply(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        """Fold the step's output into the context, live or replayed."""
        del ctx
        del output

    async def on_complete(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        """Called once after the checkpoint commits; not called on replay."""
        del ctx
        del output


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``."""
        return min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))
