"""
Multi-agent pipeline: PLAN -> IMPLEMENT -> REVIEW -> TEST -> (FIX -> IMPLEMENT | DONE | FAILED).

The transition function is pure; ``CodegenPipeline`` drives it through the
workflow executor so every role run is a checkpointed step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .events import EventEmitter, EventType
from .models import JobStatus, Verdict
from .sandbox import SandboxLifecycleManager
from .workflow.base import Deferred, FatalError, Ok, RetryableError, WorkflowContext, WorkflowOutcome
from .workflow.executor import WorkflowExecutor
from .workflow.pipeline_steps import (
    AcquireSandboxStep,
    FixStep,
    ImplementStep,
    PlanStep,
    ReviewStep,
    StepDeps,
    TestStep,
)

logger = logging.getLogger(__name__)


class Stage(StrEnum):
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    TEST = "test"
    FIX = "fix"
    DONE = "done"
    FAILED = "failed"


class PipelineEntry(StrEnum):
    PLAN = "plan"
    TEST = "test"


@dataclass(frozen=True)
class PipelineLimits:
    max_review_cycles: int = 2
    max_fix_cycles: int = 2


@dataclass
class Cycles:
    fix: int = 0
    review: int = 0


@dataclass(frozen=True)
class Transition:
    stage: Stage
    review_cap_hit: bool = False
    fix_cap_hit: bool = False


def next_stage(stage: Stage, output: dict[str, Any], cycles: Cycles, limits: PipelineLimits) -> Transition:
    """Decide the stage after ``stage`` produced ``output``."""
    match stage:
        case Stage.PLAN:
            return Transition(Stage.IMPLEMENT)
        case Stage.IMPLEMENT:
            return Transition(Stage.REVIEW)
        case Stage.REVIEW:
            if output.get("verdict") == Verdict.APPROVE:
                return Transition(Stage.TEST)
            if cycles.review >= limits.max_review_cycles:
                return Transition(Stage.TEST, review_cap_hit=True)
            return Transition(Stage.IMPLEMENT)
        case Stage.TEST:
            if output.get("verdict") == Verdict.PASS:
                return Transition(Stage.DONE)
            if cycles.fix >= limits.max_fix_cycles:
                return Transition(Stage.FAILED, fix_cap_hit=True)
            return Transition(Stage.FIX)
        case Stage.FIX:
            return Transition(Stage.IMPLEMENT)
        case Stage.DONE | Stage.FAILED:
            return Transition(stage)


def step_key(stage: Stage, cycles: Cycles) -> str:
    """Checkpoint key for the next run of ``stage`` given the cycle counters."""
    match stage:
        case Stage.PLAN:
            return "plan"
        case Stage.IMPLEMENT:
            return f"implement-f{cycles.fix}-r{cycles.review + 1}"
        case Stage.REVIEW:
            return f"review-f{cycles.fix}-r{cycles.review + 1}"
        case Stage.TEST:
            return f"test-f{cycles.fix}"
        case Stage.FIX:
            return f"fix-f{cycles.fix + 1}"
        case _:
            raise ValueError(f"No step for stage {stage}")


@dataclass
class PipelineOutcome:
    job_id: str
    outcome: WorkflowOutcome
    status: str
    error: str | None = None
    resume_at: datetime | None = None
    issues: list[str] | None = None


class CodegenPipeline:
    """Runs one job through the role state machine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: WorkflowExecutor,
        deps: StepDeps,
        *,
        limits: PipelineLimits | None = None,
        events: EventEmitter | None = None,
        release_on_complete: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self.executor = executor
        self.deps = deps
        self.limits = limits or PipelineLimits()
        self.events = events or executor.events
        self.release_on_complete = release_on_complete
        self.steps = {
            Stage.PLAN: PlanStep(deps),
            Stage.IMPLEMENT: ImplementStep(deps),
            Stage.REVIEW: ReviewStep(deps),
            Stage.TEST: TestStep(deps),
            Stage.FIX: FixStep(deps),
        }
        self.acquire_step = AcquireSandboxStep(deps)

    @property
    def sandboxes(self) -> SandboxLifecycleManager:
        return self.deps.sandboxes

    async def _load_context(self, job_id: str) -> WorkflowContext | PipelineOutcome:
        async with self._session_factory() as session:
            job = await db.get_job(session, job_id)
            if job is None:
                return PipelineOutcome(job_id, WorkflowOutcome.FAILED, "missing", error="Job not found")
            if job.is_terminal:
                outcome = WorkflowOutcome.COMPLETED if job.status == JobStatus.COMPLETE else WorkflowOutcome.FAILED
                return PipelineOutcome(job_id, outcome, job.status, error=job.error_message, issues=job.last_issues)

            files: dict[str, str] = {}
            base_fragment_id = (job.metadata_ or {}).get("base_fragment_id")
            if base_fragment_id:
                base = await db.get_fragment(session, base_fragment_id)
                if base is not None:
                    files = dict(base.files)

            return WorkflowContext(
                job_id=job.id,
                state={
                    "request": job.request,
                    "model": job.model,
                    "framework": job.framework,
                    "files": files,
                },
            )

    async def run(self, job_id: str, *, entry: PipelineEntry = PipelineEntry.PLAN) -> PipelineOutcome:
        loaded = await self._load_context(job_id)
        if isinstance(loaded, PipelineOutcome):
            return loaded
        ctx = loaded

        await self.events.emit_type(EventType.WORKFLOW_STARTED, job_id=job_id, data={"entry": entry.value})

        result = await self.executor.run_step(ctx, self.acquire_step, "acquire-sandbox")
        stage = Stage.PLAN if entry == PipelineEntry.PLAN else Stage.TEST
        cycles = Cycles()

        while True:
            if not isinstance(result, Ok):
                return await self._stop(ctx, result)
            if stage in (Stage.DONE, Stage.FAILED):
                return await self._finish(ctx, stage)

            superseded = await self._superseded(ctx.job_id)
            if superseded is not None:
                return superseded

            key = step_key(stage, cycles)
            result = await self.executor.run_step(ctx, self.steps[stage], key)
            if not isinstance(result, Ok):
                continue

            if stage == Stage.REVIEW:
                cycles.review += 1
            elif stage == Stage.FIX:
                cycles.fix += 1
                cycles.review = 0

            transition = next_stage(stage, result.output, cycles, self.limits)
            if transition.review_cap_hit:
                await self.executor.flag_attention(
                    job_id,
                    f"Review cap of {self.limits.max_review_cycles} reached; proceeding to tests with "
                    "reviewer feedback as advisory",
                )
            stage = transition.stage

    async def _superseded(self, job_id: str) -> PipelineOutcome | None:
        async with self._session_factory() as session:
            job = await db.get_job(session, job_id)
            if job is None or not job.is_terminal:
                return None
            logger.info("Job %s became %s while running, stopping", job_id, job.status)
            return PipelineOutcome(job_id, WorkflowOutcome.FAILED, job.status, error=job.error_message)

    async def _stop(self, ctx: WorkflowContext, result: Any) -> PipelineOutcome:
        match result:
            case Deferred(reason=reason, resume_at=resume_at):
                async with self._session_factory() as session:
                    job = await db.get_job(session, ctx.job_id)
                    status = job.status if job else "missing"
                return PipelineOutcome(ctx.job_id, WorkflowOutcome.DEFERRED, status, error=reason, resume_at=resume_at)
            case FatalError(error=error) | RetryableError(error=error):
                await self.executor.fail_job(ctx.job_id, error)
                await self.sandboxes.release(ctx.job_id)
                return PipelineOutcome(ctx.job_id, WorkflowOutcome.FAILED, JobStatus.FAILED, error=error)
            case _:
                raise TypeError(f"Unexpected step result {result!r}")

    async def _finish(self, ctx: WorkflowContext, stage: Stage) -> PipelineOutcome:
        if stage == Stage.DONE:
            await self.executor.set_status(ctx.job_id, JobStatus.COMPLETE)
            await self.events.emit_type(EventType.WORKFLOW_COMPLETED, job_id=ctx.job_id)
            if self.release_on_complete:
                await self.sandboxes.release(ctx.job_id)
            return PipelineOutcome(ctx.job_id, WorkflowOutcome.COMPLETED, JobStatus.COMPLETE)

        issues = list(ctx.get("issues") or [])
        error = f"Fix cycle limit of {self.limits.max_fix_cycles} reached with {len(issues)} open issues"
        await self.executor.fail_job(ctx.job_id, error, issues=issues)
        return PipelineOutcome(ctx.job_id, WorkflowOutcome.FAILED, JobStatus.FAILED, error=error, issues=issues)
