"""Durable step runner: checkpoints, backoff and job status bookkeeping."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import db
from ..errors import QuotaExceededError, SandboxAuthenticationError, SandboxExpiredError, sanitize_error
from ..events import EventEmitter, EventType
from ..models import JobStatus
from .base import (
    Deferred,
    FatalError,
    Ok,
    RetryableError,
    RetryPolicy,
    StepResult,
    WorkflowContext,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (SandboxAuthenticationError, SandboxExpiredError)


class WorkflowExecutor:
    """Runs workflow steps at least once, resuming from persisted checkpoints."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        policy: RetryPolicy | None = None,
        events: EventEmitter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or RetryPolicy()
        self.events = events or EventEmitter()
        self._sleep = sleep

    async def _log(
        self, job_id: str, message: str, *, step: str | None = None, attempt: int | None = None, level: str = "info"
    ) -> None:
        async with self._session_factory() as session:
            await db.append_job_log(session, job_id, message, step=step, attempt=attempt, level=level)
            await session.commit()
        await self.events.emit_type(
            EventType.JOB_LOG, job_id=job_id, step=step, message=message, data={"attempt": attempt, "level": level}
        )

    async def set_status(self, job_id: str, status: JobStatus, *, error_message: str | None = None) -> None:
        async with self._session_factory() as session:
            job = await db.get_job(session, job_id)
            if job is None or job.status == status or job.is_terminal:
                return
            previous = job.status
            await db.update_job_status(session, job, status, error_message=error_message)
            await session.commit()
        logger.info("Job %s: %s -> %s", job_id, previous, status)
        await self.events.emit_type(
            EventType.JOB_STATUS_CHANGED,
            job_id=job_id,
            message=f"{previous} -> {status}",
            data={"from": previous, "to": str(status)},
        )

    async def flag_attention(self, job_id: str, reason: str, *, issues: list[str] | None = None) -> None:
        async with self._session_factory() as session:
            job = await db.get_job(session, job_id)
            if job is None:
                return
            job.needs_attention = True
            if issues is not None:
                job.last_issues = list(issues)
            await session.commit()
        await self._log(job_id, reason, step="attention", level="warning")

    async def fail_job(self, job_id: str, error: str, *, issues: list[str] | None = None) -> None:
        message = sanitize_error(error)
        if issues is not None:
            await self.flag_attention(job_id, f"Job failed: {message}", issues=issues)
        await self.set_status(job_id, JobStatus.FAILED, error_message=message)
        await self.events.emit_type(EventType.WORKFLOW_FAILED, job_id=job_id, message=message)

    async def run_step(self, ctx: WorkflowContext, step: WorkflowStep, key: str) -> StepResult:
        """Run ``step`` under ``key``: replay its checkpoint or execute with retries."""
        ctx.set("step_key", key)
        async with self._session_factory() as session:
            checkpoint = await db.get_checkpoint(session, ctx.job_id, key)
        if checkpoint is not None:
            ctx.replayed.append(key)
            step.apply(ctx, checkpoint.output)
            logger.debug("Replayed step %s for job %s", key, ctx.job_id)
            return Ok(checkpoint.output)

        if step.job_status is not None:
            await self.set_status(ctx.job_id, step.job_status)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await step.execute(ctx)
            except QuotaExceededError as exc:
                result = Deferred(reason=str(exc), resume_at=exc.reset_at)
            except FATAL_EXCEPTIONS as exc:
                result = FatalError(sanitize_error(exc))
            except Exception as exc:
                logger.warning("Step %s raised on attempt %d: %s", key, attempt, exc)
                result = RetryableError(sanitize_error(exc))

            match result:
                case Ok(output=output):
                    try:
                        async with self._session_factory() as session:
                            await step.persist(session, ctx, output)
                            await db.save_checkpoint(session, ctx.job_id, key, output, attempts=attempt)
                            await db.append_job_log(
                                session, ctx.job_id, f"Completed {key}", step=key, attempt=attempt
                            )
                            await session.commit()
                    except IntegrityError:
                        # Another run of this job checkpointed the step first; its output wins.
                        async with self._session_factory() as session:
                            checkpoint = await db.get_checkpoint(session, ctx.job_id, key)
                        if checkpoint is None:
                            raise
                        logger.warning("Step %s for job %s was already checkpointed, replaying it", key, ctx.job_id)
                        ctx.replayed.append(key)
                        step.apply(ctx, checkpoint.output)
                        return Ok(checkpoint.output)
                    step.apply(ctx, output)
                    await step.on_complete(ctx, output)
                    await self.events.emit_type(
                        EventType.STEP_COMPLETED, job_id=ctx.job_id, step=key, data={"attempt": attempt}
                    )
                    return result

                case Deferred(reason=reason, resume_at=resume_at):
                    when = resume_at.isoformat() if resume_at else "later"
                    await self._log(
                        ctx.job_id, f"Deferred until {when}: {sanitize_error(reason)}", step=key, attempt=attempt,
                        level="warning",
                    )
                    await self.events.emit_type(
                        EventType.WORKFLOW_DEFERRED, job_id=ctx.job_id, step=key, data={"resume_at": when}
                    )
                    return result

                case FatalError(error=error):
                    await self._log(
                        ctx.job_id, f"Attempt {attempt} failed: {sanitize_error(error)}", step=key, attempt=attempt,
                        level="error",
                    )
                    return result

                case RetryableError(error=error, retry_after=retry_after):
                    await self._log(
                        ctx.job_id, f"Attempt {attempt} failed: {sanitize_error(error)}", step=key, attempt=attempt,
                        level="warning",
                    )
                    if attempt >= self.policy.max_attempts:
                        return FatalError(f"{key} failed after {attempt} attempts: {sanitize_error(error)}")
                    delay = retry_after if retry_after is not None else self.policy.delay_for(attempt)
                    await self.events.emit_type(
                        EventType.STEP_RETRYING,
                        job_id=ctx.job_id,
                        step=key,
                        data={"attempt": attempt, "delay": delay},
                    )
                    await self._sleep(delay)
