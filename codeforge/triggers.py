"""Incoming triggers: the coroutines behind the CLI's enqueue and sweep commands."""

from __future__ import annotations

import asyncio
import logging
import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .app import Engine
from .errors import CodeforgeError
from .models import Job, JobStatus, Task, TaskStatus, TaskType
from .pipeline import PipelineEntry
from .queue import SweepResult, enqueue_task

logger = logging.getLogger(__name__)


async def _supersede(session: AsyncSession, old: Job, new: Job) -> None:
    old.superseded_by_id = new.id
    if not old.is_terminal:
        await db.update_job_status(session, old, JobStatus.FAILED, error_message=f"Superseded by job {new.id}")


async def _live_codegen_task(session: AsyncSession, job_id: str) -> Task | None:
    result = await session.execute(
        select(Task)
        .where(
            Task.job_id == job_id,
            Task.type == TaskType.CODEGEN,
            Task.status.in_([TaskStatus.PENDING, TaskStatus.RUNNING]),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def enqueue_codegen(
    engine: Engine,
    *,
    value: str | None = None,
    job_id: str | None = None,
    model: str | None = None,
    is_revision: bool = False,
    owner_id: str | None = None,
) -> str:
    """Start, resume or revise a codegen run. Returns the job that will run.

    Resuming a job that already has a pending or running codegen task queues nothing.
    """
    inherited = None
    async with engine.session_factory() as session:
        if is_revision:
            if not job_id or not value:
                raise CodeforgeError("A revision needs the job to revise and a new request")
            old = await db.get_job(session, job_id)
            if old is None:
                raise CodeforgeError(f"Job {job_id} not found")
            base = await db.get_latest_fragment(session, old.id)
            job = await db.create_job(
                session,
                request=value,
                owner_id=owner_id or old.owner_id,
                model=model or old.model,
                framework=old.framework,
                supersedes_id=old.id,
                metadata={"base_fragment_id": base.id if base else None, "revision_of": old.id},
            )
            await _supersede(session, old, job)
            if old.sandbox_id:
                inherited = (old.sandbox_id, await engine.sandboxes.bind(session, job, old.sandbox_id))
        elif job_id:
            job = await db.get_job(session, job_id)
            if job is None:
                raise CodeforgeError(f"Job {job_id} not found")
            live = await _live_codegen_task(session, job.id)
            if live is not None:
                logger.info("Job %s already has codegen task %s (%s), not queueing another", job.id, live.id,
                            live.status)
                return job.id
        else:
            if not value:
                raise CodeforgeError("A new codegen run needs a request")
            job = await db.create_job(session, request=value, owner_id=owner_id, model=model)

        await enqueue_task(
            session,
            TaskType.CODEGEN,
            {"value": job.request, "model": job.model, "entry": PipelineEntry.PLAN.value},
            job_id=job.id,
        )
        await session.commit()
        new_job_id = job.id

    if inherited is not None:
        await engine.sandboxes.announce_transfer(new_job_id, *inherited)
    logger.info("Queued codegen for job %s", new_job_id)
    await engine.dispatcher.nudge()
    return new_job_id


async def enqueue_triage(engine: Engine, issue_id: str) -> str:
    async with engine.session_factory() as session:
        issue = await db.get_issue(session, issue_id)
        if issue is None:
            raise CodeforgeError(f"Issue {issue_id} not found")
        task = await enqueue_task(session, TaskType.TRIAGE, {"issue_id": issue_id}, issue_id=issue_id)
        await session.commit()
        task_id = task.id
    await engine.dispatcher.nudge()
    return task_id


async def enqueue_error_fix(engine: Engine, fragment_id: str) -> str:
    """Start a test-first run over a fragment's files in a job that supersedes its own."""
    async with engine.session_factory() as session:
        fragment = await db.get_fragment(session, fragment_id)
        if fragment is None:
            raise CodeforgeError(f"Fragment {fragment_id} not found")
        old = await db.get_job(session, fragment.job_id)
        if old is None:
            raise CodeforgeError(f"Job {fragment.job_id} not found")

        job = await db.create_job(
            session,
            request=old.request,
            title=f"Fix errors: {old.title}",
            owner_id=old.owner_id,
            model=old.model,
            framework=fragment.framework,
            supersedes_id=old.id,
            metadata={"base_fragment_id": fragment.id, "error_fix_of": old.id},
        )
        await _supersede(session, old, job)
        inherited = None
        if old.sandbox_id:
            inherited = (old.sandbox_id, await engine.sandboxes.bind(session, job, old.sandbox_id))
        await enqueue_task(
            session,
            TaskType.CODEGEN,
            {"value": job.request, "model": job.model, "entry": PipelineEntry.TEST.value},
            job_id=job.id,
        )
        await session.commit()
        new_job_id = job.id

    if inherited is not None:
        await engine.sandboxes.announce_transfer(new_job_id, *inherited)
    logger.info("Queued error fix for fragment %s as job %s", fragment_id, new_job_id)
    await engine.dispatcher.nudge()
    return new_job_id


async def task_queue_sweep(engine: Engine, limit: int | None = None) -> SweepResult:
    return await engine.dispatcher.sweep(limit)


async def run_worker(engine: Engine, stop: asyncio.Event) -> None:
    """Sweep on an interval until ``stop`` is set, with periodic cleanup and health checks.

    A pass that raises is logged and the loop carries on at the next interval.
    """
    s = engine.settings
    last_cleanup = last_health = 0.0
    while not stop.is_set():
        now = time.monotonic()
        try:
            await engine.dispatcher.sweep()
            if now - last_cleanup >= s.cleanup_interval:
                await engine.dispatcher.cleanup_tasks(s.task_cleanup_days, s.task_cleanup_batch)
                await engine.rate_limiter.cleanup()
                last_cleanup = now
            if now - last_health >= s.health_interval:
                await engine.health()
                last_health = now
        except Exception:
            logger.exception("Worker pass failed, next attempt in %.0fs", s.sweep_interval)
        try:
            await asyncio.wait_for(stop.wait(), timeout=s.sweep_interval)
        except TimeoutError:
            pass
