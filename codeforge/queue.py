"""Database-backed task queue: claim, route and settle dispatch work."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, assert_never

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .circuit_breaker import CircuitBreaker, CircuitState
from .errors import sanitize_error
from .models import Task, TaskStatus, TaskType, utcnow
from .workflow.router import EventRouter, UnroutableEventError, WorkflowEvent

logger = logging.getLogger(__name__)

EVENT_TRIAGE = "triage/run"
EVENT_CODEGEN = "codegen/run"
EVENT_PR_CREATION = "pr/create-requested"

DEFAULT_PRIORITY = 50


def entry_event_for(task_type: TaskType) -> str:
    match task_type:
        case TaskType.TRIAGE:
            return EVENT_TRIAGE
        case TaskType.CODEGEN:
            return EVENT_CODEGEN
        case TaskType.PR_CREATION:
            return EVENT_PR_CREATION
        case _:
            assert_never(task_type)


async def enqueue_task(
    session: AsyncSession,
    task_type: TaskType | str,
    payload: dict[str, Any] | None = None,
    *,
    priority: int = DEFAULT_PRIORITY,
    issue_id: str | None = None,
    job_id: str | None = None,
    available_at: datetime | None = None,
    retry_count: int = 0,
) -> Task:
    """Insert a PENDING task inside the caller's transaction."""
    now = utcnow()
    task = Task(
        type=str(task_type),
        payload=dict(payload or {}),
        priority=priority,
        status=TaskStatus.PENDING,
        issue_id=issue_id,
        job_id=job_id,
        retry_count=retry_count,
        available_at=available_at or now,
        created_at=now,
        updated_at=now,
    )
    session.add(task)
    await session.flush()
    return task


@dataclass
class SweepResult:
    claimed: int = 0
    routed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped_reason: str | None = None


class TaskDispatcher:
    """Claims pending tasks and hands each to its workflow."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: EventRouter,
        *,
        breaker: CircuitBreaker | None = None,
        max_retries: int = 3,
        batch_size: int = 10,
        claim_rounds: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self.router = router
        self.breaker = breaker
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.claim_rounds = claim_rounds

    async def enqueue(
        self,
        task_type: TaskType | str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int = DEFAULT_PRIORITY,
        issue_id: str | None = None,
        job_id: str | None = None,
        available_at: datetime | None = None,
    ) -> Task:
        async with self._session_factory() as session:
            task = await enqueue_task(
                session,
                task_type,
                payload,
                priority=priority,
                issue_id=issue_id,
                job_id=job_id,
                available_at=available_at,
            )
            await session.commit()
        logger.info("Enqueued %s task %s (priority %d)", task.type, task.id, task.priority)
        return task

    async def _try_claim(self, task_id: str) -> Task | None:
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Task)
                .where(Task.id == task_id, Task.status == TaskStatus.PENDING)
                .values(status=TaskStatus.RUNNING, claimed_at=now, updated_at=now)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            return await session.get(Task, task_id)

    async def claim_batch(self, limit: int | None = None) -> list[Task]:
        """Claim up to ``limit`` available tasks, highest priority then oldest first."""
        limit = self.batch_size if limit is None else limit
        claimed: list[Task] = []
        seen: set[str] = set()

        for _ in range(self.claim_rounds):
            wanted = limit - len(claimed)
            if wanted <= 0:
                break
            async with self._session_factory() as session:
                query = (
                    select(Task.id)
                    .where(Task.status == TaskStatus.PENDING, Task.available_at <= utcnow())
                    .order_by(Task.priority.desc(), Task.created_at.asc())
                    .limit(wanted)
                )
                if seen:
                    query = query.where(Task.id.not_in(seen))
                candidates = list((await session.execute(query)).scalars().all())
            if not candidates:
                break

            for task_id in candidates:
                seen.add(task_id)
                task = await self._try_claim(task_id)
                if task is None:
                    logger.debug("Task %s was claimed by another dispatcher", task_id)
                    continue
                claimed.append(task)

        return claimed

    async def complete_task(self, task_id: str) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            await session.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(status=TaskStatus.DONE, completed_at=now, updated_at=now)
            )
            await session.commit()
        logger.debug("Task %s done", task_id)

    async def _settle_failed(
        self, task_id: str, message: str, *, respawn: bool, retry_increment: int, available_at: datetime | None
    ) -> str | None:
        now = utcnow()
        async with self._session_factory() as session:
            task = await session.get(Task, task_id)
            if task is None:
                return None
            task.status = TaskStatus.FAILED
            task.error_message = message
            task.completed_at = now
            task.updated_at = now

            new_id = None
            if respawn:
                replacement = await enqueue_task(
                    session,
                    task.type,
                    task.payload,
                    priority=task.priority,
                    issue_id=task.issue_id,
                    job_id=task.job_id,
                    available_at=available_at,
                    retry_count=task.retry_count + retry_increment,
                )
                new_id = replacement.id
            await session.commit()
        return new_id

    async def fail_task(
        self, task_id: str, error: str | BaseException, *, requeue: bool = True, available_at: datetime | None = None
    ) -> str | None:
        """Mark a task FAILED; returns the replacement task id when one is queued."""
        message = sanitize_error(error)
        async with self._session_factory() as session:
            task = await session.get(Task, task_id)
            retries = task.retry_count if task is not None else 0
        respawn = requeue and retries < self.max_retries
        new_id = await self._settle_failed(
            task_id, message, respawn=respawn, retry_increment=1, available_at=available_at
        )
        if new_id:
            logger.warning("Task %s failed, requeued as %s: %s", task_id, new_id, message)
        else:
            logger.error("Task %s failed: %s", task_id, message)
        return new_id

    async def defer_task(self, task_id: str, reason: str, resume_at: datetime | None) -> str | None:
        """Close a task whose run hit a quota and queue its continuation after ``resume_at``."""
        new_id = await self._settle_failed(
            task_id, f"Deferred: {sanitize_error(reason)}", respawn=True, retry_increment=0, available_at=resume_at
        )
        logger.info("Task %s deferred until %s as %s", task_id, resume_at, new_id)
        return new_id

    async def route(self, task: Task) -> WorkflowEvent | None:
        """Send a claimed task to its workflow. Unroutable tasks fail without retry."""
        try:
            task_type = TaskType(task.type)
        except ValueError:
            await self.fail_task(task.id, f"Unmapped task type {task.type!r}", requeue=False)
            return None

        event = WorkflowEvent(
            entry_event_for(task_type),
            {"task_id": task.id, "job_id": task.job_id, "issue_id": task.issue_id, "payload": dict(task.payload)},
        )
        try:
            self.router.send(event)
        except UnroutableEventError as exc:
            await self.fail_task(task.id, exc, requeue=False)
            return None
        return event

    async def sweep(self, limit: int | None = None) -> SweepResult:
        if self.breaker is not None and self.breaker.state == CircuitState.OPEN:
            logger.warning("Sandbox circuit breaker is open, skipping task sweep")
            return SweepResult(skipped_reason="circuit_open")

        tasks = await self.claim_batch(limit)
        result = SweepResult(claimed=len(tasks))
        for task in tasks:
            if await self.route(task) is None:
                result.failed.append(task.id)
            else:
                result.routed.append(task.id)
        if tasks:
            logger.info("Sweep claimed %d tasks, routed %d", len(tasks), len(result.routed))
        return result

    async def nudge(self) -> SweepResult:
        """Sweep right away instead of waiting for the next scheduled sweep."""
        return await self.sweep()

    async def counts(self) -> dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(select(Task.status, func.count()).group_by(Task.status))
            return {status: int(count) for status, count in result.all()}

    async def cleanup_tasks(self, older_than_days: int = 7, batch: int = 100) -> int:
        """Delete finished tasks older than the cutoff, one batch per transaction."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        total = 0
        while True:
            async with self._session_factory() as session:
                ids = list(
                    (
                        await session.execute(
                            select(Task.id)
                            .where(
                                Task.status.in_([TaskStatus.DONE, TaskStatus.FAILED]),
                                Task.updated_at < cutoff,
                            )
                            .limit(batch)
                        )
                    )
                    .scalars()
                    .all()
                )
                deleted = await db.delete_ids(session, Task, ids)
                await session.commit()
            total += deleted
            if deleted < batch:
                break
        if total:
            logger.info("Deleted %d finished tasks older than %d days", total, older_than_days)
        return total
