"""
Workflow entry handlers: one per routed task type.

Every handler settles its task (done, failed or deferred) before returning.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import db
from ..errors import QuotaExceededError
from ..events import EventEmitter, EventType
from ..models import Task, TaskType
from ..pipeline import CodegenPipeline, PipelineEntry, PipelineOutcome
from ..queue import EVENT_CODEGEN, EVENT_PR_CREATION, EVENT_TRIAGE, TaskDispatcher, enqueue_task
from ..triage import TriageWorkflow
from .base import WorkflowOutcome
from .router import EventRouter, WorkflowEvent

logger = logging.getLogger(__name__)


class WorkflowHandlers:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: TaskDispatcher,
        pipeline: CodegenPipeline,
        triage: TriageWorkflow,
        events: EventEmitter,
    ) -> None:
        self._session_factory = session_factory
        self.dispatcher = dispatcher
        self.pipeline = pipeline
        self.triage = triage
        self.events = events

    def register(self, router: EventRouter) -> None:
        router.register(EVENT_CODEGEN, self.codegen)
        router.register(EVENT_TRIAGE, self.triage_run)
        router.register(EVENT_PR_CREATION, self.pr_creation)

    async def _job_for_task(self, task_id: str, payload: dict[str, Any]) -> str:
        """Return the task's job, creating it on first run so retries share it."""
        async with self._session_factory() as session:
            task = await session.get(Task, task_id)
            if task is not None and task.job_id:
                return task.job_id
            job = await db.create_job(
                session,
                request=payload["value"],
                title=payload.get("title"),
                owner_id=payload.get("owner_id"),
                model=payload.get("model"),
            )
            if task is not None:
                task.job_id = job.id
                task.payload = {**task.payload, "job_id": job.id}
            await session.commit()
        logger.info("Created job %s for task %s", job.id, task_id)
        return job.id

    async def codegen(self, event: WorkflowEvent) -> PipelineOutcome | None:
        task_id = event.data["task_id"]
        payload = event.data.get("payload") or {}
        try:
            job_id = event.data.get("job_id") or payload.get("job_id") or await self._job_for_task(task_id, payload)
            entry = PipelineEntry(payload.get("entry", PipelineEntry.PLAN))
            outcome = await self.pipeline.run(job_id, entry=entry)
        except QuotaExceededError as exc:
            await self.dispatcher.defer_task(task_id, str(exc), exc.reset_at)
            return None
        except Exception as exc:
            logger.exception("Codegen task %s crashed", task_id)
            await self.dispatcher.fail_task(task_id, exc, requeue=True)
            return None

        match outcome.outcome:
            case WorkflowOutcome.COMPLETED:
                await self.dispatcher.complete_task(task_id)
                if event.data.get("issue_id"):
                    await self._request_pr(event.data["issue_id"], job_id, payload)
            case WorkflowOutcome.DEFERRED:
                await self.dispatcher.defer_task(task_id, outcome.error or "quota exceeded", outcome.resume_at)
            case WorkflowOutcome.FAILED:
                await self.dispatcher.fail_task(task_id, outcome.error or "pipeline failed", requeue=False)
        return outcome

    async def _request_pr(self, issue_id: str, job_id: str, payload: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            fragment = await db.get_latest_fragment(session, job_id)
            await enqueue_task(
                session,
                TaskType.PR_CREATION,
                {
                    "job_id": job_id,
                    "fragment_id": fragment.id if fragment else None,
                    "repository": payload.get("repository"),
                },
                issue_id=issue_id,
                job_id=job_id,
            )
            await session.commit()
        await self.dispatcher.nudge()

    async def triage_run(self, event: WorkflowEvent) -> Any:
        task_id = event.data["task_id"]
        try:
            return await self.triage.run(task_id, event.data.get("issue_id"), event.data.get("payload"))
        except QuotaExceededError as exc:
            await self.dispatcher.defer_task(task_id, str(exc), exc.reset_at)
        except Exception as exc:
            logger.exception("Triage task %s crashed", task_id)
            await self.dispatcher.fail_task(task_id, exc, requeue=True)
        return None

    async def pr_creation(self, event: WorkflowEvent) -> None:
        task_id = event.data["task_id"]
        payload = event.data.get("payload") or {}
        job_id = payload.get("job_id") or event.data.get("job_id")
        await self.events.emit_type(
            EventType.PR_CREATION_REQUESTED,
            job_id=job_id,
            message="Pull request creation requested",
            data={
                "issue_id": event.data.get("issue_id"),
                "fragment_id": payload.get("fragment_id"),
                "repository": payload.get("repository"),
            },
        )
        await self.dispatcher.complete_task(task_id)
