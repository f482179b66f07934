"""Async database connection and operations for the codeforge engine."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    Base,
    CouncilDecision,
    Fragment,
    Issue,
    Job,
    JobLogEntry,
    JobStatus,
    SandboxSession,
    StepCheckpoint,
    TERMINAL_JOB_STATUSES,
    utcnow,
)


class Database:
    """Owns the async engine and session factory for one process or test."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        kwargs: dict[str, Any] = {"echo": echo}
        if not url.startswith("sqlite"):
            kwargs["pool_pre_ping"] = True
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
                raise


# =============================================================================
# Job Operations
# =============================================================================


async def create_job(
    session: AsyncSession,
    *,
    request: str,
    title: str | None = None,
    owner_id: str | None = None,
    model: str | None = None,
    framework: str = "nextjs",
    supersedes_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Job:
    """Create a new job in the pending state."""
    job = Job(
        request=request,
        title=title or request[:80],
        owner_id=owner_id,
        model=model,
        framework=framework,
        status=JobStatus.PENDING,
        supersedes_id=supersedes_id,
        metadata_=metadata or {},
        last_issues=[],
    )
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, job_id: str) -> Job | None:
    return await session.get(Job, job_id)


async def list_jobs(
    session: AsyncSession, *, limit: int = 20, status: str | None = None, owner_id: str | None = None
) -> list[Job]:
    query = select(Job).order_by(Job.updated_at.desc()).limit(limit)
    if status:
        query = query.where(Job.status == status)
    if owner_id:
        query = query.where(Job.owner_id == owner_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def update_job_status(
    session: AsyncSession,
    job: Job,
    status: JobStatus,
    *,
    error_message: str | None = None,
) -> Job:
    """Update job status and append a log line."""
    old_status = job.status
    job.status = status
    if error_message is not None:
        job.error_message = error_message
    if status in TERMINAL_JOB_STATUSES:
        job.completed_at = utcnow()

    session.add(
        JobLogEntry(
            job_id=job.id,
            step="status",
            level="info",
            message=f"Status changed: {old_status} -> {status}",
        )
    )
    await session.flush()
    return job


async def append_job_log(
    session: AsyncSession,
    job_id: str,
    message: str,
    *,
    step: str | None = None,
    attempt: int | None = None,
    level: str = "info",
) -> JobLogEntry:
    entry = JobLogEntry(job_id=job_id, step=step, attempt=attempt, level=level, message=message)
    session.add(entry)
    await session.flush()
    return entry


async def get_job_logs(session: AsyncSession, job_id: str) -> list[JobLogEntry]:
    result = await session.execute(
        select(JobLogEntry).where(JobLogEntry.job_id == job_id).order_by(JobLogEntry.id)
    )
    return list(result.scalars().all())


# =============================================================================
# Council Decisions
# =============================================================================


async def add_decision(
    session: AsyncSession,
    *,
    job_id: str,
    step: str,
    verdict: str,
    reasoning: str,
    agents: list[str],
) -> CouncilDecision:
    decision = CouncilDecision(
        job_id=job_id, step=step, verdict=verdict, reasoning=reasoning, agents=agents
    )
    session.add(decision)
    await session.flush()
    return decision


async def get_decisions(session: AsyncSession, job_id: str) -> list[CouncilDecision]:
    result = await session.execute(
        select(CouncilDecision)
        .where(CouncilDecision.job_id == job_id)
        .order_by(CouncilDecision.created_at, CouncilDecision.id)
    )
    return list(result.scalars().all())


# =============================================================================
# Fragments
# =============================================================================


async def get_latest_fragment(session: AsyncSession, job_id: str) -> Fragment | None:
    result = await session.execute(
        select(Fragment).where(Fragment.job_id == job_id).order_by(Fragment.version.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def get_fragment(session: AsyncSession, fragment_id: str) -> Fragment | None:
    return await session.get(Fragment, fragment_id)


async def create_fragment(
    session: AsyncSession,
    *,
    job_id: str,
    files: dict[str, str],
    summary: str,
    framework: str,
) -> Fragment:
    """Add a new fragment version; earlier versions are superseded, not edited."""
    previous = await get_latest_fragment(session, job_id)
    fragment = Fragment(
        job_id=job_id,
        version=(previous.version + 1) if previous else 1,
        files=dict(files),
        summary=summary,
        framework=framework,
        supersedes_id=previous.id if previous else None,
    )
    session.add(fragment)
    await session.flush()
    return fragment


# =============================================================================
# Checkpoints
# =============================================================================


async def get_checkpoint(session: AsyncSession, job_id: str, step_key: str) -> StepCheckpoint | None:
    result = await session.execute(
        select(StepCheckpoint).where(
            StepCheckpoint.job_id == job_id, StepCheckpoint.step_key == step_key
        )
    )
    return result.scalar_one_or_none()


async def save_checkpoint(
    session: AsyncSession, job_id: str, step_key: str, output: dict[str, Any], *, attempts: int
) -> StepCheckpoint:
    checkpoint = StepCheckpoint(job_id=job_id, step_key=step_key, output=output, attempts=attempts)
    session.add(checkpoint)
    await session.flush()
    return checkpoint


async def list_checkpoints(session: AsyncSession, job_id: str) -> list[StepCheckpoint]:
    result = await session.execute(
        select(StepCheckpoint).where(StepCheckpoint.job_id == job_id).order_by(StepCheckpoint.id)
    )
    return list(result.scalars().all())


# =============================================================================
# Sandbox Sessions
# =============================================================================


async def get_sandbox_session(session: AsyncSession, sandbox_id: str) -> SandboxSession | None:
    return await session.get(SandboxSession, sandbox_id)


async def set_sandbox_state(
    session: AsyncSession, sandbox_id: str, state: str, *, job_id: str | None = None
) -> None:
    values: dict[str, Any] = {"state": state, "last_used_at": utcnow()}
    if job_id is not None:
        values["job_id"] = job_id
    await session.execute(
        update(SandboxSession).where(SandboxSession.sandbox_id == sandbox_id).values(**values)
    )


# =============================================================================
# Issues
# =============================================================================


async def create_issue(
    session: AsyncSession, *, title: str, body: str = "", repository: str | None = None
) -> Issue:
    issue = Issue(title=title, body=body, repository=repository)
    session.add(issue)
    await session.flush()
    return issue


async def get_issue(session: AsyncSession, issue_id: str) -> Issue | None:
    return await session.get(Issue, issue_id)


# =============================================================================
# Maintenance
# =============================================================================


async def delete_ids(session: AsyncSession, model: Any, ids: list[Any]) -> int:
    if not ids:
        return 0
    result = await session.execute(delete(model).where(model.id.in_(ids)))
    return result.rowcount or 0