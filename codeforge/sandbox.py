"""Sandbox lifecycle: create, reconnect, transfer and release per job."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Protocol

from e2b import CommandExitException
from e2b.exceptions import AuthenticationException, NotFoundException, TimeoutException
from e2b_code_interpreter import AsyncSandbox
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .circuit_breaker import CircuitBreaker
from .errors import (
    CodeforgeError,
    QuotaExceededError,
    SandboxAuthenticationError,
    SandboxError,
    SandboxExpiredError,
    SandboxNotFoundError,
    SandboxProviderError,
    SandboxTimeoutError,
)
from .events import EventEmitter, EventType
from .models import Job, SandboxSession, SandboxState, utcnow
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]


@dataclass(frozen=True)
class CommandOutput:
    exit_code: int
    stdout: str
    stderr: str


class SandboxConnection(Protocol):
    """A live connection to one remote sandbox."""

    sandbox_id: str

    async def run(
        self,
        command: str,
        *,
        timeout: float,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutput: ...

    async def write(self, path: str, content: str) -> None: ...

    async def read(self, path: str) -> str: ...


class SandboxProvider(Protocol):
    async def create(self, *, template: str, timeout: int, metadata: dict[str, str]) -> SandboxConnection: ...

    async def connect(self, sandbox_id: str) -> SandboxConnection: ...

    async def kill(self, sandbox_id: str) -> None: ...


# =============================================================================
# E2B provider
# =============================================================================


def e2b_exception_handler(func):
    """Map e2b SDK exceptions onto the engine's sandbox errors."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        target = getattr(self, "sandbox_id", None) or (args[0] if args and isinstance(args[0], str) else "new")
        try:
            return await func(self, *args, **kwargs)
        except SandboxError:
            raise
        except NotFoundException as e:
            raise SandboxNotFoundError(target) from e
        except AuthenticationException as e:
            raise SandboxAuthenticationError(str(e)) from e
        except TimeoutException as e:
            raise SandboxTimeoutError(target, func.__name__) from e
        except Exception as e:
            raise SandboxProviderError(f"Failed to {func.__name__} for sandbox {target}: {e}") from e

    return wrapper


class E2BConnection:
    """SandboxConnection over an e2b ``AsyncSandbox``."""

    def __init__(self, sandbox: AsyncSandbox) -> None:
        self._sandbox = sandbox
        self.sandbox_id: str = sandbox.sandbox_id

    @e2b_exception_handler
    async def run(
        self,
        command: str,
        *,
        timeout: float,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutput:
        try:
            result = await self._sandbox.commands.run(
                command, timeout=timeout, on_stdout=on_stdout, on_stderr=on_stderr
            )
        except CommandExitException as e:
            # Non-zero exit is a result, not a transport failure.
            return CommandOutput(exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr)
        return CommandOutput(exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr)

    @e2b_exception_handler
    async def write(self, path: str, content: str) -> None:
        await self._sandbox.files.write(path, content)

    @e2b_exception_handler
    async def read(self, path: str) -> str:
        return await self._sandbox.files.read(path, format="text")


class E2BSandboxProvider:
    """Creates and connects e2b code-interpreter sandboxes."""

    def __init__(self, api_key: str | None) -> None:
        self._api_key = api_key

    def _key(self) -> str:
        if not self._api_key:
            raise SandboxAuthenticationError("E2B API key is required")
        return self._api_key

    @e2b_exception_handler
    async def create(self, *, template: str, timeout: int, metadata: dict[str, str]) -> E2BConnection:
        sandbox = await AsyncSandbox.create(
            template, timeout=timeout, metadata=metadata, api_key=self._key()
        )
        return E2BConnection(sandbox)

    @e2b_exception_handler
    async def connect(self, sandbox_id: str) -> E2BConnection:
        sandbox = await AsyncSandbox.connect(sandbox_id, api_key=self._key())
        return E2BConnection(sandbox)

    @e2b_exception_handler
    async def kill(self, sandbox_id: str) -> None:
        sandbox = await AsyncSandbox.connect(sandbox_id, api_key=self._key())
        await sandbox.kill()


# =============================================================================
# Lifecycle manager
# =============================================================================


@dataclass
class SandboxHandle:
    """Logical reference to the remote environment currently bound to a job."""

    sandbox_id: str
    job_id: str
    connection: SandboxConnection
    state: SandboxState
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class _CachedConnection:
    connection: SandboxConnection
    created_at: datetime
    cached_at: float


class SandboxLifecycleManager:
    """Owns the one remote environment each job works in."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: SandboxProvider,
        rate_limiter: RateLimiter,
        *,
        limits: Mapping[str, int],
        template: str = "code-interpreter-v1",
        sandbox_timeout: int = 900,
        breaker: CircuitBreaker | None = None,
        events: EventEmitter | None = None,
        cache_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.limits = dict(limits)
        self.template = template
        self.sandbox_timeout = sandbox_timeout
        self.breaker = breaker
        self.events = events
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: dict[str, _CachedConnection] = {}

    async def _emit(self, event_type: EventType, job_id: str, message: str, **data: Any) -> None:
        if self.events is not None:
            await self.events.emit_type(event_type, job_id=job_id, message=message, data=data)

    async def _admit(self, operation: str) -> None:
        limit = self.limits.get(operation, 100)
        status = await self.rate_limiter.check(operation, limit)
        if status.exceeded:
            raise QuotaExceededError(operation, status.reset_at, count=status.count, limit=status.limit)

    def _cached(self, sandbox_id: str) -> _CachedConnection | None:
        entry = self._cache.get(sandbox_id)
        if entry is None:
            return None
        if self._clock() - entry.cached_at > self.cache_ttl:
            del self._cache[sandbox_id]
            return None
        return entry

    async def acquire(self, job_id: str) -> SandboxHandle:
        """Return a connected handle, creating the sandbox on first need.

        A job that builds on an earlier fragment gets that fragment's files written
        into any sandbox created for it, so a lost inherited sandbox is rebuilt rather
        than replaced by an empty one.
        """
        async with self._session_factory() as session:
            job = await db.get_job(session, job_id)
            if job is None:
                raise CodeforgeError(f"Job {job_id} not found")
            sandbox_id = job.sandbox_id
            base_fragment_id = (job.metadata_ or {}).get("base_fragment_id")
            record = await db.get_sandbox_session(session, sandbox_id) if sandbox_id else None

        if sandbox_id and record is not None and record.job_id not in (None, job_id):
            raise CodeforgeError(f"Sandbox {sandbox_id} now belongs to job {record.job_id}")

        if sandbox_id and (record is None or record.state != SandboxState.EXPIRED):
            cached = self._cached(sandbox_id)
            if cached is not None:
                return SandboxHandle(
                    sandbox_id=sandbox_id,
                    job_id=job_id,
                    connection=cached.connection,
                    state=SandboxState.CONNECTED,
                    created_at=cached.created_at,
                )
            try:
                return await self._reconnect(job_id, sandbox_id, record)
            except SandboxNotFoundError:
                logger.warning("Sandbox %s for job %s expired, creating a new one", sandbox_id, job_id)
                async with self._session_factory() as session:
                    await db.set_sandbox_state(session, sandbox_id, SandboxState.EXPIRED)
                    await session.commit()

        files: dict[str, Any] = {}
        if base_fragment_id:
            async with self._session_factory() as session:
                fragment = await db.get_fragment(session, base_fragment_id)
            if fragment is None:
                raise SandboxExpiredError(sandbox_id)
            files = dict(fragment.files or {})
        return await self._create(job_id, files)

    async def _create(self, job_id: str, files: Mapping[str, Any] | None = None) -> SandboxHandle:
        await self._admit("sandbox_create")

        async def _provider_create() -> SandboxConnection:
            return await self.provider.create(
                template=self.template, timeout=self.sandbox_timeout, metadata={"job_id": job_id}
            )

        if self.breaker is not None:
            connection = await self.breaker.call(_provider_create)
        else:
            connection = await _provider_create()
        await self.rate_limiter.record("sandbox_create")

        # Restore before binding so a failed write leaves the job unbound.
        for path, content in (files or {}).items():
            await connection.write(path, str(content))
        if files:
            logger.info("Restored %d files into sandbox %s for job %s", len(files), connection.sandbox_id, job_id)

        created_at = utcnow()
        async with self._session_factory() as session:
            session.add(
                SandboxSession(
                    sandbox_id=connection.sandbox_id,
                    job_id=job_id,
                    template=self.template,
                    state=SandboxState.CREATED,
                    created_at=created_at,
                )
            )
            job = await db.get_job(session, job_id)
            if job is not None:
                job.sandbox_id = connection.sandbox_id
            await session.commit()

        self._cache[connection.sandbox_id] = _CachedConnection(connection, created_at, self._clock())
        logger.info("Created sandbox %s for job %s", connection.sandbox_id, job_id)
        await self._emit(EventType.SANDBOX_CREATED, job_id, "Sandbox created", sandbox_id=connection.sandbox_id)
        return SandboxHandle(
            sandbox_id=connection.sandbox_id,
            job_id=job_id,
            connection=connection,
            state=SandboxState.CREATED,
            created_at=created_at,
        )

    async def _reconnect(self, job_id: str, sandbox_id: str, record: SandboxSession | None) -> SandboxHandle:
        await self._admit("sandbox_connect")
        connection = await self.provider.connect(sandbox_id)
        await self.rate_limiter.record("sandbox_connect")

        created_at = record.created_at if record is not None else utcnow()
        async with self._session_factory() as session:
            if record is None:
                session.add(
                    SandboxSession(
                        sandbox_id=sandbox_id,
                        job_id=job_id,
                        template=self.template,
                        state=SandboxState.CONNECTED,
                        created_at=created_at,
                    )
                )
            else:
                await db.set_sandbox_state(session, sandbox_id, SandboxState.CONNECTED)
            await session.commit()

        self._cache[sandbox_id] = _CachedConnection(connection, created_at, self._clock())
        logger.debug("Reconnected sandbox %s for job %s", sandbox_id, job_id)
        return SandboxHandle(
            sandbox_id=sandbox_id,
            job_id=job_id,
            connection=connection,
            state=SandboxState.CONNECTED,
            created_at=created_at,
        )

    @asynccontextmanager
    async def use(self, job_id: str) -> AsyncGenerator[SandboxHandle]:
        """Acquire a handle for one step; the sandbox is marked idle afterwards."""
        handle = await self.acquire(job_id)
        try:
            yield handle
        finally:
            async with self._session_factory() as session:
                await db.set_sandbox_state(session, handle.sandbox_id, SandboxState.IDLE)
                await session.commit()

    async def bind(self, session: AsyncSession, job: Job, sandbox_id: str) -> str | None:
        """Point ``sandbox_id`` at ``job`` inside the caller's transaction.

        Returns the job the sandbox belonged to before. Nothing is committed, so the
        caller can make the binding atomic with the work that will use it.
        """
        record = await db.get_sandbox_session(session, sandbox_id)
        if record is None:
            session.add(
                SandboxSession(
                    sandbox_id=sandbox_id,
                    job_id=job.id,
                    template=self.template,
                    state=SandboxState.TRANSFERRED,
                )
            )
            previous_job = None
        else:
            previous_job = record.job_id
            await db.set_sandbox_state(session, sandbox_id, SandboxState.TRANSFERRED, job_id=job.id)
        job.sandbox_id = sandbox_id
        return previous_job

    async def announce_transfer(self, job_id: str, sandbox_id: str, previous_job: str | None) -> None:
        logger.info("Transferred sandbox %s from job %s to job %s", sandbox_id, previous_job, job_id)
        await self._emit(
            EventType.SANDBOX_TRANSFERRED,
            job_id,
            "Sandbox transferred",
            sandbox_id=sandbox_id,
            from_job_id=previous_job,
        )

    async def transfer(self, job_id: str, from_handle: SandboxHandle | str) -> str:
        """Bind an existing sandbox to ``job_id`` without recreating it."""
        sandbox_id = from_handle if isinstance(from_handle, str) else from_handle.sandbox_id
        async with self._session_factory() as session:
            job = await db.get_job(session, job_id)
            if job is None:
                raise CodeforgeError(f"Job {job_id} not found")
            previous_job = await self.bind(session, job, sandbox_id)
            await session.commit()

        await self.announce_transfer(job_id, sandbox_id, previous_job)
        return sandbox_id

    async def release(self, job_id: str) -> bool:
        """Tear down the job's sandbox. Best-effort; provider TTL is the backstop."""
        async with self._session_factory() as session:
            job = await db.get_job(session, job_id)
            sandbox_id = job.sandbox_id if job is not None else None
            record = await db.get_sandbox_session(session, sandbox_id) if sandbox_id else None

        if not sandbox_id:
            return False
        if record is not None and record.job_id not in (None, job_id):
            logger.info("Sandbox %s was transferred to job %s, not releasing", sandbox_id, record.job_id)
            return False
        if record is not None and record.state == SandboxState.EXPIRED:
            return False

        self._cache.pop(sandbox_id, None)
        released = True
        try:
            await self.provider.kill(sandbox_id)
        except Exception as exc:
            released = False
            logger.warning("Failed to release sandbox %s for job %s: %s", sandbox_id, job_id, exc)

        async with self._session_factory() as session:
            await db.set_sandbox_state(session, sandbox_id, SandboxState.EXPIRED)
            await session.commit()
        await self._emit(EventType.SANDBOX_RELEASED, job_id, "Sandbox released", sandbox_id=sandbox_id)
        return released
