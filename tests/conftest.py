"""Shared test fixtures and fakes for pytest."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest

from codeforge import db
from codeforge.app import Engine, build_engine
from codeforge.completion import Completion, ToolCall
from codeforge.config import Settings
from codeforge.db import Database
from codeforge.errors import SandboxNotFoundError, SandboxProviderError, SandboxTimeoutError
from codeforge.events import EngineEvent, EventEmitter, EventType
from codeforge.rate_limit import RateLimiter, SqlRateLimitStore
from codeforge.role_config import DEFAULT_ROLE_CONFIG, Role
from codeforge.sandbox import CommandOutput


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Sandbox provider
# =============================================================================


class FakeConnection:
    def __init__(self, sandbox_id: str, provider: FakeProvider) -> None:
        self.sandbox_id = sandbox_id
        self.provider = provider
        self.files: dict[str, str] = {}
        self.commands: list[tuple[str, float]] = []

    async def run(
        self,
        command: str,
        *,
        timeout: float,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
    ) -> CommandOutput:
        self.commands.append((command, timeout))
        self.provider.commands.append((self.sandbox_id, command, timeout))
        script = self.provider.scripts.get(command)
        step: Any = script.pop(0) if script else CommandOutput(0, "ok\n", "")
        if callable(step):
            return await step(timeout=timeout, on_stdout=on_stdout, on_stderr=on_stderr)
        if isinstance(step, BaseException):
            raise step
        if on_stdout and step.stdout:
            on_stdout(step.stdout)
        if on_stderr and step.stderr:
            on_stderr(step.stderr)
        return step

    async def write(self, path: str, content: str) -> None:
        if path in self.provider.unwritable:
            raise SandboxProviderError(f"Failed to write {path}")
        self.files[path] = content

    async def read(self, path: str) -> str:
        if path not in self.files:
            raise SandboxProviderError(f"No such file: {path}")
        return self.files[path]


class FakeProvider:
    """In-memory sandbox provider with scriptable command results."""

    def __init__(self) -> None:
        self.sandboxes: dict[str, FakeConnection] = {}
        self.created: list[str] = []
        self.killed: list[str] = []
        self.connects: list[str] = []
        self.commands: list[tuple[str, str, float]] = []
        self.scripts: dict[str, list[Any]] = {}
        self.unwritable: set[str] = set()
        self.create_error: BaseException | None = None

    def script(self, command: str, *results: Any) -> None:
        self.scripts.setdefault(command, []).extend(results)

    def expire(self, sandbox_id: str) -> None:
        self.sandboxes.pop(sandbox_id, None)

    async def create(self, *, template: str, timeout: int, metadata: dict[str, str]) -> FakeConnection:
        if self.create_error is not None:
            raise self.create_error
        sandbox_id = f"sbx-{len(self.created) + 1}"
        connection = FakeConnection(sandbox_id, self)
        self.sandboxes[sandbox_id] = connection
        self.created.append(sandbox_id)
        return connection

    async def connect(self, sandbox_id: str) -> FakeConnection:
        self.connects.append(sandbox_id)
        if sandbox_id not in self.sandboxes:
            raise SandboxNotFoundError(sandbox_id)
        return self.sandboxes[sandbox_id]

    async def kill(self, sandbox_id: str) -> None:
        self.killed.append(sandbox_id)
        self.sandboxes.pop(sandbox_id, None)


def timing_out(partial: str) -> Callable[..., Any]:
    """Command script step that prints ``partial`` and then hits the provider timeout."""

    async def step(*, timeout: float, on_stdout: Any = None, on_stderr: Any = None) -> CommandOutput:
        if on_stdout:
            on_stdout(partial)
        raise SandboxTimeoutError("sbx", "run")

    return step


# =============================================================================
# Completion service
# =============================================================================


def role_for(messages: list[dict[str, Any]]) -> Role:
    system = messages[0]["content"]
    for role in Role:
        if DEFAULT_ROLE_CONFIG[role.value]["instructions"] == system:
            return role
    raise AssertionError(f"Unknown system prompt: {system[:60]}")


def write_files_call(files: dict[str, str], call_id: str = "call-1") -> list[ToolCall]:
    return [
        ToolCall(
            id=call_id,
            name="createOrUpdateFiles",
            arguments={"files": [{"path": path, "content": content} for path, content in files.items()]},
        )
    ]


class FakeCompletion:
    """Replays scripted replies per role: text, a list of tool calls, or an exception."""

    def __init__(self) -> None:
        self.scripts: dict[Role, list[Any]] = {}
        self.calls: list[tuple[Role, list[dict[str, Any]]]] = []

    def script(self, role: Role, *replies: Any) -> None:
        self.scripts.setdefault(role, []).extend(replies)

    def calls_for(self, role: Role) -> int:
        return sum(1 for called, _ in self.calls if called == role)

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> Completion:
        role = role_for(messages)
        self.calls.append((role, list(messages)))
        queue = self.scripts.get(role)
        if not queue:
            raise AssertionError(f"No scripted reply left for {role.value}")
        reply = queue.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, list):
            return Completion(text="", tool_calls=reply, model=model)
        return Completion(text=reply, model=model)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def database(tmp_path: Any) -> AsyncGenerator[Database]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'codeforge.db'}")
    await database.init_db()
    yield database
    await database.dispose()


@pytest.fixture
def session_factory(database: Database) -> Any:
    return database.session_factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(session_factory: Any, clock: FakeClock) -> RateLimiter:
    return RateLimiter(SqlRateLimitStore(session_factory), window_seconds=3600, prune_batch=100, clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def no_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    async def sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return sleep


@pytest.fixture
def collected() -> list[EngineEvent]:
    return []


@pytest.fixture
def events(collected: list[EngineEvent]) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_event(collected.append)
    return emitter


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        redis_events_enabled=False,
        rate_limit_backend="sql",
        e2b_api_key=None,
        completion_api_key=None,
        default_model="test-model",
    )


@pytest.fixture
async def engine(
    test_settings: Settings,
    database: Database,
    provider: FakeProvider,
    completion: FakeCompletion,
    no_sleep: Callable[[float], Any],
    collected: list[EngineEvent],
) -> AsyncGenerator[Engine]:
    engine = build_engine(test_settings, database=database, provider=provider, completion=completion, sleep=no_sleep)
    engine.events.on_event(collected.append)
    yield engine
    await engine.router.drain()


def statuses(collected: list[EngineEvent]) -> list[str]:
    return [e.data["to"] for e in collected if e.type == EventType.JOB_STATUS_CHANGED]


async def make_job(session_factory: Any, request: str = "Build a todo app", **kwargs: Any) -> str:
    async with session_factory() as session:
        job = await db.create_job(session, request=request, **kwargs)
        await session.commit()
        return job.id
