"""Wires the engine's components from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from redis.asyncio import ConnectionPool, Redis

from .agents import AgentRunner
from .circuit_breaker import CircuitBreaker
from .completion import CompletionClient, CompletionService, MeteredCompletionService
from .config import Settings
from .db import Database
from .events import EventEmitter, RedisEventPublisher
from .health import health_check
from .pipeline import CodegenPipeline, PipelineLimits
from .queue import TaskDispatcher
from .rate_limit import RateLimiter, RateLimitStore, RedisRateLimitStore, SqlRateLimitStore
from .sandbox import E2BSandboxProvider, SandboxLifecycleManager, SandboxProvider
from .triage import TriageWorkflow
from .workflow.base import RetryPolicy
from .workflow.executor import WorkflowExecutor
from .workflow.handlers import WorkflowHandlers
from .workflow.pipeline_steps import StepDeps
from .workflow.router import EventRouter

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    database: Database
    events: EventEmitter
    rate_limiter: RateLimiter
    breaker: CircuitBreaker
    sandboxes: SandboxLifecycleManager
    runner: AgentRunner
    executor: WorkflowExecutor
    pipeline: CodegenPipeline
    router: EventRouter
    dispatcher: TaskDispatcher
    triage: TriageWorkflow
    redis: Redis | None = None
    completion_client: CompletionClient | None = None

    @property
    def session_factory(self) -> Any:
        return self.database.session_factory

    async def health(self) -> dict[str, Any]:
        return await health_check(
            self.rate_limiter,
            limits=self.settings.rate_limits,
            breaker=self.breaker,
            dispatcher=self.dispatcher,
            events=self.events,
            alert_ratio=self.settings.health_alert_ratio,
        )

    async def aclose(self) -> None:
        await self.router.drain()
        if self.completion_client is not None:
            await self.completion_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.database.dispose()


def build_engine(
    settings: Settings,
    *,
    database: Database | None = None,
    provider: SandboxProvider | None = None,
    completion: CompletionService | None = None,
    redis: Redis | None = None,
    sleep: Any = None,
) -> Engine:
    """Build an engine; injected collaborators replace the ones built from settings."""
    database = database or Database(settings.async_database_url)
    session_factory = database.session_factory

    needs_redis = settings.rate_limit_backend == "redis" or settings.redis_events_enabled
    if redis is None and needs_redis:
        pool = ConnectionPool.from_url(settings.redis_url, max_connections=20, decode_responses=True)
        redis = Redis(connection_pool=pool)

    events = EventEmitter()
    if redis is not None and settings.redis_events_enabled:
        events.on_event(RedisEventPublisher(redis))

    store: RateLimitStore
    if settings.rate_limit_backend == "redis" and redis is not None:
        store = RedisRateLimitStore(redis, ttl_seconds=settings.rate_limit_window_seconds)
    else:
        store = SqlRateLimitStore(session_factory)
    rate_limiter = RateLimiter(
        store,
        window_seconds=settings.rate_limit_window_seconds,
        prune_batch=settings.rate_limit_prune_batch,
        fail_closed_operations=settings.rate_limit_fail_closed_operations,
        warning_ratio=settings.rate_limit_warning_ratio,
    )

    breaker = CircuitBreaker(
        "sandbox_create",
        failure_threshold=settings.circuit_failure_threshold,
        timeout=settings.circuit_timeout,
    )
    sandboxes = SandboxLifecycleManager(
        session_factory,
        provider or E2BSandboxProvider(settings.e2b_api_key),
        rate_limiter,
        limits=settings.rate_limits,
        template=settings.sandbox_template,
        sandbox_timeout=settings.sandbox_timeout,
        breaker=breaker,
        events=events,
        cache_ttl=settings.sandbox_cache_ttl,
    )

    completion_client = None
    if completion is None:
        completion_client = CompletionClient(
            base_url=settings.completion_base_url,
            api_key=settings.completion_api_key,
            timeout_seconds=settings.completion_timeout,
        )
        completion = completion_client
    metered = MeteredCompletionService(completion, rate_limiter, limit=settings.limit_for("ai_completion"))
    runner = AgentRunner(
        metered, default_model=settings.default_model, max_tool_iterations=settings.max_tool_iterations
    )

    policy = RetryPolicy(
        max_attempts=settings.step_max_attempts,
        base_delay=settings.step_base_delay,
        factor=settings.step_backoff_factor,
        max_delay=settings.step_max_delay,
    )
    executor_kwargs: dict[str, Any] = {"policy": policy, "events": events}
    if sleep is not None:
        executor_kwargs["sleep"] = sleep
    executor = WorkflowExecutor(session_factory, **executor_kwargs)

    deps = StepDeps(
        sandboxes=sandboxes,
        runner=runner,
        events=events,
        command_timeout=settings.command_timeout,
        lint_command=settings.lint_command,
        lint_timeout=settings.lint_timeout,
        build_command=settings.build_command,
        build_timeout=settings.build_timeout,
    )
    pipeline = CodegenPipeline(
        session_factory,
        executor,
        deps,
        limits=PipelineLimits(
            max_review_cycles=settings.max_review_cycles, max_fix_cycles=settings.max_fix_cycles
        ),
        events=events,
        release_on_complete=settings.release_on_complete,
    )

    router = EventRouter()
    dispatcher = TaskDispatcher(
        session_factory,
        router,
        breaker=breaker,
        max_retries=settings.task_max_retries,
        batch_size=settings.sweep_batch_size,
    )
    triage = TriageWorkflow(session_factory, runner, dispatcher)
    WorkflowHandlers(session_factory, dispatcher, pipeline, triage, events).register(router)

    return Engine(
        settings=settings,
        database=database,
        events=events,
        rate_limiter=rate_limiter,
        breaker=breaker,
        sandboxes=sandboxes,
        runner=runner,
        executor=executor,
        pipeline=pipeline,
        router=router,
        dispatcher=dispatcher,
        triage=triage,
        redis=redis,
        completion_client=completion_client,
    )
