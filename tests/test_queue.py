import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from codeforge.circuit_breaker import CircuitBreaker
from codeforge.models import Task, TaskStatus, TaskType, utcnow
from codeforge.queue import EVENT_CODEGEN, EVENT_TRIAGE, TaskDispatcher, entry_event_for
from codeforge.workflow.router import EventRouter, WorkflowEvent


@pytest.fixture
def received() -> list[WorkflowEvent]:
    return []


@pytest.fixture
def router(received: list[WorkflowEvent]) -> EventRouter:
    router = EventRouter()

    async def record(event: WorkflowEvent) -> None:
        received.append(event)

    router.register(EVENT_CODEGEN, record)
    router.register(EVENT_TRIAGE, record)
    return router


@pytest.fixture
def dispatcher(session_factory, router: EventRouter) -> TaskDispatcher:
    return TaskDispatcher(session_factory, router, max_retries=2, batch_size=10)


async def _tasks(session_factory) -> list[Task]:
    async with session_factory() as session:
        result = await session.execute(select(Task).order_by(Task.created_at))
        return list(result.scalars().all())


def test_every_task_type_has_an_entry_event() -> None:
    assert {entry_event_for(t) for t in TaskType} == {"triage/run", "codegen/run", "pr/create-requested"}


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_task(session_factory, router: EventRouter) -> None:
    seed = TaskDispatcher(session_factory, router)
    for i in range(8):
        await seed.enqueue(TaskType.CODEGEN, {"value": f"item {i}"})
    dispatchers = [TaskDispatcher(session_factory, router, batch_size=4) for _ in range(3)]

    batches = await asyncio.gather(*(d.claim_batch() for d in dispatchers))

    claimed = [task.id for batch in batches for task in batch]
    assert len(claimed) == len(set(claimed)) == 8
    assert all(task.status == TaskStatus.RUNNING for batch in batches for task in batch)


@pytest.mark.asyncio
async def test_claims_follow_priority_then_age(dispatcher: TaskDispatcher) -> None:
    low = await dispatcher.enqueue(TaskType.CODEGEN, {"value": "low"}, priority=25)
    first_high = await dispatcher.enqueue(TaskType.CODEGEN, {"value": "high"}, priority=75)
    second_high = await dispatcher.enqueue(TaskType.CODEGEN, {"value": "high again"}, priority=75)

    claimed = await dispatcher.claim_batch(limit=2)

    assert [t.id for t in claimed] == [first_high.id, second_high.id]
    assert [t.id for t in await dispatcher.claim_batch()] == [low.id]


@pytest.mark.asyncio
async def test_future_tasks_are_not_claimed(dispatcher: TaskDispatcher) -> None:
    await dispatcher.enqueue(TaskType.CODEGEN, available_at=utcnow() + timedelta(minutes=5))
    assert await dispatcher.claim_batch() == []


@pytest.mark.asyncio
async def test_sweep_routes_claimed_tasks(
    dispatcher: TaskDispatcher, router: EventRouter, received: list[WorkflowEvent]
) -> None:
    task = await dispatcher.enqueue(TaskType.TRIAGE, {"source": "github"}, issue_id=None)

    result = await dispatcher.sweep()
    await router.drain()

    assert result.routed == [task.id]
    assert received[0].name == EVENT_TRIAGE
    assert received[0].data["task_id"] == task.id
    assert received[0].data["payload"] == {"source": "github"}


@pytest.mark.asyncio
async def test_unmapped_type_fails_without_requeue(dispatcher: TaskDispatcher, session_factory) -> None:
    task = await dispatcher.enqueue("deploy", {"env": "prod"})

    result = await dispatcher.sweep()

    assert result.failed == [task.id]
    tasks = await _tasks(session_factory)
    assert len(tasks) == 1
    assert tasks[0].status == TaskStatus.FAILED
    assert "Unmapped task type" in tasks[0].error_message


@pytest.mark.asyncio
async def test_unregistered_workflow_fails_without_requeue(session_factory) -> None:
    dispatcher = TaskDispatcher(session_factory, EventRouter())
    task = await dispatcher.enqueue(TaskType.PR_CREATION, {"job_id": "job-1"})

    result = await dispatcher.sweep()

    assert result.failed == [task.id]
    assert len(await _tasks(session_factory)) == 1


@pytest.mark.asyncio
async def test_failed_task_is_requeued_until_max_retries(dispatcher: TaskDispatcher, session_factory) -> None:
    task = await dispatcher.enqueue(TaskType.CODEGEN, {"value": "todo app"}, priority=75)

    first = await dispatcher.fail_task(task.id, "sandbox crashed")
    second = await dispatcher.fail_task(first, "sandbox crashed")
    third = await dispatcher.fail_task(second, "sandbox crashed")

    assert first is not None and second is not None
    assert third is None
    tasks = await _tasks(session_factory)
    assert [t.retry_count for t in tasks] == [0, 1, 2]
    assert all(t.status == TaskStatus.FAILED for t in tasks)
    assert all(t.priority == 75 and t.payload == {"value": "todo app"} for t in tasks)


@pytest.mark.asyncio
async def test_fail_without_requeue(dispatcher: TaskDispatcher, session_factory) -> None:
    task = await dispatcher.enqueue(TaskType.CODEGEN)
    assert await dispatcher.fail_task(task.id, "bad payload", requeue=False) is None
    assert len(await _tasks(session_factory)) == 1


@pytest.mark.asyncio
async def test_defer_keeps_retry_count_and_waits(dispatcher: TaskDispatcher, session_factory) -> None:
    task = await dispatcher.enqueue(TaskType.CODEGEN, {"value": "todo app"})
    resume_at = utcnow() + timedelta(minutes=30)

    new_id = await dispatcher.defer_task(task.id, "Rate limit exceeded for sandbox_create", resume_at)

    async with session_factory() as session:
        old = await session.get(Task, task.id)
        new = await session.get(Task, new_id)
    assert old.status == TaskStatus.FAILED
    assert old.error_message.startswith("Deferred:")
    assert new.status == TaskStatus.PENDING
    assert new.retry_count == 0
    assert abs((new.available_at - resume_at).total_seconds()) < 1
    assert await dispatcher.claim_batch() == []


@pytest.mark.asyncio
async def test_sweep_skipped_while_circuit_open(session_factory, router: EventRouter) -> None:
    breaker = CircuitBreaker("sandbox_create", failure_threshold=1)
    breaker.record_failure()
    dispatcher = TaskDispatcher(session_factory, router, breaker=breaker)
    await dispatcher.enqueue(TaskType.CODEGEN)

    result = await dispatcher.sweep()

    assert result.skipped_reason == "circuit_open"
    assert result.claimed == 0
    assert (await dispatcher.counts()) == {TaskStatus.PENDING.value: 1}


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_finished_tasks(dispatcher: TaskDispatcher, session_factory) -> None:
    old_done = await dispatcher.enqueue(TaskType.CODEGEN)
    old_failed = await dispatcher.enqueue(TaskType.CODEGEN)
    old_pending = await dispatcher.enqueue(TaskType.CODEGEN)
    recent_done = await dispatcher.enqueue(TaskType.CODEGEN)
    await dispatcher.complete_task(old_done.id)
    await dispatcher.fail_task(old_failed.id, "boom", requeue=False)
    await dispatcher.complete_task(recent_done.id)
    long_ago = utcnow() - timedelta(days=10)
    async with session_factory() as session:
        await session.execute(
            update(Task)
            .where(Task.id.in_([old_done.id, old_failed.id, old_pending.id]))
            .values(updated_at=long_ago)
        )
        await session.commit()

    deleted = await dispatcher.cleanup_tasks(older_than_days=7, batch=1)

    assert deleted == 2
    remaining = {t.id for t in await _tasks(session_factory)}
    assert remaining == {old_pending.id, recent_done.id}
