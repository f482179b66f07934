import json

import pytest
from sqlalchemy import select

from codeforge import db
from codeforge.agents import AgentRunner
from codeforge.errors import EnvelopeParseError
from codeforge.models import Task, TaskStatus, TaskType
from codeforge.queue import EVENT_CODEGEN, TaskDispatcher
from codeforge.role_config import Role
from codeforge.triage import Complexity, IssueTriager, TriageWorkflow, parse_triage
from codeforge.workflow.router import EventRouter, WorkflowEvent
from tests.conftest import FakeCompletion


def triage_reply(**fields) -> str:
    return f"<triage>{json.dumps(fields)}</triage>"


@pytest.fixture
def dispatcher(session_factory) -> TaskDispatcher:
    router = EventRouter()

    async def ignore(event: WorkflowEvent) -> None:
        return None

    router.register(EVENT_CODEGEN, ignore)
    return TaskDispatcher(session_factory, router)


@pytest.fixture
def workflow(session_factory, completion: FakeCompletion, dispatcher: TaskDispatcher) -> TriageWorkflow:
    return TriageWorkflow(session_factory, AgentRunner(completion, default_model="test-model"), dispatcher)


async def _issue(session_factory, title: str, body: str = "") -> str:
    async with session_factory() as session:
        issue = await db.create_issue(session, title=title, body=body, repository="acme/todo")
        await session.commit()
        return issue.id


async def _claimed_triage_task(dispatcher: TaskDispatcher, issue_id: str | None) -> str:
    task = await dispatcher.enqueue(TaskType.TRIAGE, {"issue_id": issue_id}, issue_id=issue_id)
    await dispatcher.claim_batch()
    return task.id


def test_triage_trivial_keyword() -> None:
    result = IssueTriager().classify("Fix typo in README.md")
    assert result.complexity == Complexity.TRIVIAL
    assert "trivial_keywords" in result.reasons


def test_triage_complex_scope() -> None:
    result = IssueTriager().classify("Refactor authentication across all services")
    assert result.complexity == Complexity.COMPLEX


def test_triage_defaults_to_standard() -> None:
    assert IssueTriager().classify("Add a dark mode toggle").complexity == Complexity.STANDARD


def test_parse_triage_normalises_fields() -> None:
    result = parse_triage(
        triage_reply(priority="High", category="feature", complexity="standard", summary="Todo app",
                     work_items=["Todo list page", " ", "Persist todos"]),
        fallback_title="Build a todo app",
    )

    assert result.priority == "high"
    assert result.priority_score == 75
    assert result.work_items == ["Todo list page", "Persist todos"]


def test_parse_triage_falls_back_to_title_and_heuristic() -> None:
    result = parse_triage(
        triage_reply(priority="low", complexity="enormous"),
        fallback_title="Fix typo in README.md",
    )

    assert result.work_items == ["Fix typo in README.md"]
    assert result.complexity == Complexity.TRIVIAL.value
    assert result.priority_score == 25


def test_parse_triage_rejects_unknown_priority() -> None:
    with pytest.raises(EnvelopeParseError):
        parse_triage(triage_reply(priority="urgent-ish"), fallback_title="x")
    with pytest.raises(EnvelopeParseError):
        parse_triage("This looks important.", fallback_title="x")


@pytest.mark.asyncio
async def test_triage_queues_codegen_per_work_item(
    workflow: TriageWorkflow, dispatcher: TaskDispatcher, completion: FakeCompletion, session_factory
) -> None:
    issue_id = await _issue(session_factory, "Build a todo app", "Add, toggle and delete todos")
    task_id = await _claimed_triage_task(dispatcher, issue_id)
    completion.script(
        Role.TRIAGER,
        triage_reply(priority="high", category="feature", complexity="standard", summary="Todo app",
                     work_items=["Todo list page", "Persist todos in localStorage"]),
    )

    result = await workflow.run(task_id, issue_id)

    assert result is not None and result.priority == "high"
    async with session_factory() as session:
        issue = await db.get_issue(session, issue_id)
        triage_task = await session.get(Task, task_id)
        codegen = list(
            (await session.execute(select(Task).where(Task.type == TaskType.CODEGEN).order_by(Task.created_at)))
            .scalars()
            .all()
        )
    assert issue.status == "triaged"
    assert issue.priority == "high"
    assert triage_task.status == TaskStatus.DONE
    assert [t.payload["value"] for t in codegen] == ["Todo list page", "Persist todos in localStorage"]
    assert all(t.priority == 75 and t.issue_id == issue_id for t in codegen)
    assert all(t.payload["repository"] == "acme/todo" for t in codegen)
    # The nudge claimed the new work right away.
    assert all(t.status == TaskStatus.RUNNING for t in codegen)


@pytest.mark.asyncio
async def test_unparseable_triage_is_requeued(
    workflow: TriageWorkflow, dispatcher: TaskDispatcher, completion: FakeCompletion, session_factory
) -> None:
    issue_id = await _issue(session_factory, "Build a todo app")
    task_id = await _claimed_triage_task(dispatcher, issue_id)
    completion.script(Role.TRIAGER, "Looks like a feature request to me.")

    assert await workflow.run(task_id, issue_id) is None

    async with session_factory() as session:
        tasks = list((await session.execute(select(Task).order_by(Task.created_at))).scalars().all())
    assert [(t.status, t.retry_count) for t in tasks] == [(TaskStatus.FAILED, 0), (TaskStatus.PENDING, 1)]
    assert all(t.type == TaskType.TRIAGE for t in tasks)


@pytest.mark.asyncio
async def test_missing_issue_fails_without_requeue(
    workflow: TriageWorkflow, dispatcher: TaskDispatcher, completion: FakeCompletion, session_factory
) -> None:
    task_id = await _claimed_triage_task(dispatcher, None)

    assert await workflow.run(task_id, "no-such-issue") is None

    assert completion.calls == []
    async with session_factory() as session:
        tasks = list((await session.execute(select(Task))).scalars().all())
    assert len(tasks) == 1
    assert tasks[0].status == TaskStatus.FAILED
