"""
Concrete steps of the codegen pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .. import db
from ..agents import AgentRunner
from ..envelope import parse_plan, parse_review, parse_summary, parse_test_report
from ..errors import EnvelopeParseError
from ..events import EventEmitter, EventType
from ..models import JobStatus, Verdict
from ..role_config import Role
from ..sandbox import SandboxLifecycleManager
from ..tools import CommandResult, ToolSurface
from .base import Ok, RetryableError, StepResult, WorkflowContext, WorkflowStep

_CONTEXT_FILE_LIMIT = 6000
_CHECK_OUTPUT_LIMIT = 4000
# Shell exit status for "command not found": the project has no such script.
EXIT_COMMAND_NOT_FOUND = 127


@dataclass
class StepDeps:
    """Collaborators shared by the pipeline steps."""

    sandboxes: SandboxLifecycleManager
    runner: AgentRunner
    events: EventEmitter
    command_timeout: float = 120.0
    lint_command: str = "npm run lint"
    lint_timeout: float = 60.0
    build_command: str = "npm run build"
    build_timeout: float = 120.0


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "\n... (truncated)"


def _file_listing(files: dict[str, str]) -> str:
    return "\n".join(f"- {path}" for path in sorted(files)) or "(no files yet)"


class PipelineStep(WorkflowStep):
    def __init__(self, deps: StepDeps) -> None:
        self.deps = deps

    def _tools(self, handle: Any, ctx: WorkflowContext) -> ToolSurface:
        return ToolSurface(handle, files=ctx.get("files") or {}, default_timeout=self.deps.command_timeout)


class AcquireSandboxStep(PipelineStep):
    name = "acquire-sandbox"
    description = "Create or reconnect the job's sandbox"

    async def execute(self, ctx: WorkflowContext) -> StepResult:
        async with self.deps.sandboxes.use(ctx.job_id) as handle:
            return Ok({"sandbox_id": handle.sandbox_id})

    def apply(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        ctx.set("sandbox_id", output.get("sandbox_id"))


class PlanStep(PipelineStep):
    name = "plan"
    description = "Planner drafts the implementation plan"
    job_status = JobStatus.PLANNING

    async def execute(self, ctx: WorkflowContext) -> StepResult:
        context = f"Request:\n{ctx.get('request')}\n\nExisting files:\n{_file_listing(ctx.get('files') or {})}"
        result = await self.deps.runner.run(Role.PLANNER, context)
        try:
            plan = parse_plan(result.text)
        except EnvelopeParseError as exc:
            return RetryableError(str(exc))
        return Ok({"plan": plan, "model": result.model})

    def apply(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        ctx.set("plan", output["plan"])


class ImplementStep(PipelineStep):
    name = "implement"
    description = "Coder writes files and summarises the change"
    job_status = JobStatus.CODING

    def _context(self, ctx: WorkflowContext) -> str:
        parts = [f"Request:\n{ctx.get('request')}"]
        if ctx.get("plan"):
            parts.append(f"Plan:\n{ctx.get('plan')}")
        parts.append(f"Existing files:\n{_file_listing(ctx.get('files') or {})}")
        if ctx.get("review_feedback"):
            parts.append(f"Reviewer feedback to address:\n{ctx.get('review_feedback')}")
        if ctx.get("issues"):
            issues = "\n".join(f"- {issue}" for issue in ctx.get("issues"))
            parts.append(f"Failing checks to resolve:\n{issues}")
        if ctx.get("fix_summary"):
            parts.append(f"Fixer notes:\n{ctx.get('fix_summary')}")
        return "\n\n".join(parts)

    async def execute(self, ctx: WorkflowContext) -> StepResult:
        async with self.deps.sandboxes.use(ctx.job_id) as handle:
            tools = self._tools(handle, ctx)
            result = await self.deps.runner.run(
                Role.CODER, self._context(ctx), tools=tools, model_override=ctx.get("model")
            )
        try:
            summary = parse_summary(result.text, Role.CODER.value)
        except EnvelopeParseError as exc:
            return RetryableError(str(exc))
        return Ok({"summary": summary, "files": tools.files, "model": result.model, "tool_calls": result.tool_calls})

    async def persist(self, session: AsyncSession, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        fragment = await db.create_fragment(
            session,
            job_id=ctx.job_id,
            files=output["files"],
            summary=output["summary"],
            framework=ctx.get("framework") or "nextjs",
        )
        await db.append_job_log(
            session,
            ctx.job_id,
            f"Saved fragment v{fragment.version} with {len(fragment.files)} files",
            step=ctx.get("step_key"),
        )

    def apply(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        ctx.set("files", dict(output["files"]))
        ctx.set("summary", output["summary"])


class ReviewStep(PipelineStep):
    name = "review"
    description = "Reviewer approves or requests changes"
    job_status = JobStatus.REVIEWING

    async def execute(self, ctx: WorkflowContext) -> StepResult:
        files = ctx.get("files") or {}
        async with self.deps.sandboxes.use(ctx.job_id) as handle:
            contents = await self._tools(handle, ctx).read_files(sorted(files))
        rendered = "\n\n".join(f"### {r.path}\n{_clip(r.as_text(), _CONTEXT_FILE_LIMIT)}" for r in contents)
        context = (
            f"Request:\n{ctx.get('request')}\n\nPlan:\n{ctx.get('plan') or '(none)'}\n\n"
            f"Coder summary:\n{ctx.get('summary')}\n\nFiles:\n{rendered or '(none)'}"
        )
        result = await self.deps.runner.run(Role.REVIEWER, context)
        try:
            review = parse_review(result.text)
        except EnvelopeParseError as exc:
            return RetryableError(str(exc))
        return Ok({"verdict": review.verdict.value, "reasoning": review.reasoning, "model": result.model})

    async def persist(self, session: AsyncSession, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        await db.add_decision(
            session,
            job_id=ctx.job_id,
            step=ctx.get("step_key") or self.name,
            verdict=output["verdict"],
            reasoning=output["reasoning"],
            agents=[Role.REVIEWER.value, output.get("model") or "unknown"],
        )

    def apply(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        if output["verdict"] == Verdict.REQUEST_CHANGES:
            ctx.set("review_feedback", output["reasoning"])
        else:
            ctx.set("review_feedback", None)

    async def on_complete(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        await self.deps.events.emit_type(
            EventType.DECISION_RECORDED,
            job_id=ctx.job_id,
            step=ctx.get("step_key"),
            message=f"Review verdict {output['verdict']}",
            data={"verdict": output["verdict"]},
        )


def evaluate_check(label: str, result: CommandResult) -> tuple[str, str]:
    """Classify a lint/build run as pass, skip, fail or error (transport)."""
    if result.success:
        return "pass", ""
    if result.exit_code == EXIT_COMMAND_NOT_FOUND:
        return "skip", f"{label} script not found"
    if result.timed_out:
        return "fail", f"{label} timed out\n{result.error or ''}".strip()
    if result.exit_code is None:
        return "error", result.error or f"{label} could not run"
    output = result.output.strip() or f"{label} exited with status {result.exit_code}"
    return "fail", _clip(output, _CHECK_OUTPUT_LIMIT)


class TestStep(PipelineStep):
    __test__ = False

    name = "test"
    description = "Run lint and build, then turn failures into an issue list"
    job_status = JobStatus.TESTING

    async def execute(self, ctx: WorkflowContext) -> StepResult:
        async with self.deps.sandboxes.use(ctx.job_id) as handle:
            tools = self._tools(handle, ctx)
            lint = await tools.run_command(self.deps.lint_command, timeout=self.deps.lint_timeout)
            build = await tools.run_command(self.deps.build_command, timeout=self.deps.build_timeout)

        checks = {"lint": evaluate_check("lint", lint), "build": evaluate_check("build", build)}
        for label, (status, detail) in checks.items():
            if status == "error":
                return RetryableError(f"{label} check could not run: {detail}")

        outputs = {label: detail for label, (status, detail) in checks.items() if status == "fail"}
        if not outputs:
            return Ok({"verdict": Verdict.PASS.value, "issues": [], "outputs": {}, "model": None})

        context = "\n\n".join(f"{label} output:\n{detail}" for label, detail in outputs.items())
        result = await self.deps.runner.run(Role.TESTER, context)
        try:
            report = parse_test_report(result.text)
        except EnvelopeParseError as exc:
            return RetryableError(str(exc))
        issues = report.issues or [f"{label} failed: {detail.splitlines()[0]}" for label, detail in outputs.items()]
        return Ok({"verdict": Verdict.FAIL.value, "issues": issues, "outputs": outputs, "model": result.model})

    async def persist(self, session: AsyncSession, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        agents = ["lint", "build"]
        if output.get("model"):
            agents.append(output["model"])
        await db.add_decision(
            session,
            job_id=ctx.job_id,
            step=ctx.get("step_key") or self.name,
            verdict=output["verdict"],
            reasoning="\n".join(output["issues"]) or "Lint and build passed",
            agents=agents,
        )
        job = await db.get_job(session, ctx.job_id)
        if job is not None:
            job.last_issues = list(output["issues"])

    def apply(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        ctx.set("issues", list(output["issues"]))
        ctx.set("check_outputs", dict(output.get("outputs") or {}))

    async def on_complete(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        await self.deps.events.emit_type(
            EventType.DECISION_RECORDED,
            job_id=ctx.job_id,
            step=ctx.get("step_key"),
            message=f"Test verdict {output['verdict']}",
            data={"verdict": output["verdict"], "issues": output["issues"]},
        )


class FixStep(PipelineStep):
    name = "fix"
    description = "Fixer works through the failing checks"
    job_status = JobStatus.FIXING

    async def execute(self, ctx: WorkflowContext) -> StepResult:
        issues = "\n".join(f"- {issue}" for issue in ctx.get("issues") or [])
        outputs = "\n\n".join(
            f"{label} output:\n{detail}" for label, detail in (ctx.get("check_outputs") or {}).items()
        )
        context = (
            f"Request:\n{ctx.get('request')}\n\nIssues:\n{issues}\n\n{outputs}\n\n"
            f"Files:\n{_file_listing(ctx.get('files') or {})}"
        )
        async with self.deps.sandboxes.use(ctx.job_id) as handle:
            tools = self._tools(handle, ctx)
            result = await self.deps.runner.run(
                Role.FIXER, context, tools=tools, model_override=ctx.get("model")
            )
        try:
            summary = parse_summary(result.text, Role.FIXER.value)
        except EnvelopeParseError as exc:
            return RetryableError(str(exc))
        return Ok({"summary": summary, "files": tools.files, "model": result.model})

    def apply(self, ctx: WorkflowContext, output: dict[str, Any]) -> None:
        ctx.set("files", dict(output["files"]))
        ctx.set("fix_summary", output["summary"])
