"""Main CLI entry point for codeforge."""

import asyncio
import json
import signal
from collections.abc import Awaitable, Callable
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import select

from . import __version__, db
from .app import Engine, build_engine
from .config import settings
from .errors import CodeforgeError
from .logging_config import setup_logging
from .models import Base, JobStatus
from .triggers import enqueue_codegen, enqueue_error_fix, enqueue_triage, run_worker, task_queue_sweep

console = Console()


def _run(func: Callable[[Engine], Awaitable[Any]]) -> Any:
    """Build an engine, run ``func`` against it and close it afterwards."""

    async def runner() -> Any:
        engine = build_engine(settings)
        try:
            return await func(engine)
        finally:
            await engine.aclose()

    try:
        return asyncio.run(runner())
    except CodeforgeError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default="INFO", help="Logging level")
def main(log_level: str) -> None:
    """Codeforge agent orchestration engine.

    Queue code generation work, run the agent pipeline in sandboxes and inspect jobs.
    """
    setup_logging(log_level, console=console)


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (local development)."""

    async def do_init(engine: Engine) -> None:
        await engine.database.init_db()
        console.print("[green]Database schema created[/green]")

    _run(do_init)


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check(engine: Engine) -> None:
        tables = sorted(Base.metadata.tables.values(), key=lambda t: t.name)
        async with engine.database.session() as session:
            for table in tables:
                await session.execute(select(table).limit(1))
        console.print(f"[green]Schema ready[/green] ({len(tables)} tables)")

    _run(check)


@main.command(name="enqueue-codegen")
@click.argument("value", required=False)
@click.option("--job-id", default=None, help="Resume or revise this job")
@click.option("--model", "-m", default=None, help="Model override for coding roles")
@click.option("--revision", "is_revision", is_flag=True, help="Revise the job's latest fragment")
@click.option("--owner", "owner_id", default=None, help="Owner id")
@click.option("--wait", is_flag=True, help="Wait for the run to finish")
def enqueue_codegen_cmd(
    value: str | None, job_id: str | None, model: str | None, is_revision: bool, owner_id: str | None, wait: bool
) -> None:
    """Start, resume or revise a code generation run.

    VALUE: What to build (or the revision request)
    """

    async def do_enqueue(engine: Engine) -> None:
        new_job_id = await enqueue_codegen(
            engine, value=value, job_id=job_id, model=model, is_revision=is_revision, owner_id=owner_id
        )
        console.print(f"Queued job [cyan]{new_job_id}[/cyan]")
        if wait:
            await engine.router.drain()
            async with engine.database.session() as session:
                job = await db.get_job(session, new_job_id)
                console.print(f"Status: [cyan]{job.status}[/cyan]")

    _run(do_enqueue)


@main.command(name="enqueue-triage")
@click.argument("title")
@click.option("--body", "-b", default="", help="Issue body")
@click.option("--repository", "-r", default=None, help="Repository the issue belongs to")
@click.option("--issue-id", default=None, help="Triage an existing issue instead")
def enqueue_triage_cmd(title: str, body: str, repository: str | None, issue_id: str | None) -> None:
    """Record an issue and queue it for triage.

    TITLE: Issue title
    """

    async def do_enqueue(engine: Engine) -> None:
        target = issue_id
        if target is None:
            async with engine.database.session() as session:
                issue = await db.create_issue(session, title=title, body=body, repository=repository)
                target = issue.id
        task_id = await enqueue_triage(engine, target)
        console.print(f"Queued triage task [cyan]{task_id}[/cyan] for issue {target}")
        await engine.router.drain()

    _run(do_enqueue)


@main.command(name="enqueue-error-fix")
@click.argument("fragment_id")
def enqueue_error_fix_cmd(fragment_id: str) -> None:
    """Re-test a fragment's files and fix what fails, in a superseding job.

    FRAGMENT_ID: The fragment to start from
    """

    async def do_enqueue(engine: Engine) -> None:
        new_job_id = await enqueue_error_fix(engine, fragment_id)
        console.print(f"Queued error-fix job [cyan]{new_job_id}[/cyan]")
        await engine.router.drain()

    _run(do_enqueue)


@main.command()
@click.option("--limit", default=None, type=int, help="Maximum tasks to claim")
def sweep(limit: int | None) -> None:
    """Claim and route one batch of pending tasks."""

    async def do_sweep(engine: Engine) -> None:
        result = await task_queue_sweep(engine, limit)
        if result.skipped_reason:
            console.print(f"[yellow]Sweep skipped: {result.skipped_reason}[/yellow]")
            return
        console.print(
            f"Claimed {result.claimed}, routed {len(result.routed)}, failed {len(result.failed)}"
        )
        await engine.router.drain()

    _run(do_sweep)


@main.command()
def worker() -> None:
    """Sweep the queue on an interval, with periodic cleanup and health checks."""

    async def do_work(engine: Engine) -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop.set)

        console.print("[green]Worker started[/green]")
        await run_worker(engine, stop)
        console.print("[yellow]Shutting down, waiting for running workflows[/yellow]")

    _run(do_work)


@main.command()
@click.argument("job_id")
def status(job_id: str) -> None:
    """Show status, log and decisions of a job.

    JOB_ID: The job identifier
    """

    async def show_status(engine: Engine) -> None:
        async with engine.database.session() as session:
            job = await db.get_job(session, job_id)
            if not job:
                console.print(f"[red]Job not found: {job_id}[/red]")
                return

            attention = "[bold yellow]yes[/bold yellow]" if job.needs_attention else "no"
            console.print(
                Panel(
                    f"[bold]{job.title}[/bold]\n\n"
                    f"Status: [cyan]{job.status}[/cyan]\n"
                    f"Needs attention: {attention}\n"
                    f"Sandbox: {job.sandbox_id or '-'}\n"
                    f"Created: {job.created_at.strftime('%Y-%m-%d %H:%M')}\n"
                    f"Supersedes: {job.supersedes_id or '-'}\n"
                    f"Superseded by: {job.superseded_by_id or '-'}"
                    + (f"\n\n[red]{job.error_message}[/red]" if job.error_message else ""),
                    title=f"Job: {job.id}",
                )
            )

            if job.last_issues:
                console.print("[bold]Open issues[/bold]")
                for issue in job.last_issues:
                    console.print(f"  - {issue}")

            logs = await db.get_job_logs(session, job.id)
            if logs:
                table = Table(title="Job Log")
                table.add_column("Time", style="dim")
                table.add_column("Step", style="cyan")
                table.add_column("Attempt")
                table.add_column("Level")
                table.add_column("Message")
                for entry in logs:
                    table.add_row(
                        entry.created_at.strftime("%H:%M:%S"),
                        entry.step or "-",
                        str(entry.attempt) if entry.attempt else "-",
                        entry.level,
                        entry.message[:100],
                    )
                console.print(table)

            decisions = await db.get_decisions(session, job.id)
            if decisions:
                table = Table(title="Council Decisions")
                table.add_column("Step", style="cyan")
                table.add_column("Verdict")
                table.add_column("Agents")
                table.add_column("Reasoning")
                for decision in decisions:
                    style = "green" if decision.verdict in ("APPROVE", "PASS") else "red"
                    table.add_row(
                        decision.step,
                        f"[{style}]{decision.verdict}[/{style}]",
                        ", ".join(decision.agents or []),
                        decision.reasoning[:80] + "..." if len(decision.reasoning) > 80 else decision.reasoning,
                    )
                console.print(table)

    _run(show_status)


@main.command(name="list-jobs")
@click.option("--limit", default=20, help="Number of jobs to show")
@click.option(
    "--status-filter", "status_filter", default=None, type=click.Choice([s.value for s in JobStatus])
)
@click.option("--owner", "owner_id", default=None, help="Filter by owner")
def list_jobs(limit: int, status_filter: str | None, owner_id: str | None) -> None:
    """List recently updated jobs."""

    async def list_all(engine: Engine) -> None:
        async with engine.database.session() as session:
            jobs = await db.list_jobs(session, limit=limit, status=status_filter, owner_id=owner_id)
            if not jobs:
                console.print("[yellow]No jobs found[/yellow]")
                return

            table = Table(title="Jobs")
            table.add_column("ID", style="cyan")
            table.add_column("Title")
            table.add_column("Status")
            table.add_column("Attention")
            table.add_column("Updated")
            for job in jobs:
                table.add_row(
                    job.id,
                    job.title[:40] + "..." if len(job.title) > 40 else job.title,
                    job.status,
                    "!" if job.needs_attention else "",
                    job.updated_at.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)

    _run(list_all)


@main.group(name="rate-limit")
def rate_limit_group() -> None:
    """Inspect and maintain provider rate limits."""
    pass


@rate_limit_group.command(name="check")
@click.argument("operation")
@click.option("--limit", "max_per_window", type=int, default=None, help="Override the configured limit")
def rate_limit_check(operation: str, max_per_window: int | None) -> None:
    """Show usage of OPERATION in the current window."""

    async def do_check(engine: Engine) -> None:
        limit = max_per_window if max_per_window is not None else engine.settings.limit_for(operation)
        result = await engine.rate_limiter.check(operation, limit)
        style = "red" if result.exceeded else "green"
        console.print(
            Panel(
                f"Count: {result.count}/{result.limit}\n"
                f"Remaining: {result.remaining}\n"
                f"Exceeded: [{style}]{result.exceeded}[/{style}]\n"
                f"Resets at: {result.reset_at.isoformat() if result.reset_at else '-'}",
                title=f"Rate limit: {operation}",
            )
        )

    _run(do_check)


@rate_limit_group.command(name="stats")
def rate_limit_stats() -> None:
    """Show usage per operation in the current window."""

    async def do_stats(engine: Engine) -> None:
        stats = await engine.rate_limiter.get_stats()
        table = Table(title=f"Rate limits (window {int(stats['window_seconds'])}s)")
        table.add_column("Operation", style="cyan")
        table.add_column("Count")
        table.add_column("Limit")
        operations = sorted(set(stats["by_operation"]) | set(engine.settings.rate_limits))
        for operation in operations:
            table.add_row(
                operation,
                str(stats["by_operation"].get(operation, 0)),
                str(engine.settings.limit_for(operation)),
            )
        console.print(table)
        console.print(f"Total: {stats['total']}")

    _run(do_stats)


@rate_limit_group.command(name="cleanup")
def rate_limit_cleanup() -> None:
    """Delete expired rate limit records."""

    async def do_cleanup(engine: Engine) -> None:
        deleted = await engine.rate_limiter.cleanup()
        console.print(f"Deleted {deleted} expired records")

    _run(do_cleanup)


@main.command(name="cleanup-tasks")
@click.option("--days", default=None, type=int, help="Delete finished tasks older than this")
@click.option("--batch", default=None, type=int, help="Rows deleted per transaction")
def cleanup_tasks(days: int | None, batch: int | None) -> None:
    """Delete old DONE and FAILED tasks."""

    async def do_cleanup(engine: Engine) -> None:
        deleted = await engine.dispatcher.cleanup_tasks(
            days if days is not None else engine.settings.task_cleanup_days,
            batch if batch is not None else engine.settings.task_cleanup_batch,
        )
        console.print(f"Deleted {deleted} tasks")

    _run(do_cleanup)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the raw report")
def health(as_json: bool) -> None:
    """Report quota usage, breaker state and queue depth."""

    async def do_health(engine: Engine) -> bool:
        report = await engine.health()
        if as_json:
            console.print_json(json.dumps(report, default=str))
            return report["healthy"]

        table = Table(title="Quota usage")
        table.add_column("Operation", style="cyan")
        table.add_column("Count")
        table.add_column("Limit")
        table.add_column("Usage")
        for operation, usage in sorted(report["usage"].items()):
            table.add_row(operation, str(usage["count"]), str(usage["limit"]), f"{usage['ratio']:.0%}")
        console.print(table)
        breaker = report["circuit_breaker"] or {}
        console.print(f"Circuit breaker: {breaker.get('state', '-')}")
        if report["tasks"]:
            console.print("Tasks: " + ", ".join(f"{k}={v}" for k, v in sorted(report["tasks"].items())))
        for alert in report["alerts"]:
            console.print(f"[red]ALERT[/red] {alert}")
        return report["healthy"]

    healthy = _run(do_health)
    raise SystemExit(0 if healthy else 1)


if __name__ == "__main__":
    main()
