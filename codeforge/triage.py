"""
Issue triage: classify an inbound issue and fan its work items out as codegen tasks.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .agents import AgentRunner
from .envelope import extract_json_block
from .errors import EnvelopeParseError
from .models import Issue, TaskType
from .queue import TaskDispatcher, enqueue_task
from .role_config import Role

logger = logging.getLogger(__name__)

PRIORITY_SCORES = {
    "critical": 100,
    "high": 75,
    "medium": 50,
    "low": 25,
}


class Complexity(str, Enum):
    TRIVIAL = "trivial"
    STANDARD = "standard"
    COMPLEX = "complex"


@dataclass
class ComplexityEstimate:
    complexity: Complexity
    confidence: float
    reasons: list[str]


class IssueTriager:
    """Estimates issue complexity from keywords and scope."""

    TRIVIAL_KEYWORDS = {
        "typo",
        "typos",
        "spelling",
        "rename",
        "comment",
        "documentation",
        "readme",
        "docs",
        "copy change",
        "remove unused",
        "delete unused",
        "cleanup",
        "bump version",
    }

    COMPLEX_KEYWORDS = {
        "architecture",
        "refactor",
        "security",
        "authentication",
        "authorization",
        "database schema",
        "migration",
        "performance",
        "scalability",
        "redesign",
        "breaking change",
        "realtime",
    }

    SINGLE_FILE_PATTERNS = [
        r"in (\w+\.\w+)",
        r"file (\w+\.\w+)",
        r"^fix (\w+)",
        r"on the (\w+) page",
    ]

    MULTI_FILE_PATTERNS = [
        r"across (?:all|the|multiple)",
        r"throughout",
        r"everywhere",
        r"all (\w+) (?:files|pages|components)",
    ]

    def classify(self, title: str, body: str = "") -> ComplexityEstimate:
        text = f"{title} {body}".lower()
        keyword_score = self._keyword_analysis(text)
        scope_score = self._scope_analysis(text)
        final_score = 0.6 * keyword_score + 0.4 * scope_score

        reasons: list[str] = []
        if keyword_score < 0.3:
            reasons.append("trivial_keywords")
        if keyword_score > 0.7:
            reasons.append("complex_keywords")
        if scope_score < 0.3:
            reasons.append("single_file_scope")
        if scope_score > 0.7:
            reasons.append("multi_file_scope")

        if final_score <= 0.3:
            complexity = Complexity.TRIVIAL
        elif final_score >= 0.7:
            complexity = Complexity.COMPLEX
        else:
            complexity = Complexity.STANDARD

        confidence = max(0.0, min(1.0, 1 - abs(keyword_score - scope_score)))
        return ComplexityEstimate(complexity=complexity, confidence=confidence, reasons=reasons)

    def _keyword_analysis(self, text: str) -> float:
        trivial_count = sum(1 for kw in self.TRIVIAL_KEYWORDS if kw in text)
        complex_count = sum(1 for kw in self.COMPLEX_KEYWORDS if kw in text)

        if trivial_count > 0 and complex_count == 0:
            return 0.1
        if complex_count > 0 and trivial_count == 0:
            return 0.9
        if complex_count > trivial_count:
            return 0.7
        if trivial_count > complex_count:
            return 0.3
        return 0.5

    def _scope_analysis(self, text: str) -> float:
        if any(re.search(pattern, text) for pattern in self.MULTI_FILE_PATTERNS):
            return 0.9
        if any(re.search(pattern, text) for pattern in self.SINGLE_FILE_PATTERNS):
            return 0.2
        return 0.5


@dataclass
class TriageResult:
    priority: str
    category: str
    complexity: str
    summary: str
    work_items: list[str] = field(default_factory=list)

    @property
    def priority_score(self) -> int:
        return PRIORITY_SCORES.get(self.priority, PRIORITY_SCORES["medium"])


def parse_triage(text: str, *, fallback_title: str, triager: IssueTriager | None = None, body: str = "") -> TriageResult:
    """Parse the triager's JSON envelope, filling a missing complexity heuristically."""
    data = extract_json_block(text, tag="triage")
    if data is None:
        raise EnvelopeParseError(Role.TRIAGER.value, "no JSON object in <triage>")

    priority = str(data.get("priority") or "").strip().lower()
    if priority not in PRIORITY_SCORES:
        raise EnvelopeParseError(Role.TRIAGER.value, f"unknown priority {data.get('priority')!r}")

    raw_items = data.get("work_items") or []
    if isinstance(raw_items, str):
        raw_items = [raw_items]
    if not isinstance(raw_items, list):
        raise EnvelopeParseError(Role.TRIAGER.value, "work_items must be a list")
    work_items = [str(item).strip() for item in raw_items if str(item).strip()]
    if not work_items:
        work_items = [fallback_title]

    complexity = str(data.get("complexity") or "").strip().lower()
    if complexity not in {c.value for c in Complexity}:
        complexity = (triager or IssueTriager()).classify(fallback_title, body).complexity.value

    return TriageResult(
        priority=priority,
        category=str(data.get("category") or "general"),
        complexity=complexity,
        summary=str(data.get("summary") or ""),
        work_items=work_items,
    )


class TriageWorkflow:
    """Handles ``triage/run``: classify the issue, then queue its work items."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runner: AgentRunner,
        dispatcher: TaskDispatcher,
        *,
        triager: IssueTriager | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.runner = runner
        self.dispatcher = dispatcher
        self.triager = triager or IssueTriager()

    @staticmethod
    def _context(issue: Issue) -> str:
        parts = [f"Title: {issue.title}"]
        if issue.repository:
            parts.append(f"Repository: {issue.repository}")
        parts.append(f"Body:\n{issue.body or '(empty)'}")
        return "\n\n".join(parts)

    async def run(self, task_id: str, issue_id: str | None, payload: dict[str, Any] | None = None) -> TriageResult | None:
        issue_id = issue_id or (payload or {}).get("issue_id")
        async with self._session_factory() as session:
            issue = await db.get_issue(session, issue_id) if issue_id else None
        if issue is None:
            await self.dispatcher.fail_task(task_id, f"Issue {issue_id} not found", requeue=False)
            return None

        agent = await self.runner.run(Role.TRIAGER, self._context(issue))
        try:
            result = parse_triage(agent.text, fallback_title=issue.title, triager=self.triager, body=issue.body)
        except EnvelopeParseError as exc:
            await self.dispatcher.fail_task(task_id, exc, requeue=True)
            return None

        async with self._session_factory() as session:
            issue = await db.get_issue(session, issue.id)
            issue.priority = result.priority
            issue.category = result.category
            issue.complexity = result.complexity
            issue.triage_summary = result.summary
            issue.status = "triaged"
            for item in result.work_items:
                await enqueue_task(
                    session,
                    TaskType.CODEGEN,
                    {"value": item, "title": issue.title, "repository": issue.repository},
                    priority=result.priority_score,
                    issue_id=issue.id,
                )
            await session.commit()

        await self.dispatcher.complete_task(task_id)
        logger.info(
            "Triaged issue %s as %s/%s, queued %d codegen tasks",
            issue.id,
            result.priority,
            result.complexity,
            len(result.work_items),
        )
        await self.dispatcher.nudge()
        return result
