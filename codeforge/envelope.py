"""
Parsers for the tagged envelopes each agent role must produce.

A role's output is accepted only when the expected sections are present and
well formed; anything else raises ``EnvelopeParseError`` so the step can be
retried instead of continuing on a guess.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from .errors import EnvelopeParseError
from .models import Verdict


@lru_cache(maxsize=None)
def _tag_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(rf"<{tag}>\s*(.*?)\s*</{tag}>", re.DOTALL | re.IGNORECASE)


def extract_tag(text: str, tag: str) -> str | None:
    """Return the last ``<tag>`` section in ``text``, or None."""
    matches = _tag_pattern(tag).findall(text or "")
    return matches[-1] if matches else None


def require_tag(text: str, tag: str, role: str) -> str:
    value = extract_tag(text, tag)
    if value is None:
        raise EnvelopeParseError(role, f"missing <{tag}> section")
    if not value.strip():
        raise EnvelopeParseError(role, f"empty <{tag}> section")
    return value.strip()


def parse_issue_list(block: str) -> list[str]:
    issues: list[str] = []
    for line in block.splitlines():
        stripped = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip()
        if stripped:
            issues.append(stripped)
    return issues


@dataclass(frozen=True)
class ReviewEnvelope:
    verdict: Verdict
    reasoning: str


@dataclass(frozen=True)
class VerificationReport:
    verdict: Verdict
    issues: list[str]


def parse_plan(text: str) -> str:
    return require_tag(text, "plan", "planner")


def parse_summary(text: str, role: str) -> str:
    return require_tag(text, "task_summary", role)


def parse_review(text: str) -> ReviewEnvelope:
    raw = require_tag(text, "verdict", "reviewer").upper().replace(" ", "_")
    if raw not in (Verdict.APPROVE, Verdict.REQUEST_CHANGES):
        raise EnvelopeParseError("reviewer", f"unknown verdict {raw!r}")
    reasoning = extract_tag(text, "reasoning") or ""
    return ReviewEnvelope(verdict=Verdict(raw), reasoning=reasoning.strip())


def parse_test_report(text: str) -> VerificationReport:
    raw = require_tag(text, "verdict", "tester").upper()
    if raw not in (Verdict.PASS, Verdict.FAIL):
        raise EnvelopeParseError("tester", f"unknown verdict {raw!r}")
    issues_block = extract_tag(text, "issues") or ""
    issues = parse_issue_list(issues_block)
    if raw == Verdict.FAIL and not issues:
        raise EnvelopeParseError("tester", "FAIL verdict without an <issues> list")
    return VerificationReport(verdict=Verdict(raw), issues=issues)


def extract_json_block(text: str, tag: str | None = None) -> dict[str, Any] | None:
    """Extract a JSON object from a tagged section or a fenced block."""
    candidates: list[str] = []
    if tag:
        tagged = extract_tag(text, tag)
        if tagged:
            candidates.append(tagged)

    for pattern in (r"```json:structured_output\s*(.*?)\s*```", r"```json\s*(.*?)\s*```"):
        match = re.search(pattern, text or "", re.DOTALL)
        if match:
            candidates.append(match.group(1))
    candidates.append((text or "").strip())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None
