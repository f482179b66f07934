"""
Codeforge Agent Orchestration Engine

Runs a multi-agent code generation pipeline (plan, implement, review, test, fix)
inside rate-limited remote sandboxes, driven by a PostgreSQL-backed task queue.
"""

__version__ = "0.1.0"

from codeforge.config import Settings
from codeforge.models import Job, JobStatus, Task, TaskStatus, TaskType, Verdict
from codeforge.pipeline import CodegenPipeline, PipelineEntry, PipelineOutcome
from codeforge.rate_limit import RateLimiter, RateLimitStatus
from codeforge.role_config import Role, RoleConfig
from codeforge.sandbox import SandboxHandle, SandboxLifecycleManager
from codeforge.tools import CommandResult, ToolSurface
from codeforge.triage import Complexity, IssueTriager, TriageResult

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Models
    "Job",
    "JobStatus",
    "Task",
    "TaskStatus",
    "TaskType",
    "Verdict",
    # Pipeline
    "CodegenPipeline",
    "PipelineEntry",
    "PipelineOutcome",
    # Rate limiting
    "RateLimiter",
    "RateLimitStatus",
    # Roles
    "Role",
    "RoleConfig",
    # Sandboxes
    "SandboxHandle",
    "SandboxLifecycleManager",
    "CommandResult",
    "ToolSurface",
    # Triage
    "Complexity",
    "IssueTriager",
    "TriageResult",
]
