"""Tools the agent roles may call against the job's sandbox."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from .errors import SandboxError, SandboxTimeoutError, sanitize_error
from .sandbox import SandboxHandle

logger = logging.getLogger(__name__)

# Grace on top of the provider-side timeout before the local wait gives up.
_LOCAL_TIMEOUT_GRACE = 5.0
_PARTIAL_OUTPUT_LIMIT = 4000


@dataclass
class CommandResult:
    success: bool
    stdout: str
    stderr: str
    exit_code: int | None
    error: str | None = None
    timed_out: bool = False

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WriteFilesResult:
    written_paths: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)
    total_file_count: int = 0

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FileReadResult:
    path: str
    content: str | None = None
    error: str | None = None

    def as_text(self) -> str:
        if self.content is not None:
            return self.content
        return f"[error reading {self.path}: {self.error}]"

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.as_text(), "error": self.error}


def sanitize_path(path: str) -> str:
    """Normalize a workspace-relative path, refusing traversal."""
    cleaned = (path or "").strip().replace("\\", "/")
    if not cleaned:
        raise ValueError("Empty file path")
    if any(part == ".." for part in cleaned.split("/")):
        raise ValueError(f"Path traversal is not allowed: {path}")
    cleaned = cleaned.lstrip("/")
    if cleaned.startswith("home/user/"):
        cleaned = cleaned[len("home/user/") :]
    if not cleaned:
        raise ValueError(f"Invalid file path: {path}")
    return cleaned


def _truncate(text: str) -> str:
    if len(text) <= _PARTIAL_OUTPUT_LIMIT:
        return text
    return "..." + text[-_PARTIAL_OUTPUT_LIMIT:]


def _timeout_argument(value: Any) -> float | None:
    """A positive timeout in seconds, or None to fall back to the surface default."""
    if value is None or isinstance(value, bool):
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        return None
    return timeout if timeout > 0 else None


TOOL_SCHEMAS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "terminal",
            "description": "Run a shell command in the sandbox.",
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {"type": "string"},
                    "timeout": {"type": "number", "description": "Seconds before the command is abandoned"},
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "createOrUpdateFiles",
            "description": "Create or overwrite files in the sandbox.",
            "parameters": {
                "type": "object",
                "properties": {
                    "files": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
                            "required": ["path", "content"],
                        },
                    }
                },
                "required": ["files"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "readFiles",
            "description": "Read files from the sandbox.",
            "parameters": {
                "type": "object",
                "properties": {"files": {"type": "array", "items": {"type": "string"}}},
                "required": ["files"],
            },
        },
    },
]


class ToolSurface:
    """Run-command, write-files and read-files bound to a single sandbox handle."""

    def __init__(
        self,
        handle: SandboxHandle,
        *,
        files: dict[str, str] | None = None,
        default_timeout: float = 120.0,
    ) -> None:
        self.handle = handle
        self.default_timeout = default_timeout
        self._files: dict[str, str] = dict(files or {})

    @property
    def files(self) -> dict[str, str]:
        return dict(self._files)

    async def run_command(self, command: str, timeout: float | None = None) -> CommandResult:
        effective_timeout = float(timeout or self.default_timeout)
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []

        def _partial(message: str, *, timed_out: bool = False) -> CommandResult:
            stdout = "".join(stdout_chunks)
            stderr = "".join(stderr_chunks)
            detail = message
            if stdout:
                detail += f"\nstdout: {_truncate(stdout)}"
            if stderr:
                detail += f"\nstderr: {_truncate(stderr)}"
            return CommandResult(
                success=False,
                stdout=stdout,
                stderr=stderr,
                exit_code=None,
                error=detail,
                timed_out=timed_out,
            )

        try:
            output = await asyncio.wait_for(
                self.handle.connection.run(
                    command,
                    timeout=effective_timeout,
                    on_stdout=stdout_chunks.append,
                    on_stderr=stderr_chunks.append,
                ),
                timeout=effective_timeout + _LOCAL_TIMEOUT_GRACE,
            )
        except (asyncio.TimeoutError, SandboxTimeoutError):
            logger.warning("Command timed out after %.0fs in sandbox %s", effective_timeout, self.handle.sandbox_id)
            return _partial(f"Command timed out after {effective_timeout:.0f}s", timed_out=True)
        except SandboxError as exc:
            logger.warning("Command failed in sandbox %s: %s", self.handle.sandbox_id, exc)
            return _partial(f"Command failed: {sanitize_error(exc)}")

        return CommandResult(
            success=output.exit_code == 0,
            stdout=output.stdout or "".join(stdout_chunks),
            stderr=output.stderr or "".join(stderr_chunks),
            exit_code=output.exit_code,
        )

    async def write_files(self, files: list[dict[str, Any]]) -> WriteFilesResult:
        """Write each file independently; failures are reported per path."""
        result = WriteFilesResult()
        for item in files:
            if not isinstance(item, dict):
                result.failed.append({"path": "", "error": f"Expected a file object, got {type(item).__name__}"})
                continue
            raw_path = str(item.get("path", ""))
            try:
                path = sanitize_path(raw_path)
                content = item.get("content")
                if not isinstance(content, str):
                    raise ValueError("File content must be a string")
                await self.handle.connection.write(path, content)
            except (ValueError, SandboxError) as exc:
                result.failed.append({"path": raw_path, "error": sanitize_error(exc)})
                continue
            self._files[path] = content
            result.written_paths.append(path)

        result.total_file_count = len(self._files)
        if result.failed:
            logger.warning("Wrote %d files, %d failed", len(result.written_paths), len(result.failed))
        return result

    async def read_files(self, paths: list[str]) -> list[FileReadResult]:
        results: list[FileReadResult] = []
        for raw_path in paths:
            try:
                path = sanitize_path(raw_path)
                content = await self.handle.connection.read(path)
            except (ValueError, SandboxError) as exc:
                results.append(FileReadResult(path=raw_path, error=sanitize_error(exc)))
                continue
            results.append(FileReadResult(path=path, content=content))
        return results

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Execute a model-issued tool call and return a JSON-able result.

        Malformed arguments come back as an ``{"error": ...}`` result so the model can
        correct the call instead of failing the step.
        """
        if not isinstance(arguments, dict):
            return {"error": f"{name} arguments must be an object"}
        match name:
            case "terminal":
                command = arguments.get("command")
                if not isinstance(command, str) or not command.strip():
                    return {"error": "terminal expects a non-empty command string"}
                result = await self.run_command(command, _timeout_argument(arguments.get("timeout")))
                return result.to_dict()
            case "createOrUpdateFiles":
                files = arguments.get("files")
                if not isinstance(files, list):
                    return {"error": "createOrUpdateFiles expects files to be a list of {path, content} objects"}
                written = await self.write_files(files)
                return written.to_dict()
            case "readFiles":
                paths = arguments.get("files")
                if not isinstance(paths, list):
                    return {"error": "readFiles expects files to be a list of paths"}
                read = await self.read_files([str(p) for p in paths])
                return {"files": [r.to_dict() for r in read]}
            case _:
                return {"error": f"Unknown tool: {name}"}
