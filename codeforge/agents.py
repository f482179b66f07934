"""Runs one agent role against the completion service, executing its tool calls."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .completion import Completion, CompletionService
from .errors import EnvelopeParseError
from .role_config import Role, resolve_role
from .tools import TOOL_SCHEMAS, ToolSurface

logger = logging.getLogger(__name__)

_TOOL_RESULT_LIMIT = 8000


@dataclass
class AgentResult:
    role: Role
    model: str
    text: str
    tool_calls: int = 0
    duration_ms: int = 0
    usage: dict[str, Any] = field(default_factory=dict)


def _assistant_message(completion: Completion) -> dict[str, Any]:
    if completion.message:
        return {"role": "assistant", **completion.message}
    return {
        "role": "assistant",
        "content": completion.text,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in completion.tool_calls
        ],
    }


class AgentRunner:
    """Drives a role's conversation until it produces a final text answer."""

    def __init__(
        self,
        client: CompletionService,
        *,
        default_model: str,
        max_tool_iterations: int = 25,
    ) -> None:
        self.client = client
        self.default_model = default_model
        self.max_tool_iterations = max_tool_iterations

    async def run(
        self,
        role: Role,
        context: str,
        *,
        tools: ToolSurface | None = None,
        model_override: str | None = None,
    ) -> AgentResult:
        config = resolve_role(role, default_model=self.default_model, model_override=model_override)
        model = config["model"] or self.default_model
        use_tools = tools is not None and config.get("uses_tools", False)

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": config["instructions"]},
            {"role": "user", "content": context},
        ]
        started = time.monotonic()
        tool_call_count = 0
        usage: dict[str, Any] = {}

        for _ in range(self.max_tool_iterations + 1):
            completion = await self.client.complete(
                model=model,
                messages=messages,
                tools=TOOL_SCHEMAS if use_tools else None,
                temperature=config.get("temperature"),
            )
            for key, value in completion.usage.items():
                if isinstance(value, int):
                    usage[key] = usage.get(key, 0) + value

            if not completion.tool_calls or not use_tools:
                duration_ms = int((time.monotonic() - started) * 1000)
                logger.info("%s finished in %dms with %d tool calls", role.value, duration_ms, tool_call_count)
                return AgentResult(
                    role=role,
                    model=completion.model or model,
                    text=completion.text,
                    tool_calls=tool_call_count,
                    duration_ms=duration_ms,
                    usage=usage,
                )

            messages.append(_assistant_message(completion))
            for call in completion.tool_calls:
                tool_call_count += 1
                logger.debug("%s calling %s", role.value, call.name)
                result = await tools.dispatch(call.name, call.arguments)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result)[:_TOOL_RESULT_LIMIT],
                    }
                )

        raise EnvelopeParseError(
            role.value, f"no final answer after {self.max_tool_iterations} tool iterations"
        )
