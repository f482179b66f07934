"""Chat-completion gateway client, its response parsing and quota metering."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from .errors import CompletionAPIError, QuotaExceededError
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class Completion:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    # Assistant message as sent back on the next turn.
    message: dict[str, Any] = field(default_factory=dict)


class CompletionService(Protocol):
    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> Completion: ...


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CompletionAPIError(f"Tool call arguments are not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise CompletionAPIError("Tool call arguments must be a JSON object")
    return parsed


def parse_completion(payload: dict[str, Any]) -> Completion:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise CompletionAPIError(f"Unexpected completion response: {str(payload)[:200]}")
    message = choices[0].get("message") or {}
    tool_calls = [
        ToolCall(
            id=str(call.get("id", "")),
            name=str((call.get("function") or {}).get("name", "")),
            arguments=_parse_arguments((call.get("function") or {}).get("arguments")),
        )
        for call in message.get("tool_calls") or []
    ]
    return Completion(
        text=message.get("content") or "",
        tool_calls=tool_calls,
        model=payload.get("model"),
        usage=payload.get("usage") if isinstance(payload.get("usage"), dict) else {},
        message=message,
    )


class CompletionClient:
    """Async client for an OpenAI-compatible chat completions gateway."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, body: Any | None = None) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=body)
            resp.raise_for_status()
            return resp
        except httpx.RequestError as e:
            raise CompletionAPIError(f"Completion request failed ({method} {path}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            text = e.response.text[:500]
            raise CompletionAPIError(f"Completion API error {status} ({method} {path}): {text}") from e

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> Completion:
        body: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            body["tools"] = tools
        if temperature is not None:
            body["temperature"] = temperature

        resp = await self._request("POST", "/chat/completions", body=body)
        try:
            payload = resp.json()
        except ValueError as e:
            raise CompletionAPIError(f"Completion response is not JSON: {e}") from e
        completion = parse_completion(payload)
        logger.debug(
            "Completion from %s: %d chars, %d tool calls",
            completion.model or model,
            len(completion.text),
            len(completion.tool_calls),
        )
        return completion


class MeteredCompletionService:
    """Admission-checks each completion against the ``ai_completion`` quota."""

    operation = "ai_completion"

    def __init__(self, client: CompletionService, rate_limiter: RateLimiter, *, limit: int) -> None:
        self._client = client
        self._rate_limiter = rate_limiter
        self._limit = limit

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> Completion:
        status = await self._rate_limiter.check(self.operation, self._limit)
        if status.exceeded:
            raise QuotaExceededError(self.operation, status.reset_at, count=status.count, limit=status.limit)
        completion = await self._client.complete(
            model=model, messages=messages, tools=tools, temperature=temperature
        )
        await self._rate_limiter.record(self.operation)
        return completion
