"""
In-process delivery of workflow entry events.

Each event runs as its own asyncio task; ``drain()`` waits for everything
scheduled so far, including events sent by handlers while draining.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..errors import CodeforgeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowEvent:
    name: str
    data: dict[str, Any] = field(default_factory=dict)


WorkflowHandler = Callable[[WorkflowEvent], Awaitable[Any]]


class UnroutableEventError(CodeforgeError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"No workflow registered for event {name!r}")


class EventRouter:
    def __init__(self) -> None:
        self._handlers: dict[str, WorkflowHandler] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def register(self, name: str, handler: WorkflowHandler) -> None:
        self._handlers[name] = handler

    def send(self, event: WorkflowEvent) -> asyncio.Task[Any]:
        handler = self._handlers.get(event.name)
        if handler is None:
            raise UnroutableEventError(event.name)
        task = asyncio.create_task(self._run(handler, event), name=f"workflow:{event.name}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, handler: WorkflowHandler, event: WorkflowEvent) -> Any:
        try:
            return await handler(event)
        except Exception:
            logger.exception("Workflow %s failed for %s", event.name, event.data)
            raise

    async def drain(self) -> None:
        """Wait until no workflow task is pending."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
