"""
Outgoing signals for job status, decisions and follow-on requests.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_DEFERRED = "workflow.deferred"

    STEP_COMPLETED = "step.completed"
    STEP_RETRYING = "step.retrying"

    JOB_STATUS_CHANGED = "job.status_changed"
    JOB_LOG = "job.log"

    DECISION_RECORDED = "decision.recorded"

    PR_CREATION_REQUESTED = "pr.creation_requested"

    SANDBOX_CREATED = "sandbox.created"
    SANDBOX_TRANSFERRED = "sandbox.transferred"
    SANDBOX_RELEASED = "sandbox.released"

    HEALTH_ALERT = "health.alert"


@dataclass
class EngineEvent:
    """Standardized event emitted by the engine."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.WORKFLOW_STARTED
    job_id: Optional[str] = None
    step: Optional[str] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "job_id": self.job_id,
            "step": self.step,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EngineEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: EngineEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error for %s: %s", event.type.value, exc)

    async def emit_type(
        self,
        event_type: EventType,
        *,
        job_id: str | None = None,
        step: str | None = None,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> EngineEvent:
        event = EngineEvent(
            type=event_type, job_id=job_id, step=step, message=message, data=data or {}
        )
        await self.emit(event)
        return event


class RedisEventPublisher:
    """Handler that publishes job events to Redis Pub/Sub."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def __call__(self, event: EngineEvent) -> None:
        if not event.job_id:
            return
        channel = f"channel:job:{event.job_id}"
        await self._redis.publish(channel, json.dumps(event.to_dict()))
