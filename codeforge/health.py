"""Periodic health check over quota usage, the sandbox breaker and the task queue."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .circuit_breaker import CircuitBreaker, CircuitState
from .events import EventEmitter, EventType
from .queue import TaskDispatcher
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

WATCHED_OPERATION = "sandbox_create"


async def health_check(
    rate_limiter: RateLimiter,
    *,
    limits: Mapping[str, int],
    breaker: CircuitBreaker | None = None,
    dispatcher: TaskDispatcher | None = None,
    events: EventEmitter | None = None,
    alert_ratio: float = 0.9,
) -> dict[str, Any]:
    stats = await rate_limiter.get_stats()
    usage: dict[str, dict[str, Any]] = {}
    for operation, limit in limits.items():
        count = stats["by_operation"].get(operation, 0)
        usage[operation] = {
            "count": count,
            "limit": limit,
            "ratio": round(count / limit, 3) if limit else 0.0,
        }

    alerts: list[str] = []
    watched = usage.get(WATCHED_OPERATION)
    if watched and watched["limit"] and watched["count"] > watched["limit"] * alert_ratio:
        alerts.append(
            f"{WATCHED_OPERATION} usage at {watched['count']}/{watched['limit']} "
            f"(over {int(alert_ratio * 100)}%)"
        )
    if breaker is not None and breaker.state == CircuitState.OPEN:
        alerts.append(f"Circuit breaker {breaker.name} is open")

    report: dict[str, Any] = {
        "healthy": not alerts,
        "rate_limits": stats,
        "usage": usage,
        "circuit_breaker": breaker.snapshot() if breaker is not None else None,
        "tasks": await dispatcher.counts() if dispatcher is not None else None,
        "alerts": alerts,
    }

    for alert in alerts:
        logger.warning("Health alert: %s", alert)
    if alerts and events is not None:
        await events.emit_type(EventType.HEALTH_ALERT, message="; ".join(alerts), data={"alerts": alerts})
    return report
