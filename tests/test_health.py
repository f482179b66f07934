import pytest

from codeforge.circuit_breaker import CircuitBreaker
from codeforge.events import EngineEvent, EventEmitter, EventType
from codeforge.health import health_check
from codeforge.models import TaskType
from codeforge.rate_limit import RateLimiter


@pytest.mark.asyncio
async def test_healthy_report(rate_limiter: RateLimiter) -> None:
    await rate_limiter.record("sandbox_create")

    report = await health_check(rate_limiter, limits={"sandbox_create": 10, "ai_completion": 100})

    assert report["healthy"] is True
    assert report["alerts"] == []
    assert report["usage"]["sandbox_create"] == {"count": 1, "limit": 10, "ratio": 0.1}
    assert report["usage"]["ai_completion"]["count"] == 0


@pytest.mark.asyncio
async def test_alerts_near_sandbox_quota(
    rate_limiter: RateLimiter, events: EventEmitter, collected: list[EngineEvent]
) -> None:
    for _ in range(10):
        await rate_limiter.record("sandbox_create")

    report = await health_check(rate_limiter, limits={"sandbox_create": 10}, events=events)

    assert report["healthy"] is False
    assert "sandbox_create usage at 10/10" in report["alerts"][0]
    assert [e.type for e in collected] == [EventType.HEALTH_ALERT]


@pytest.mark.asyncio
async def test_alerts_when_breaker_open(rate_limiter: RateLimiter) -> None:
    breaker = CircuitBreaker("sandbox_create", failure_threshold=1)
    breaker.record_failure()

    report = await health_check(rate_limiter, limits={"sandbox_create": 10}, breaker=breaker)

    assert report["healthy"] is False
    assert report["circuit_breaker"]["state"] == "OPEN"
    assert report["alerts"] == ["Circuit breaker sandbox_create is open"]


@pytest.mark.asyncio
async def test_engine_health_includes_task_counts(engine) -> None:
    await engine.dispatcher.enqueue(TaskType.CODEGEN, {"value": "todo"})

    report = await engine.health()

    assert report["tasks"] == {"PENDING": 1}
    assert report["circuit_breaker"]["state"] == "CLOSED"
