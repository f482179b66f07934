import logging
from datetime import UTC, datetime

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from sqlalchemy.exc import OperationalError

from codeforge.rate_limit import RateLimiter, RateLimitStore, RedisRateLimitStore, SqlRateLimitStore
from tests.conftest import FakeClock


class UnavailableStore:
    async def add(self, operation: str, timestamp: float) -> None:
        raise OSError("connection refused")

    async def window(self, operation: str, after: float, until: float) -> tuple[int, float | None]:
        raise OperationalError("SELECT", {}, Exception("database is down"))

    async def prune(self, operation: str | None, before: float, batch: int) -> int:
        raise OSError("connection refused")

    async def counts(self, after: float, until: float) -> dict[str, int]:
        raise OSError("connection refused")


@pytest.fixture(params=["sql", "redis"])
def store(request: pytest.FixtureRequest, session_factory) -> RateLimitStore:
    if request.param == "redis":
        return RedisRateLimitStore(FakeRedis(server=FakeServer(), decode_responses=True))
    return SqlRateLimitStore(session_factory)


@pytest.fixture
def limiter(store: RateLimitStore, clock: FakeClock) -> RateLimiter:
    return RateLimiter(store, window_seconds=3600, prune_batch=100, clock=clock)


@pytest.mark.asyncio
async def test_quota_exceeded_after_limit_reached(limiter: RateLimiter, clock: FakeClock) -> None:
    first = clock.now
    for _ in range(5):
        await limiter.record("sandbox_create")
        clock.advance(1)

    status = await limiter.check("sandbox_create", 5)
    assert status.exceeded is True
    assert status.remaining == 0
    assert status.count == 5
    assert status.reset_at == datetime.fromtimestamp(first + 3600, UTC)


@pytest.mark.asyncio
async def test_under_limit_reports_remaining(limiter: RateLimiter) -> None:
    for _ in range(3):
        await limiter.record("sandbox_create")

    status = await limiter.check("sandbox_create", 5)
    assert status.exceeded is False
    assert status.remaining == 2


@pytest.mark.asyncio
async def test_empty_window_has_no_reset_time(limiter: RateLimiter) -> None:
    status = await limiter.check("sandbox_connect", 10)
    assert status.count == 0
    assert status.reset_at is None
    assert status.remaining == 10


@pytest.mark.asyncio
async def test_window_is_open_at_start_and_closed_at_end(limiter: RateLimiter, clock: FakeClock) -> None:
    await limiter.record("sandbox_create")

    clock.advance(3599.5)
    assert (await limiter.check("sandbox_create", 10)).count == 1

    clock.advance(0.5)
    # The event now sits exactly at now - window, which is outside the window.
    assert (await limiter.check("sandbox_create", 10)).count == 0


@pytest.mark.asyncio
async def test_each_record_adds_exactly_one(limiter: RateLimiter, clock: FakeClock) -> None:
    for expected in range(1, 6):
        await limiter.record("ai_completion")
        clock.advance(0.25)
        assert (await limiter.check("ai_completion", 100)).count == expected


@pytest.mark.asyncio
async def test_operations_are_counted_separately(limiter: RateLimiter) -> None:
    await limiter.record("sandbox_create")
    await limiter.record("sandbox_connect")
    await limiter.record("sandbox_connect")

    stats = await limiter.get_stats()
    assert stats["total"] == 3
    assert stats["by_operation"] == {"sandbox_create": 1, "sandbox_connect": 2}


@pytest.mark.asyncio
async def test_check_fails_closed_for_sandbox_operations(clock: FakeClock) -> None:
    limiter = RateLimiter(UnavailableStore(), clock=clock)

    status = await limiter.check("sandbox_create", 100)
    assert status.exceeded is True
    assert status.remaining == 0
    assert status.reset_at is not None


@pytest.mark.asyncio
async def test_check_fails_open_for_other_operations(clock: FakeClock) -> None:
    limiter = RateLimiter(UnavailableStore(), clock=clock)

    status = await limiter.check("ai_completion", 100)
    assert status.exceeded is False
    assert status.remaining == 100


@pytest.mark.asyncio
async def test_record_failure_is_logged_not_raised(clock: FakeClock, caplog: pytest.LogCaptureFixture) -> None:
    limiter = RateLimiter(UnavailableStore(), clock=clock)

    with caplog.at_level(logging.WARNING, logger="codeforge.rate_limit"):
        await limiter.record("sandbox_create")
    assert "Failed to record rate limit usage" in caplog.text


@pytest.mark.asyncio
async def test_cleanup_removes_expired_records_in_batches(store: RateLimitStore, clock: FakeClock) -> None:
    limiter = RateLimiter(store, window_seconds=60, prune_batch=2, clock=clock)
    for offset in range(5):
        await store.add("sandbox_create", clock.now - 120 - offset)
    await store.add("sandbox_create", clock.now - 1)

    assert await limiter.cleanup() == 5
    stats = await limiter.get_stats()
    assert stats["by_operation"] == {"sandbox_create": 1}


@pytest.mark.asyncio
async def test_record_prunes_a_bounded_batch(store: RateLimitStore, clock: FakeClock) -> None:
    limiter = RateLimiter(store, window_seconds=60, prune_batch=2, clock=clock)
    for offset in range(5):
        await limiter.store.add("sandbox_create", clock.now - 120 - offset)

    await limiter.record("sandbox_create")

    # Two expired rows go with the record; the rest wait for the next prune.
    assert await limiter.store.prune("sandbox_create", clock.now - 60, 100) == 3


@pytest.mark.asyncio
async def test_warns_when_approaching_limit(limiter: RateLimiter, caplog: pytest.LogCaptureFixture) -> None:
    for _ in range(8):
        await limiter.record("sandbox_create")

    with caplog.at_level(logging.WARNING, logger="codeforge.rate_limit"):
        status = await limiter.check("sandbox_create", 10)
    assert status.exceeded is False
    assert "Approaching sandbox_create rate limit" in caplog.text


@pytest.mark.asyncio
async def test_redis_store_keeps_a_sorted_set_per_operation() -> None:
    redis = FakeRedis(server=FakeServer(), decode_responses=True)
    store = RedisRateLimitStore(redis, prefix="quota", ttl_seconds=600)

    await store.add("sandbox_create", 100.0)
    await store.add("sandbox_create", 100.0)
    await store.add("sandbox_connect", 150.0)

    assert await redis.zcard("quota:sandbox_create") == 2
    assert 0 < await redis.ttl("quota:sandbox_create") <= 600
    assert await store.window("sandbox_create", 99.0, 100.0) == (2, 100.0)
    assert await store.window("sandbox_create", 100.0, 200.0) == (0, None)
    assert await store.counts(0.0, 200.0) == {"sandbox_create": 2, "sandbox_connect": 1}
    assert await store.prune(None, 120.0, 10) == 2
    assert await store.counts(0.0, 200.0) == {"sandbox_connect": 1}
