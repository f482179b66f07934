"""Sliding-window admission control for sandbox provider calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import RateLimitRecord

logger = logging.getLogger(__name__)

STORE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, RedisError, OSError)


@dataclass(frozen=True)
class RateLimitStatus:
    operation: str
    count: int
    limit: int
    exceeded: bool
    remaining: int
    reset_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "count": self.count,
            "limit": self.limit,
            "exceeded": self.exceeded,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


class RateLimitStore(Protocol):
    """Append/delete-only event storage backing the limiter."""

    async def add(self, operation: str, timestamp: float) -> None: ...

    async def window(self, operation: str, after: float, until: float) -> tuple[int, float | None]:
        """Return (count, oldest timestamp) for events with after < ts <= until."""
        ...

    async def prune(self, operation: str | None, before: float, batch: int) -> int:
        """Delete at most ``batch`` events with ts <= before; all operations when None."""
        ...

    async def counts(self, after: float, until: float) -> dict[str, int]: ...


class SqlRateLimitStore:
    """Rate-limit events in the ``rate_limit_records`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, operation: str, timestamp: float) -> None:
        async with self._session_factory() as session:
            session.add(RateLimitRecord(operation=operation, timestamp=timestamp))
            await session.commit()

    async def window(self, operation: str, after: float, until: float) -> tuple[int, float | None]:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(func.count(RateLimitRecord.id), func.min(RateLimitRecord.timestamp)).where(
                        RateLimitRecord.operation == operation,
                        RateLimitRecord.timestamp > after,
                        RateLimitRecord.timestamp <= until,
                    )
                )
            ).one()
        return int(row[0] or 0), row[1]

    async def prune(self, operation: str | None, before: float, batch: int) -> int:
        async with self._session_factory() as session:
            query = select(RateLimitRecord.id).where(RateLimitRecord.timestamp <= before)
            if operation is not None:
                query = query.where(RateLimitRecord.operation == operation)
            ids = list((await session.execute(query.order_by(RateLimitRecord.timestamp).limit(batch))).scalars())
            if not ids:
                return 0
            await session.execute(delete(RateLimitRecord).where(RateLimitRecord.id.in_(ids)))
            await session.commit()
        return len(ids)

    async def counts(self, after: float, until: float) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(RateLimitRecord.operation, func.count(RateLimitRecord.id))
                    .where(RateLimitRecord.timestamp > after, RateLimitRecord.timestamp <= until)
                    .group_by(RateLimitRecord.operation)
                )
            ).all()
        return {operation: int(count) for operation, count in rows}


class RedisRateLimitStore:
    """Rate-limit events in one Redis sorted set per operation, scored by timestamp."""

    def __init__(self, redis: Redis, *, prefix: str = "ratelimit", ttl_seconds: int = 3600) -> None:
        self._redis = redis
        self._prefix = prefix
        self._ttl = ttl_seconds

    def _key(self, operation: str) -> str:
        return f"{self._prefix}:{operation}"

    async def add(self, operation: str, timestamp: float) -> None:
        key = self._key(operation)
        member = f"{timestamp:.6f}:{uuid4().hex}"
        await self._redis.zadd(key, {member: timestamp})
        await self._redis.expire(key, self._ttl)

    async def window(self, operation: str, after: float, until: float) -> tuple[int, float | None]:
        key = self._key(operation)
        count = await self._redis.zcount(key, f"({after}", until)
        if not count:
            return 0, None
        oldest = await self._redis.zrangebyscore(key, f"({after}", until, start=0, num=1, withscores=True)
        return int(count), float(oldest[0][1]) if oldest else None

    async def _operations(self) -> list[str]:
        prefix = f"{self._prefix}:"
        keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
        return [(key.decode() if isinstance(key, bytes) else key)[len(prefix) :] for key in keys]

    async def prune(self, operation: str | None, before: float, batch: int) -> int:
        operations: Iterable[str] = [operation] if operation is not None else await self._operations()
        removed = 0
        for op in operations:
            remaining = batch - removed
            if remaining <= 0:
                break
            key = self._key(op)
            expired = await self._redis.zcount(key, "-inf", before)
            take = min(int(expired), remaining)
            if take:
                removed += int(await self._redis.zremrangebyrank(key, 0, take - 1))
        return removed

    async def counts(self, after: float, until: float) -> dict[str, int]:
        result: dict[str, int] = {}
        for op in await self._operations():
            count = await self._redis.zcount(self._key(op), f"({after}", until)
            if count:
                result[op] = int(count)
        return result


class RateLimiter:
    """Tracks provider calls per operation inside a trailing time window."""

    def __init__(
        self,
        store: RateLimitStore,
        *,
        window_seconds: float = 3600,
        prune_batch: int = 100,
        fail_closed_operations: Iterable[str] = ("sandbox_create", "sandbox_connect"),
        warning_ratio: float = 0.8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.window_seconds = float(window_seconds)
        self.prune_batch = prune_batch
        self.fail_closed_operations = frozenset(fail_closed_operations)
        self.warning_ratio = warning_ratio
        self._clock = clock

    def _to_datetime(self, timestamp: float) -> datetime:
        return datetime.fromtimestamp(timestamp, UTC)

    async def record(self, operation: str) -> None:
        """Append a usage event and prune a bounded batch of expired ones."""
        now = self._clock()
        try:
            await self.store.add(operation, now)
            pruned = await self.store.prune(operation, now - self.window_seconds, self.prune_batch)
        except STORE_ERRORS as exc:
            # Usage is recorded after the provider call succeeded; a lost record only under-counts.
            logger.warning("Failed to record rate limit usage for %s: %s", operation, exc)
            return
        if pruned:
            logger.debug("Pruned %d expired %s records", pruned, operation)

    async def check(self, operation: str, max_per_window: int) -> RateLimitStatus:
        """Report usage for ``operation``. Never blocks; callers decide how to back off."""
        now = self._clock()
        try:
            count, oldest = await self.store.window(operation, now - self.window_seconds, now)
        except STORE_ERRORS as exc:
            if operation in self.fail_closed_operations:
                logger.error("Rate limit store unavailable, refusing %s: %s", operation, exc)
                return RateLimitStatus(
                    operation=operation,
                    count=max_per_window,
                    limit=max_per_window,
                    exceeded=True,
                    remaining=0,
                    reset_at=self._to_datetime(now + self.window_seconds),
                )
            logger.warning("Rate limit store unavailable, allowing %s: %s", operation, exc)
            return RateLimitStatus(
                operation=operation,
                count=0,
                limit=max_per_window,
                exceeded=False,
                remaining=max_per_window,
                reset_at=None,
            )

        exceeded = count >= max_per_window
        if not exceeded and max_per_window and count >= max_per_window * self.warning_ratio:
            logger.warning("Approaching %s rate limit: %d/%d", operation, count, max_per_window)

        return RateLimitStatus(
            operation=operation,
            count=count,
            limit=max_per_window,
            exceeded=exceeded,
            remaining=max(0, max_per_window - count),
            reset_at=self._to_datetime(oldest + self.window_seconds) if oldest is not None else None,
        )

    async def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        by_operation = await self.store.counts(now - self.window_seconds, now)
        return {
            "window_seconds": self.window_seconds,
            "total": sum(by_operation.values()),
            "by_operation": by_operation,
        }

    async def cleanup(self) -> int:
        """Delete every expired record, one bounded batch at a time."""
        cutoff = self._clock() - self.window_seconds
        total = 0
        while True:
            deleted = await self.store.prune(None, cutoff, self.prune_batch)
            total += deleted
            if deleted < self.prune_batch:
                break
        if total:
            logger.info("Rate limit cleanup removed %d expired records", total)
        return total
