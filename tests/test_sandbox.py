import pytest

from codeforge import db
from codeforge.errors import CodeforgeError, QuotaExceededError, SandboxExpiredError, SandboxProviderError
from codeforge.events import EventType
from codeforge.models import SandboxState
from codeforge.rate_limit import RateLimiter
from codeforge.sandbox import SandboxLifecycleManager
from tests.conftest import FakeClock, FakeProvider, make_job


@pytest.fixture
def cache_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(session_factory, provider, rate_limiter, events, cache_clock) -> SandboxLifecycleManager:
    return SandboxLifecycleManager(
        session_factory,
        provider,
        rate_limiter,
        limits={"sandbox_create": 3, "sandbox_connect": 10},
        events=events,
        cache_ttl=300,
        clock=cache_clock,
    )


async def _state(session_factory, sandbox_id: str) -> str:
    async with session_factory() as session:
        record = await db.get_sandbox_session(session, sandbox_id)
        return record.state


@pytest.mark.asyncio
async def test_acquire_creates_once_and_records_usage(
    manager: SandboxLifecycleManager, provider: FakeProvider, rate_limiter: RateLimiter, session_factory
) -> None:
    job_id = await make_job(session_factory)

    first = await manager.acquire(job_id)
    second = await manager.acquire(job_id)

    assert first.sandbox_id == second.sandbox_id == "sbx-1"
    assert provider.created == ["sbx-1"]
    assert provider.connects == []
    assert (await rate_limiter.check("sandbox_create", 3)).count == 1
    async with session_factory() as session:
        job = await db.get_job(session, job_id)
        assert job.sandbox_id == "sbx-1"


@pytest.mark.asyncio
async def test_acquire_reconnects_after_cache_expiry(
    manager: SandboxLifecycleManager,
    provider: FakeProvider,
    rate_limiter: RateLimiter,
    session_factory,
    cache_clock: FakeClock,
) -> None:
    job_id = await make_job(session_factory)
    await manager.acquire(job_id)

    cache_clock.advance(301)
    handle = await manager.acquire(job_id)

    assert handle.sandbox_id == "sbx-1"
    assert handle.state == SandboxState.CONNECTED
    assert provider.connects == ["sbx-1"]
    assert (await rate_limiter.check("sandbox_connect", 10)).count == 1
    assert await _state(session_factory, "sbx-1") == SandboxState.CONNECTED


@pytest.mark.asyncio
async def test_expired_sandbox_is_replaced(
    manager: SandboxLifecycleManager, provider: FakeProvider, session_factory, cache_clock: FakeClock
) -> None:
    job_id = await make_job(session_factory)
    await manager.acquire(job_id)
    provider.expire("sbx-1")
    cache_clock.advance(301)

    handle = await manager.acquire(job_id)

    assert handle.sandbox_id == "sbx-2"
    assert await _state(session_factory, "sbx-1") == SandboxState.EXPIRED
    async with session_factory() as session:
        assert (await db.get_job(session, job_id)).sandbox_id == "sbx-2"


@pytest.mark.asyncio
async def test_create_refused_when_quota_exhausted(
    manager: SandboxLifecycleManager, provider: FakeProvider, rate_limiter: RateLimiter, session_factory
) -> None:
    for _ in range(3):
        await rate_limiter.record("sandbox_create")
    job_id = await make_job(session_factory)

    with pytest.raises(QuotaExceededError) as exc_info:
        await manager.acquire(job_id)

    assert exc_info.value.operation == "sandbox_create"
    assert exc_info.value.reset_at is not None
    assert provider.created == []


@pytest.mark.asyncio
async def test_failed_create_is_not_counted(
    manager: SandboxLifecycleManager, provider: FakeProvider, rate_limiter: RateLimiter, session_factory
) -> None:
    provider.create_error = SandboxProviderError("capacity")
    job_id = await make_job(session_factory)

    with pytest.raises(SandboxProviderError):
        await manager.acquire(job_id)

    assert (await rate_limiter.check("sandbox_create", 3)).count == 0


@pytest.mark.asyncio
async def test_transfer_rebinds_without_recreating(
    manager: SandboxLifecycleManager, provider: FakeProvider, session_factory, collected
) -> None:
    old_job = await make_job(session_factory)
    new_job = await make_job(session_factory, request="Fix the build")
    handle = await manager.acquire(old_job)

    await manager.transfer(new_job, handle)
    rebound = await manager.acquire(new_job)

    assert rebound.sandbox_id == handle.sandbox_id
    assert provider.created == ["sbx-1"]
    assert await _state(session_factory, "sbx-1") == SandboxState.TRANSFERRED
    assert any(e.type == EventType.SANDBOX_TRANSFERRED for e in collected)

    # The previous owner no longer controls the sandbox.
    assert await manager.release(old_job) is False
    assert provider.killed == []
    with pytest.raises(CodeforgeError):
        await manager.acquire(old_job)


@pytest.mark.asyncio
async def test_release_kills_and_expires(
    manager: SandboxLifecycleManager, provider: FakeProvider, session_factory
) -> None:
    job_id = await make_job(session_factory)
    await manager.acquire(job_id)

    assert await manager.release(job_id) is True
    assert provider.killed == ["sbx-1"]
    assert await _state(session_factory, "sbx-1") == SandboxState.EXPIRED
    assert await manager.release(job_id) is False


@pytest.mark.asyncio
async def test_release_failure_is_best_effort(
    manager: SandboxLifecycleManager, provider: FakeProvider, session_factory
) -> None:
    job_id = await make_job(session_factory)
    await manager.acquire(job_id)

    async def broken_kill(sandbox_id: str) -> None:
        raise SandboxProviderError("kill failed")

    provider.kill = broken_kill

    assert await manager.release(job_id) is False
    assert await _state(session_factory, "sbx-1") == SandboxState.EXPIRED


@pytest.mark.asyncio
async def test_use_marks_sandbox_idle(manager: SandboxLifecycleManager, session_factory) -> None:
    job_id = await make_job(session_factory)

    async with manager.use(job_id) as handle:
        assert handle.sandbox_id == "sbx-1"

    assert await _state(session_factory, "sbx-1") == SandboxState.IDLE


async def _job_on_fragment(session_factory, files: dict[str, str]) -> str:
    base_job = await make_job(session_factory)
    async with session_factory() as session:
        fragment = await db.create_fragment(
            session, job_id=base_job, files=files, summary="Built the page", framework="nextjs"
        )
        await session.commit()
        fragment_id = fragment.id
    return await make_job(session_factory, request="Fix the build", metadata={"base_fragment_id": fragment_id})


@pytest.mark.asyncio
async def test_bind_commits_with_the_callers_transaction(
    manager: SandboxLifecycleManager, session_factory, collected
) -> None:
    old_job = await make_job(session_factory)
    new_job = await make_job(session_factory, request="Fix the build")
    await manager.acquire(old_job)

    async with session_factory() as session:
        job = await db.get_job(session, new_job)
        assert await manager.bind(session, job, "sbx-1") == old_job
        await session.rollback()

    async with session_factory() as session:
        assert (await db.get_job(session, new_job)).sandbox_id is None
        assert (await db.get_sandbox_session(session, "sbx-1")).job_id == old_job
    assert not any(e.type == EventType.SANDBOX_TRANSFERRED for e in collected)


@pytest.mark.asyncio
async def test_new_sandbox_is_seeded_from_base_fragment(
    manager: SandboxLifecycleManager, provider: FakeProvider, session_factory
) -> None:
    files = {"app/page.tsx": "export default function Page() { return null }", "app/layout.tsx": "layout"}
    job_id = await _job_on_fragment(session_factory, files)

    handle = await manager.acquire(job_id)

    assert handle.sandbox_id == "sbx-1"
    assert provider.sandboxes["sbx-1"].files == files


@pytest.mark.asyncio
async def test_missing_base_fragment_means_sandbox_is_gone(
    manager: SandboxLifecycleManager, provider: FakeProvider, session_factory
) -> None:
    job_id = await make_job(session_factory, metadata={"base_fragment_id": "deleted-fragment"})

    with pytest.raises(SandboxExpiredError, match="Sandbox is no longer active"):
        await manager.acquire(job_id)

    assert provider.created == []


@pytest.mark.asyncio
async def test_failed_restore_leaves_job_unbound(
    manager: SandboxLifecycleManager, provider: FakeProvider, session_factory
) -> None:
    job_id = await _job_on_fragment(session_factory, {"app/page.tsx": "page"})
    provider.unwritable.add("app/page.tsx")

    with pytest.raises(SandboxProviderError):
        await manager.acquire(job_id)

    async with session_factory() as session:
        assert (await db.get_job(session, job_id)).sandbox_id is None
