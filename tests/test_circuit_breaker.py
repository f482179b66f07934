import asyncio

import pytest

from codeforge.circuit_breaker import CircuitBreaker, CircuitState
from codeforge.errors import CircuitOpenError, SandboxProviderError
from tests.conftest import FakeClock


async def _fail() -> None:
    raise SandboxProviderError("provider unavailable")


async def _succeed() -> str:
    return "ok"


@pytest.mark.asyncio
async def test_opens_after_threshold_failures() -> None:
    breaker = CircuitBreaker("sandbox_create", failure_threshold=3, timeout=60, clock=FakeClock())

    for _ in range(3):
        with pytest.raises(SandboxProviderError):
            await breaker.call(_fail)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(_succeed)


@pytest.mark.asyncio
async def test_success_resets_failure_count() -> None:
    breaker = CircuitBreaker("sandbox_create", failure_threshold=3, clock=FakeClock())

    for _ in range(2):
        with pytest.raises(SandboxProviderError):
            await breaker.call(_fail)
    assert await breaker.call(_succeed) == "ok"

    assert breaker.failures == 0
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_success_closes() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("sandbox_create", failure_threshold=1, timeout=60, clock=clock)
    with pytest.raises(SandboxProviderError):
        await breaker.call(_fail)

    clock.advance(60)
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(_succeed) == "ok"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("sandbox_create", failure_threshold=5, timeout=60, clock=clock)
    for _ in range(5):
        with pytest.raises(SandboxProviderError):
            await breaker.call(_fail)

    clock.advance(61)
    with pytest.raises(SandboxProviderError):
        await breaker.call(_fail)
    assert breaker.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_half_open_allows_a_single_trial() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("sandbox_create", failure_threshold=1, timeout=10, clock=clock)
    with pytest.raises(SandboxProviderError):
        await breaker.call(_fail)
    clock.advance(10)

    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "ok"

    trial = asyncio.create_task(breaker.call(slow))
    await asyncio.sleep(0)
    with pytest.raises(CircuitOpenError):
        await breaker.call(_succeed)

    release.set()
    assert await trial == "ok"
    assert breaker.snapshot() == {"name": "sandbox_create", "state": "CLOSED", "failures": 0}
