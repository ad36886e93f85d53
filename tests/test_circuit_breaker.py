import asyncio

import pytest

from shopassist.errors import CircuitOpen
from shopassist.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState


class Boom(Exception):
    pass


def _breaker(clock, threshold=3, cooldown=30.0) -> CircuitBreaker:
    return CircuitBreaker(
        "test",
        CircuitBreakerConfig(failure_threshold=threshold, cooldown_seconds=cooldown),
        clock=clock,
    )


async def _fail() -> None:
    raise Boom("endpoint down")


async def _ok() -> str:
    return "ok"


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(Boom):
            await breaker.call(_fail)


@pytest.mark.asyncio
async def test_opens_after_threshold(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED
    await _trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert not breaker.is_healthy


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 2)
    assert await breaker.call(_ok) == "ok"
    assert breaker.consecutive_failures == 0
    await _trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_open_rejects_without_calling(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 3)
    calls = []

    async def tracked() -> str:
        calls.append(1)
        return "ok"

    with pytest.raises(CircuitOpen):
        await breaker.call(tracked)
    assert calls == []
    assert breaker.get_stats()["stats"]["rejected_calls"] == 1


@pytest.mark.asyncio
async def test_half_open_trial_success_closes(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 3)
    clock.advance(30.0)
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 3)
    clock.advance(30.0)
    await _trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    clock.advance(29.0)
    assert breaker.state == CircuitState.OPEN
    clock.advance(1.0)
    assert breaker.state == CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_half_open_allows_single_trial(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 3)
    clock.advance(30.0)
    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "ok"

    trial = asyncio.create_task(breaker.call(slow))
    await asyncio.sleep(0)
    with pytest.raises(CircuitOpen):
        await breaker.call(_ok)
    release.set()
    assert await trial == "ok"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_trial_releases_slot(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 3)
    clock.advance(30.0)

    async def hang() -> None:
        await asyncio.Event().wait()

    trial = asyncio.create_task(breaker.call(hang))
    await asyncio.sleep(0)
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial
    assert await breaker.call(_ok) == "ok"


@pytest.mark.asyncio
async def test_reset(clock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, 3)
    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_stats()["stats"]["failed_calls"] == 0
