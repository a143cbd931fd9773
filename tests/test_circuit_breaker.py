"""Circuit breaker state machine, timeouts and cancellation."""

import asyncio

import pytest

from payroute.common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from payroute.common.errors import CircuitOpenError, CircuitTimeoutError


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def ok():
    return "ok"


async def boom():
    raise RuntimeError("boom")


def make_breaker(clock=None, **overrides):
    config = CircuitBreakerConfig(name="stripe:charge", max_failures=3, timeout=30.0, half_open_max=2)
    for key, value in overrides.items():
        setattr(config, key, value)
    return CircuitBreaker(config, clock=clock or FakeClock())


async def trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.max_failures):
        with pytest.raises(RuntimeError):
            await breaker.execute(boom)


@pytest.mark.asyncio
async def test_opens_after_max_failures_and_rejects_without_calling():
    breaker = make_breaker()
    await trip(breaker)
    calls = []

    async def tracked():
        calls.append(1)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.execute(tracked)
    assert calls == []


@pytest.mark.asyncio
async def test_success_in_closed_resets_failure_count():
    breaker = make_breaker()
    with pytest.raises(RuntimeError):
        await breaker.execute(boom)

    await breaker.execute(ok)

    assert breaker.snapshot().failure_count == 0


@pytest.mark.asyncio
async def test_half_open_after_timeout_then_closes_on_successes():
    clock = FakeClock()
    breaker = make_breaker(clock)
    await trip(breaker)

    clock.advance(29.9)
    assert breaker.allow_request() is False

    clock.advance(0.1)
    assert await breaker.execute(ok) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN

    await breaker.execute(ok)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failure_in_half_open_reopens():
    clock = FakeClock()
    breaker = make_breaker(clock)
    await trip(breaker)
    clock.advance(30)

    with pytest.raises(RuntimeError):
        await breaker.execute(boom)

    assert breaker.state == CircuitState.OPEN


def test_half_open_limits_probes_in_flight():
    clock = FakeClock()
    breaker = make_breaker(clock, half_open_max=3)
    for _ in range(3):
        breaker.record_failure()
    clock.advance(30)

    admitted = [breaker.allow_request() for _ in range(4)]

    assert admitted == [True, True, True, False]


@pytest.mark.asyncio
async def test_timeout_records_failure_and_leaves_call_running():
    breaker = make_breaker()
    release = asyncio.Event()
    finished = []

    async def slow():
        await release.wait()
        finished.append(True)
        return "late"

    with pytest.raises(CircuitTimeoutError):
        await breaker.execute(slow, timeout=0.01)
    assert breaker.snapshot().failure_count == 1

    release.set()
    await asyncio.sleep(0.01)
    assert finished == [True]


@pytest.mark.asyncio
async def test_guarded_timeout_error_is_not_reported_as_deadline():
    breaker = make_breaker()

    async def raises_timeout():
        raise asyncio.TimeoutError()

    with pytest.raises(asyncio.TimeoutError):
        await breaker.execute(raises_timeout, timeout=5.0)
    assert breaker.snapshot().failure_count == 1


@pytest.mark.asyncio
async def test_caller_cancellation_records_failure_and_propagates():
    breaker = make_breaker()
    release = asyncio.Event()

    async def slow():
        await release.wait()

    task = asyncio.create_task(breaker.execute(slow))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert breaker.snapshot().failure_count == 1
    release.set()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_state_change_callback_and_failing_callback():
    changes = []

    def on_change(name, old, new):
        changes.append((name, old, new))
        raise RuntimeError("callback broke")

    breaker = make_breaker(on_state_change=on_change)
    await trip(breaker)

    assert changes == [("stripe:charge", CircuitState.CLOSED, CircuitState.OPEN)]
    assert breaker.state == CircuitState.OPEN


def test_reset_closes_breaker():
    breaker = make_breaker()
    for _ in range(3):
        breaker.record_failure()

    breaker.reset()

    snap = breaker.snapshot()
    assert snap.state == CircuitState.CLOSED
    assert snap.failure_count == 0


def test_non_positive_config_falls_back_to_defaults():
    breaker = CircuitBreaker(CircuitBreakerConfig(max_failures=0, timeout=-1, half_open_max=0))

    assert (breaker.max_failures, breaker.timeout, breaker.half_open_max) == (5, 30.0, 3)
