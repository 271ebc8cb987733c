"""Tests for RateLimiter."""

import asyncio
import random

import pytest

from agent_courier.errors import ConfigurationError
from agent_courier.ratelimit import RateLimiter

from conftest import FakeClock


async def run_to_completion(clock: FakeClock, task: asyncio.Task, step: float = 1.0) -> None:
    while not task.done():
        await clock.advance(step)
    await task


@pytest.mark.asyncio
async def test_admits_immediately_under_limits(clock):
    limiter = RateLimiter(max_per_minute=20, burst_size=5, clock=clock)
    for _ in range(5):
        await limiter.throttle()

    assert clock.now() == 0.0
    assert len(limiter.calls) == 5
    assert len(limiter.burst_calls) == 5


@pytest.mark.asyncio
async def test_burst_limit_delays_next_call(clock):
    limiter = RateLimiter(max_per_minute=20, burst_size=2, clock=clock)
    await limiter.throttle()
    await limiter.throttle()

    third = asyncio.create_task(limiter.throttle())
    await clock.advance(0.5)
    assert not third.done()
    await clock.advance(0.4)
    assert not third.done()  # still inside the 1s burst window

    await clock.advance(0.3)
    assert third.done()
    await third
    assert limiter.calls[-1] == pytest.approx(1.1)
    assert limiter.calls[-1] >= 0.9


@pytest.mark.asyncio
async def test_minute_limit_delays_next_call(clock):
    limiter = RateLimiter(max_per_minute=3, burst_size=10, clock=clock)
    for _ in range(3):
        await limiter.throttle()

    fourth = asyncio.create_task(limiter.throttle())
    await clock.advance(59)
    assert not fourth.done()

    await clock.advance(2)
    await fourth
    # the three earlier calls have aged out of the window
    assert limiter.calls == [pytest.approx(60.1)]


@pytest.mark.asyncio
async def test_waiters_admitted_in_arrival_order(clock):
    limiter = RateLimiter(max_per_minute=20, burst_size=1, clock=clock)
    order = []

    async def call(name):
        await limiter.throttle()
        order.append(name)

    tasks = [asyncio.create_task(call(name)) for name in ("a", "b", "c", "d")]
    while not all(t.done() for t in tasks):
        await clock.advance(0.5)

    assert order == ["a", "b", "c", "d"]
    stamps = limiter.calls
    assert all(later - earlier >= 1.0 for earlier, later in zip(stamps, stamps[1:]))


@pytest.mark.asyncio
async def test_windows_never_exceeded_under_random_load():
    rng = random.Random(7)
    clock = FakeClock()
    max_per_minute, burst_size = 6, 2
    limiter = RateLimiter(max_per_minute, burst_size, clock=clock)

    admitted = []
    for _ in range(30):
        await clock.advance(rng.uniform(0, 0.8))
        task = asyncio.create_task(limiter.throttle())
        await run_to_completion(clock, task, step=rng.choice([0.25, 1.0, 5.0]))
        admitted.append(limiter.calls[-1])

    for i, start in enumerate(admitted):
        in_burst = [t for t in admitted[i:] if t - start < 1.0]
        in_minute = [t for t in admitted[i:] if t - start < 60.0]
        assert len(in_burst) <= burst_size
        assert len(in_minute) <= max_per_minute


@pytest.mark.asyncio
async def test_concurrent_callers_respect_windows_and_arrival_order():
    rng = random.Random(23)
    clock = FakeClock()
    max_per_minute, burst_size = 8, 3
    limiter = RateLimiter(max_per_minute, burst_size, clock=clock)
    arrivals = []
    admitted = []

    async def caller(name, delay):
        await clock.sleep(delay)
        arrivals.append(name)
        await limiter.throttle()
        admitted.append((name, clock.now()))

    tasks = [asyncio.create_task(caller(i, rng.uniform(0, 20))) for i in range(40)]
    while not all(t.done() for t in tasks):
        await clock.advance(0.5)

    assert [name for name, _ in admitted] == arrivals
    stamps = [t for _, t in admitted]
    for i, start in enumerate(stamps):
        assert len([t for t in stamps[i:] if t - start < 1.0]) <= burst_size
        assert len([t for t in stamps[i:] if t - start < 60.0]) <= max_per_minute


@pytest.mark.asyncio
async def test_reset_forgets_calls(clock):
    limiter = RateLimiter(max_per_minute=1, burst_size=1, clock=clock)
    await limiter.throttle()
    limiter.reset()

    await limiter.throttle()  # would otherwise wait a minute
    assert clock.now() == 0.0


@pytest.mark.asyncio
async def test_default_limits():
    limiter = RateLimiter()
    assert limiter.max_per_minute == 20
    assert limiter.burst_size == 5


@pytest.mark.parametrize("per_minute,burst", [(0, 5), (20, 0), (-1, -1)])
def test_rejects_non_positive_limits(per_minute, burst):
    with pytest.raises(ConfigurationError):
        RateLimiter(per_minute, burst)
