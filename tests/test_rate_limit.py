import asyncio

import pytest

from async_email_queue.rate_limit import SendRateLimiter


def test_rejects_negative_interval():
    with pytest.raises(ValueError):
        SendRateLimiter(-1)


def test_observe_only_moves_forward(clock):
    limiter = SendRateLimiter(2.0, clock=clock)
    assert limiter.time_until_next() == 0
    limiter.observe(None)
    assert limiter.last_send is None

    limiter.observe(clock() - 0.5)
    assert limiter.time_until_next() == pytest.approx(1.5)
    limiter.observe(clock() - 10)
    assert limiter.time_until_next() == pytest.approx(1.5)


@pytest.mark.asyncio
async def test_permit_spaces_consecutive_sends(clock):
    limiter = SendRateLimiter(2.0, clock=clock, sleep=clock.sleep)
    starts = []
    for _ in range(3):
        async with limiter.permit():
            starts.append(clock())
    assert starts[1] - starts[0] >= 2.0
    assert starts[2] - starts[1] >= 2.0
    assert clock.sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_permit_stamps_even_when_send_raises(clock):
    limiter = SendRateLimiter(2.0, clock=clock, sleep=clock.sleep)
    with pytest.raises(RuntimeError):
        async with limiter.permit():
            raise RuntimeError("boom")
    assert limiter.last_send == clock()
    assert limiter.time_until_next() == 2.0


@pytest.mark.asyncio
async def test_concurrent_holders_are_serialised(clock):
    limiter = SendRateLimiter(1.0, clock=clock, sleep=clock.sleep)
    active = 0
    peak = 0
    starts = []

    async def send():
        nonlocal active, peak
        async with limiter.permit():
            active += 1
            peak = max(peak, active)
            starts.append(clock())
            await asyncio.sleep(0)
            active -= 1

    await asyncio.gather(*(send() for _ in range(4)))
    assert peak == 1
    assert all(b - a >= 1.0 for a, b in zip(starts, starts[1:]))
