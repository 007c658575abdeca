import asyncio

import pytest

from trading.rate_limiter import RateLimiter


def test_spaces_consecutive_dispatches():
    async def scenario():
        limiter = RateLimiter(max_per_second=20)
        loop = asyncio.get_running_loop()
        stamps = []
        for _ in range(4):
            await limiter.acquire()
            stamps.append(loop.time())
        return stamps

    stamps = asyncio.run(scenario())
    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    assert all(gap >= 0.05 * 0.9 for gap in gaps)


def test_first_acquire_does_not_wait():
    async def scenario():
        limiter = RateLimiter(max_per_second=0.5)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await limiter.acquire()
        return loop.time() - start

    assert asyncio.run(scenario()) < 0.5


def test_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        RateLimiter(0)
