import asyncio

from kb_ingest.ratelimit import MemoryRateLimiter


class Clock:
    def __init__(self) -> None:
        self.now = 1_000_000

    def __call__(self) -> int:
        return self.now


def test_fixed_window_allows_up_to_limit() -> None:
    clock = Clock()
    limiter = MemoryRateLimiter(clock)

    async def scenario():
        return [await limiter.check("scrape:1.2.3.4", 2, 60_000) for _ in range(3)]

    first, second, third = asyncio.run(scenario())
    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert (third.allowed, third.remaining) == (False, 0)
    assert third.reset_at == clock.now + 60_000


def test_window_resets_and_keys_are_independent() -> None:
    clock = Clock()
    limiter = MemoryRateLimiter(clock)

    async def scenario():
        await limiter.check("a", 1, 1_000)
        blocked = await limiter.check("a", 1, 1_000)
        other = await limiter.check("b", 1, 1_000)
        clock.now += 1_000
        reopened = await limiter.check("a", 1, 1_000)
        return blocked, other, reopened

    blocked, other, reopened = asyncio.run(scenario())
    assert not blocked.allowed
    assert other.allowed
    assert reopened.allowed
