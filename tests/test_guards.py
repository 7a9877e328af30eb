"""
Unit tests for in-flight links, the chat rate limiter and upload permits.
"""

import asyncio

import guards
from guards import ChatRateLimiter, InFlightLinks, UploadPermits


class _FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def test_claim_rejects_duplicate_until_released():
    async def run():
        links = InFlightLinks()
        assert await links.claim("https://vm.tiktok.com/a/")
        assert not await links.claim("https://vm.tiktok.com/a/")
        assert await links.claim("https://vm.tiktok.com/b/")
        await links.release("https://vm.tiktok.com/a/")
        assert "https://vm.tiktok.com/a/" not in links
        assert await links.claim("https://vm.tiktok.com/a/")
        return len(links)

    assert asyncio.run(run()) == 2


def test_concurrent_claims_admit_exactly_one():
    async def run():
        links = InFlightLinks()
        results = await asyncio.gather(*(links.claim("https://x.com/v") for _ in range(10)))
        return results

    assert sum(asyncio.run(run())) == 1


def test_rate_limiter_spaces_same_chat(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr(guards.asyncio, "sleep", fake_sleep)
    clock = _FakeClock()
    limiter = ChatRateLimiter(2.0, clock=clock)

    async def run():
        first = await limiter.wait(7)
        clock.now += 0.5
        second = await limiter.wait(7)
        other_chat = await limiter.wait(8)
        return first, second, other_chat

    first, second, other_chat = asyncio.run(run())
    assert first == 0
    assert second == 1.5
    assert other_chat == 0
    assert sleeps == [1.5]


def test_rate_limiter_queues_concurrent_submissions(monkeypatch):
    async def fake_sleep(delay):
        return None

    monkeypatch.setattr(guards.asyncio, "sleep", fake_sleep)
    limiter = ChatRateLimiter(2.0, clock=_FakeClock())

    async def run():
        return await asyncio.gather(*(limiter.wait(7) for _ in range(3)))

    assert sorted(asyncio.run(run())) == [0, 2.0, 4.0]


def test_rate_limiter_no_wait_after_interval(monkeypatch):
    clock = _FakeClock()
    limiter = ChatRateLimiter(2.0, clock=clock)

    async def run():
        await limiter.wait(7)
        clock.now += 5
        return await limiter.wait(7)

    assert asyncio.run(run()) == 0


def test_upload_permits_bound_concurrency():
    permits = UploadPermits(2)
    peak = {"value": 0}

    async def worker():
        async with permits.hold():
            peak["value"] = max(peak["value"], permits.in_use)
            await asyncio.sleep(0.01)

    async def run():
        await asyncio.gather(*(worker() for _ in range(6)))

    asyncio.run(run())
    assert peak["value"] == 2
    assert permits.in_use == 0
    assert permits.acquired == permits.released == 6


def test_upload_permit_released_on_error():
    permits = UploadPermits(1)

    async def run():
        try:
            async with permits.hold():
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        async with permits.hold():
            return permits.in_use

    assert asyncio.run(run()) == 1
    assert permits.acquired == permits.released == 2


def test_rate_limiter_forgets_idle_chats():
    clock = _FakeClock()
    limiter = ChatRateLimiter(2.0, clock=clock)

    async def run():
        await limiter.wait(7)
        clock.now += 1
        await limiter.wait(8)
        recent = len(limiter)
        clock.now += 5
        await limiter.wait(9)
        return recent, len(limiter)

    assert asyncio.run(run()) == (2, 1)
