"""
Tests for the keyed lock registry.
"""
import asyncio

import pytest

from devplanner.locks import KeyedLock


def test_same_key_is_serialized():
    """A second holder waits until the first releases"""
    async def scenario():
        locks = KeyedLock()
        log = []
        first_in = asyncio.Event()

        async def first():
            async with locks.hold("card"):
                log.append("first-start")
                first_in.set()
                await asyncio.sleep(0.02)
                log.append("first-end")

        async def second():
            await first_in.wait()
            async with locks.hold("card"):
                log.append("second")

        await asyncio.gather(first(), second())
        return log

    assert asyncio.run(scenario()) == ["first-start", "first-end", "second"]


def test_different_keys_do_not_block():
    async def scenario():
        locks = KeyedLock()
        release_a = await locks.acquire(("p", "a"))
        release_b = await asyncio.wait_for(locks.acquire(("p", "b")), timeout=1)
        assert locks.is_locked(("p", "a"))
        assert locks.is_locked(("p", "b"))
        release_a()
        release_b()

    asyncio.run(scenario())


def test_waiters_are_fifo():
    async def scenario():
        locks = KeyedLock()
        order = []
        release = await locks.acquire("k")

        async def waiter(n):
            async with locks.hold("k"):
                order.append(n)

        tasks = [asyncio.create_task(waiter(n)) for n in range(5)]
        await asyncio.sleep(0)
        release()
        await asyncio.gather(*tasks)
        return order

    assert asyncio.run(scenario()) == [0, 1, 2, 3, 4]


def test_release_twice_raises():
    async def scenario():
        locks = KeyedLock()
        release = await locks.acquire("k")
        release()
        with pytest.raises(RuntimeError):
            release()

    asyncio.run(scenario())


def test_exception_releases_and_cleans_up():
    """An error inside the critical section still frees the key"""
    async def scenario():
        locks = KeyedLock()
        with pytest.raises(ValueError):
            async with locks.hold("k"):
                raise ValueError("boom")
        assert not locks.is_locked("k")
        assert len(locks) == 0
        async with locks.hold("k"):
            assert locks.is_locked("k")

    asyncio.run(scenario())
