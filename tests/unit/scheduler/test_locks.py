"""Tests for per-test keyed locks."""

import asyncio

import pytest

from abpilot.scheduler.locks import KeyedLock


class TestKeyedLock:
    """Tests for per-key locking."""

    @pytest.mark.anyio
    async def test_entries_dropped_after_release(self) -> None:
        locks = KeyedLock()
        async with locks.acquire("a"):
            assert locks.locked("a")
            assert not locks.locked("b")
            assert len(locks) == 1
        assert not locks.locked("a")
        assert len(locks) == 0

    @pytest.mark.anyio
    async def test_try_acquire_skips_held_key(self) -> None:
        locks = KeyedLock()
        async with locks.acquire("a"):
            async with locks.try_acquire("a") as acquired:
                assert acquired is False
            async with locks.try_acquire("b") as acquired:
                assert acquired is True
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.anyio
    async def test_try_acquire_holds_the_lock(self) -> None:
        locks = KeyedLock()
        async with locks.try_acquire("a") as acquired:
            assert acquired is True
            assert locks.locked("a")
        assert not locks.locked("a")
        assert len(locks) == 0

    @pytest.mark.anyio
    async def test_acquire_waits_for_holder(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.acquire("a"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("first"), worker("second"))
        assert order == ["first-in", "first-out", "second-in", "second-out"]
        assert len(locks) == 0

    @pytest.mark.anyio
    async def test_entry_kept_while_a_waiter_is_queued(self) -> None:
        """Test the entry survives the holder's release while others wait."""
        locks = KeyedLock()
        release = asyncio.Event()
        entered = asyncio.Event()

        async def holder() -> None:
            async with locks.acquire("a"):
                entered.set()
                await release.wait()

        async def waiter() -> None:
            async with locks.acquire("a"):
                pass

        holding = asyncio.create_task(holder())
        await entered.wait()
        waiting = asyncio.create_task(waiter())
        await asyncio.sleep(0)

        assert len(locks) == 1
        assert not waiting.done()

        release.set()
        await asyncio.gather(holding, waiting)
        assert len(locks) == 0
        assert not locks.locked("a")
