"""Tests for the async connection pool."""

import asyncio

import pytest

from memsqlite.db.pool import ConnectionPool
from memsqlite.exceptions import PoolClosedError, PoolTimeoutError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestAcquireRelease:
    """Tests for acquire and release."""

    @pytest.mark.asyncio
    async def test_start_opens_min_size(self, engine):
        pool = ConnectionPool(engine, min_size=2, max_size=4, sweep_interval=0)
        await pool.start()
        try:
            stats = pool.stats()
            assert stats.total == 2
            assert stats.idle == 2
            assert stats.active == 0
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_released_handle_is_reused(self, engine):
        async with ConnectionPool(engine, min_size=1, max_size=2, sweep_interval=0) as pool:
            first = await pool.acquire()
            pool.release(first)
            second = await pool.acquire()

            assert second.id == first.id
            pool.release(second)

    @pytest.mark.asyncio
    async def test_grows_to_max_size(self, engine):
        async with ConnectionPool(engine, min_size=0, max_size=3, sweep_interval=0) as pool:
            handles = [await pool.acquire() for _ in range(3)]

            assert pool.stats().total == 3
            assert pool.stats().active == 3
            for handle in handles:
                pool.release(handle)
            assert pool.stats().idle == 3

    @pytest.mark.asyncio
    async def test_exhausted_pool_times_out(self, engine):
        async with ConnectionPool(engine, min_size=0, max_size=1, sweep_interval=0) as pool:
            held = await pool.acquire()

            with pytest.raises(PoolTimeoutError) as exc_info:
                await pool.acquire(timeout=0.05)

            assert exc_info.value.retryable is True
            assert pool.stats().waiting == 0
            pool.release(held)

    @pytest.mark.asyncio
    async def test_waiters_are_served_fifo(self, engine):
        """Test that released handles go to the longest-waiting caller."""
        async with ConnectionPool(engine, min_size=0, max_size=1, sweep_interval=0) as pool:
            held = await pool.acquire()
            order = []

            async def worker(name):
                handle = await pool.acquire(timeout=2)
                order.append(name)
                await asyncio.sleep(0)
                pool.release(handle)

            first = asyncio.create_task(worker("first"))
            await asyncio.sleep(0)
            second = asyncio.create_task(worker("second"))
            await asyncio.sleep(0)
            assert pool.stats().waiting == 2

            pool.release(held)
            await asyncio.gather(first, second)

            assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_release_rolls_back_open_transaction(self, engine):
        async with ConnectionPool(engine, min_size=1, max_size=1, sweep_interval=0) as pool:
            handle = await pool.acquire()
            handle.connection.exec_driver_sql("SELECT 1")
            assert handle.connection.in_transaction()

            pool.release(handle)

            assert not handle.connection.in_transaction()

    @pytest.mark.asyncio
    async def test_connection_context_manager(self, engine):
        async with ConnectionPool(engine, min_size=1, max_size=1, sweep_interval=0) as pool:
            async with pool.connection() as conn:
                assert conn.exec_driver_sql("SELECT 1").scalar() == 1
                assert pool.stats().active == 1

            assert pool.stats().active == 0


class TestSweep:
    """Tests for idle handle eviction."""

    @pytest.mark.asyncio
    async def test_sweep_closes_idle_handles_above_min(self, engine):
        clock = FakeClock()
        pool = ConnectionPool(
            engine, min_size=1, max_size=4, idle_timeout=60, sweep_interval=0, clock=clock
        )
        await pool.start()
        try:
            handles = [await pool.acquire() for _ in range(3)]
            for handle in handles:
                pool.release(handle)
            assert pool.stats().total == 3

            clock.now += 30
            assert pool.sweep_idle() == 0

            clock.now += 61
            assert pool.sweep_idle() == 2
            assert pool.stats().total == 1
        finally:
            await pool.close()


class TestClose:
    """Tests for closing the pool."""

    @pytest.mark.asyncio
    async def test_close_fails_waiters(self, engine):
        pool = ConnectionPool(engine, min_size=0, max_size=1, sweep_interval=0)
        await pool.start()
        held = await pool.acquire()
        waiter = asyncio.create_task(pool.acquire(timeout=5))
        await asyncio.sleep(0)

        await pool.close()

        with pytest.raises(PoolClosedError):
            await waiter
        pool.release(held)
        assert held.connection.closed
        assert pool.stats().total == 0

    @pytest.mark.asyncio
    async def test_acquire_after_close(self, engine):
        pool = ConnectionPool(engine, min_size=1, max_size=1, sweep_interval=0)
        await pool.start()
        await pool.close()

        assert pool.closed
        with pytest.raises(PoolClosedError):
            await pool.acquire()

    def test_invalid_sizes(self, engine):
        with pytest.raises(ValueError):
            ConnectionPool(engine, min_size=0, max_size=0)
        with pytest.raises(ValueError):
            ConnectionPool(engine, min_size=3, max_size=2)
