"""
Bounded asyncio pool of reusable SQLite connections.

The sync daemon and the query server each own one pool (writer and read-only
respectively). Waiting for a handle is an await, never a blocking call, and
waiters are served strictly in arrival order.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import Connection, Engine

from memsqlite.exceptions import PoolClosedError, PoolTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class PooledConnection:
    """A connection plus the bookkeeping the pool needs about it."""

    id: int
    connection: Connection
    created_at: float
    last_used: float
    in_use: bool = False


@dataclass
class PoolStats:
    total: int
    active: int
    idle: int
    waiting: int

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "active": self.active,
            "idle": self.idle,
            "waiting": self.waiting,
        }


class ConnectionPool:
    """
    Hands out SQLAlchemy connections from one engine.

    ``acquire()`` returns an idle handle if there is one, opens a new handle
    while below ``max_size``, and otherwise queues the caller until a handle
    is released or ``acquire_timeout`` expires. A background sweep closes
    handles idle longer than ``idle_timeout`` without dropping below
    ``min_size``.
    """

    def __init__(
        self,
        engine: Engine,
        min_size: int = 2,
        max_size: int = 10,
        idle_timeout: float = 60.0,
        acquire_timeout: float = 30.0,
        sweep_interval: float = 10.0,
        name: str = "pool",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if min_size > max_size:
            raise ValueError("min_size cannot exceed max_size")

        self.engine = engine
        self.min_size = min_size
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self.acquire_timeout = acquire_timeout
        self.sweep_interval = sweep_interval
        self.name = name
        self._clock = clock

        self._ids = itertools.count(1)
        self._handles: dict[int, PooledConnection] = {}
        self._idle: deque[PooledConnection] = deque()
        self._waiters: deque[asyncio.Future] = deque()
        self._opening = 0
        self._closed = False
        self._sweeper: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "ConnectionPool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Open ``min_size`` handles and start the idle sweep."""
        if self._closed:
            raise PoolClosedError(f"Pool '{self.name}' is closed")
        while len(self._handles) < self.min_size:
            handle = await self._open()
            self._idle.append(handle)
        if self._sweeper is None and self.sweep_interval > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.debug(
            f"Pool '{self.name}' started with {len(self._handles)} connections"
        )

    async def _open(self) -> PooledConnection:
        self._opening += 1
        try:
            connection = await asyncio.to_thread(self.engine.connect)
        finally:
            self._opening -= 1
        now = self._clock()
        handle = PooledConnection(
            id=next(self._ids), connection=connection, created_at=now, last_used=now
        )
        self._handles[handle.id] = handle
        return handle

    def _discard(self, handle: PooledConnection) -> None:
        self._handles.pop(handle.id, None)
        try:
            handle.connection.close()
        except Exception as e:
            logger.warning(f"Error closing pooled connection {handle.id}: {e}")

    async def acquire(self, timeout: Optional[float] = None) -> PooledConnection:
        """
        Get a handle, waiting in FIFO order if the pool is exhausted.

        Args:
            timeout: Seconds to wait (defaults to ``acquire_timeout``)

        Returns:
            PooledConnection marked in use

        Raises:
            PoolClosedError: If the pool has been closed
            PoolTimeoutError: If no handle became available in time
        """
        if self._closed:
            raise PoolClosedError(f"Pool '{self.name}' is closed")

        # Only take an idle handle directly when nobody is queued ahead of us
        if self._idle and not self._pending_waiters():
            handle = self._idle.popleft()
            handle.in_use = True
            return handle

        if len(self._handles) + self._opening < self.max_size:
            handle = await self._open()
            handle.in_use = True
            return handle

        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        wait_for = self.acquire_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(waiter, wait_for)
        except asyncio.TimeoutError:
            raise PoolTimeoutError(
                f"Timed out after {wait_for:.1f}s waiting for a connection "
                f"from pool '{self.name}'",
                {"pool": self.name, "timeout": wait_for},
            ) from None
        finally:
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass

    def _pending_waiters(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def release(self, handle: PooledConnection) -> None:
        """
        Return a handle to the pool and wake the oldest waiter, if any.

        Any transaction left open on the handle is rolled back first.
        """
        if handle.id not in self._handles:
            return

        handle.in_use = False
        handle.last_used = self._clock()

        if self._closed or handle.connection.closed or handle.connection.invalidated:
            self._discard(handle)
            return

        if handle.connection.in_transaction():
            try:
                handle.connection.rollback()
            except Exception as e:
                logger.warning(f"Discarding connection {handle.id} after failed rollback: {e}")
                self._discard(handle)
                return

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                handle.in_use = True
                waiter.set_result(handle)
                return

        self._idle.append(handle)

    @asynccontextmanager
    async def connection(
        self, timeout: Optional[float] = None
    ) -> AsyncIterator[Connection]:
        """Acquire a connection for the duration of an ``async with`` block."""
        handle = await self.acquire(timeout)
        try:
            yield handle.connection
        finally:
            self.release(handle)

    def sweep_idle(self) -> int:
        """
        Close handles idle longer than ``idle_timeout``, keeping ``min_size``.

        Returns:
            Number of handles closed
        """
        now = self._clock()
        closed = 0
        for handle in list(self._idle):
            if len(self._handles) <= self.min_size:
                break
            if now - handle.last_used > self.idle_timeout:
                self._idle.remove(handle)
                self._discard(handle)
                closed += 1
        if closed:
            logger.debug(f"Pool '{self.name}' closed {closed} idle connections")
        return closed

    async def _sweep_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.sweep_interval)
            self.sweep_idle()

    def stats(self) -> PoolStats:
        active = sum(1 for handle in self._handles.values() if handle.in_use)
        return PoolStats(
            total=len(self._handles),
            active=active,
            idle=len(self._idle),
            waiting=self._pending_waiters(),
        )

    async def close(self) -> None:
        """
        Close the pool.

        Queued waiters fail with PoolClosedError, idle handles are closed now
        and handles still in use are closed when released.
        """
        if self._closed:
            return
        self._closed = True

        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError(f"Pool '{self.name}' is closed"))

        while self._idle:
            self._discard(self._idle.popleft())

        logger.debug(f"Pool '{self.name}' closed")
