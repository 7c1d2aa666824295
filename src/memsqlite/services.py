"""
Service containers owned by each process entry point.

The sync daemon and the query server build their engine, pool and helpers
here and pass them explicitly to the components that need them. Nothing is
kept in module-level state; leaving the ``async with`` block closes the
pool and disposes the engine.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import Engine

from memsqlite.config import Settings
from memsqlite.db.connection import create_db_engine, init_db
from memsqlite.db.locks import LockManager
from memsqlite.db.pool import ConnectionPool
from memsqlite.pipeline.audit_log import AuditLog
from memsqlite.pipeline.executor import BusyRetryConfig, TransactionalExecutor
from memsqlite.pipeline.sync import SyncEngine
from memsqlite.query.rate_limit import RateLimiter
from memsqlite.query.service import QueryService

logger = logging.getLogger(__name__)


def build_pool(engine: Engine, config: Settings, name: str) -> ConnectionPool:
    return ConnectionPool(
        engine,
        min_size=config.pool_min_size,
        max_size=config.pool_max_size,
        idle_timeout=config.pool_idle_timeout,
        acquire_timeout=config.pool_acquire_timeout,
        sweep_interval=config.pool_sweep_interval,
        name=name,
    )


class SyncServices:
    """Write side: writable pool, locks, audit log, executor and sync engine."""

    def __init__(self, config: Settings):
        self.config = config
        self.engine: Optional[Engine] = None
        self.pool: Optional[ConnectionPool] = None
        self.lock_manager = LockManager(
            config.lock_directory,
            default_timeout=config.lock_timeout,
            stale_after=config.lock_stale_after,
            poll_interval=config.lock_poll_interval,
        )
        self.audit_log = AuditLog(config.audit_log_file)
        self.executor: Optional[TransactionalExecutor] = None
        self.sync_engine: Optional[SyncEngine] = None

    async def start(self) -> "SyncServices":
        config = self.config
        self.engine = create_db_engine(config.database_file, config.busy_timeout_ms)
        init_db(self.engine)

        self.pool = build_pool(self.engine, config, name="writer")
        await self.pool.start()

        self.executor = TransactionalExecutor(
            self.pool,
            audit=self.audit_log,
            lock_manager=self.lock_manager,
            fk_max_retries=config.sync_fk_max_retries,
            busy_retry=BusyRetryConfig(
                max_attempts=config.sync_busy_max_attempts,
                base_delay=config.sync_busy_base_delay_ms / 1000,
                max_delay=config.sync_busy_max_delay_ms / 1000,
            ),
            lock_timeout=config.lock_timeout,
        )
        self.sync_engine = SyncEngine(self.executor, config, self.lock_manager)
        logger.info(f"✓ Sync services ready ({config.database_file})")
        return self

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
        if self.engine is not None:
            self.engine.dispose()

    async def __aenter__(self) -> "SyncServices":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class QueryServices:
    """Read side: read-only pool, rate limiter and query service."""

    def __init__(self, config: Settings, limiter: Optional[RateLimiter] = None):
        self.config = config
        self.limiter = limiter or RateLimiter(
            requests_per_minute=config.query_rate_limit_per_minute,
            strategy=config.query_rate_limit_strategy,
        )
        self.engine: Optional[Engine] = None
        self.pool: Optional[ConnectionPool] = None
        self.query_service: Optional[QueryService] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start(self) -> "QueryServices":
        config = self.config
        if not config.database_file.exists():
            # A read-only handle cannot create the file; lay down the schema once
            writer = create_db_engine(config.database_file, config.busy_timeout_ms)
            try:
                init_db(writer)
            finally:
                writer.dispose()

        self.engine = create_db_engine(
            config.database_file, config.busy_timeout_ms, readonly=True
        )
        self.pool = build_pool(self.engine, config, name="reader")
        await self.pool.start()
        self.query_service = QueryService(self.pool, self.limiter, config)
        if config.query_rate_limit_cleanup_interval > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"✓ Query services ready ({config.database_file}, read-only)")
        return self

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        if self.pool is not None:
            await self.pool.close()
        if self.engine is not None:
            self.engine.dispose()

    async def _cleanup_loop(self) -> None:
        interval = self.config.query_rate_limit_cleanup_interval
        while True:
            await asyncio.sleep(interval)
            removed = self.limiter.cleanup(self.config.query_rate_limit_idle_timeout)
            if removed:
                logger.debug(f"Rate limiter dropped {removed} idle client(s)")

    async def __aenter__(self) -> "QueryServices":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
