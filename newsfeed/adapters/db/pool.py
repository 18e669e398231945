from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from newsfeed.core.errors import ResourceExhausted

log = logging.getLogger("newsfeed.adapters.db.pool")


class SqlPool:
    """
    Bounded SQLAlchemy async pool. `max_overflow=0` keeps the pool at `size`
    connections; a checkout that waits longer than `timeout` seconds fails
    with ResourceExhausted (admission control), it never queues unboundedly.
    """
    def __init__(self, name: str, dsn: str, size: int, timeout: float,
                 engine: Optional[AsyncEngine] = None):
        self.name = name
        self.size = size
        self.timeout = timeout
        self.engine = engine or create_async_engine(
            dsn,
            pool_size=size,
            max_overflow=0,
            pool_timeout=timeout,
            pool_pre_ping=True,
        )

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        try:
            conn = await self.engine.connect()
        except PoolTimeoutError as e:
            log.warning("[%s] pool exhausted after %.1fs", self.name, self.timeout)
            raise ResourceExhausted(f"{self.name} pool exhausted", stage=self.name) from e
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        async with self.connection() as conn:
            async with conn.begin():
                yield conn

    async def dispose(self) -> None:
        await self.engine.dispose()
        log.info("[%s] engine disposed", self.name)


class SemaphorePool:
    """Same admission semantics for in-memory components: `size` concurrent holders at most."""
    def __init__(self, name: str, size: int = 10, timeout: float = 2.0):
        self.name = name
        self.size = size
        self.timeout = timeout
        self._sem = asyncio.Semaphore(size)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._sem.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            log.warning("[%s] pool exhausted after %.1fs", self.name, self.timeout)
            raise ResourceExhausted(f"{self.name} pool exhausted", stage=self.name) from e
        try:
            yield None
        finally:
            self._sem.release()

    transaction = connection

    async def dispose(self) -> None:
        return None
