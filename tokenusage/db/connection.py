"""
tokenusage - Database Connection Pool

asyncpg pool shared by PostgresUsageStore. Log appends and statistics
rebuilds run inside transaction(); reads go through fetch/fetchval.
"""

from typing import Any, List, Optional
from contextlib import asynccontextmanager

import asyncpg

from tokenusage.core.config import DEFAULT_DATABASE_URL, PipelineSettings


class DatabasePool:
    """
    Lazily connected asyncpg pool.

    Usage:
        db = DatabasePool.from_settings(PipelineSettings.from_env())
        await db.connect()
        store = PostgresUsageStore(db)
        ...
        await db.close()
    """

    def __init__(
        self,
        dsn: str = DEFAULT_DATABASE_URL,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float = 60,
    ):
        if min_size > max_size:
            raise ValueError(f"min_size ({min_size}) must not exceed max_size ({max_size})")
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "DatabasePool":
        return cls(
            dsn=settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Open the pool; a second call is a no-op."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    @asynccontextmanager
    async def acquire(self):
        if self._pool is None:
            raise RuntimeError("Usage database pool is not connected; call connect() first")
        async with self._pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """Connection inside a transaction: committed on exit, rolled back if the block raises."""
        async with self.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def execute(self, query: str, *args: Any) -> str:
        async with self.acquire() as connection:
            return await connection.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self.acquire() as connection:
            return await connection.fetch(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.acquire() as connection:
            return await connection.fetchval(query, *args)
