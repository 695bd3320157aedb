"""
PostgreSQL connection resource shared by services.

``Database`` owns one bounded asyncpg pool per process. It is constructed
once at startup, opened and closed explicitly, and handed to components by
reference. ``Database.session()`` lends out a single connection wrapped in a
``Session`` with explicit transaction control.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from shared.errors import StoreUnavailable
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception


CONNECTION_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class Session:
    """A pooled connection with explicit transaction control."""

    def __init__(self, connection: asyncpg.Connection):
        self.connection = connection
        self._transaction = None
        self.logger = get_logger("shared.database.session")

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    async def begin(self):
        """Open a transaction on this session."""
        if self._transaction is not None:
            raise RuntimeError("Transaction already open")
        transaction = self.connection.transaction()
        await self._call(transaction.start)
        self._transaction = transaction

    async def commit(self):
        """Commit the open transaction."""
        if self._transaction is None:
            raise RuntimeError("No open transaction")
        transaction, self._transaction = self._transaction, None
        await self._call(transaction.commit)

    async def rollback(self):
        """Roll back the open transaction, if any."""
        if self._transaction is None:
            return
        transaction, self._transaction = self._transaction, None
        await self._call(transaction.rollback)

    async def execute(self, query: str, *args) -> str:
        return await self._call(self.connection.execute, query, *args)

    async def fetch(self, query: str, *args) -> List[asyncpg.Record]:
        return await self._call(self.connection.fetch, query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        return await self._call(self.connection.fetchrow, query, *args)

    async def fetchval(self, query: str, *args) -> Any:
        return await self._call(self.connection.fetchval, query, *args)

    async def _call(self, method, *args):
        try:
            return await method(*args)
        except CONNECTION_ERRORS as e:
            self.logger.error("Database call failed", error=str(e))
            raise StoreUnavailable(str(e)) from e


class Database:
    """asyncpg pool resource."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 5,
        command_timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = get_logger("shared.database")

    async def open(self):
        """Create the connection pool."""
        if self.pool is not None:
            return

        @retry_on_exception(CONNECTION_ERRORS, self.retry_config)
        async def _create_pool() -> asyncpg.Pool:
            return await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )

        try:
            self.pool = await _create_pool()
        except RetryError as e:
            self.logger.error("Failed to open database", error=str(e.last_exception))
            raise StoreUnavailable("Database connection failed") from e

        self.logger.info(
            "Database opened",
            min_size=self.min_size,
            max_size=self.max_size
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            self.logger.info("Database closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Borrow a connection; an open transaction is rolled back on exit."""
        if self.pool is None:
            raise StoreUnavailable("Database is not open")

        try:
            connection = await self.pool.acquire()
        except CONNECTION_ERRORS as e:
            self.logger.error("Failed to acquire connection", error=str(e))
            raise StoreUnavailable(str(e)) from e

        session = Session(connection)
        try:
            yield session
        finally:
            if session.in_transaction:
                try:
                    await session.rollback()
                except StoreUnavailable as e:
                    self.logger.warning("Rollback on release failed", error=str(e))
            await self.pool.release(connection)

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.session() as session:
                await session.fetchval("SELECT 1")
            return True
        except StoreUnavailable as e:
            self.logger.error("Database health check failed", error=str(e))
            return False
