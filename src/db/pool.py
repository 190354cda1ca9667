"""Database connection pool for PostgreSQL using asyncpg."""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)

# Global database instance
_database: Optional["Database"] = None


class Database:
    """Async PostgreSQL connection pool shared by the scheduler stores."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "study_scheduler",
        user: str = "scheduler",
        password: str = "",
        min_size: int = 2,
        max_size: int = 10,
        lock_pool_size: int = 4,
    ):
        """Initialize database configuration.

        Args:
            host: PostgreSQL host
            port: PostgreSQL port
            database: Database name
            user: Database user
            password: Database password
            min_size: Minimum pool size
            max_size: Maximum pool size
            lock_pool_size: Connections reserved for plan advisory locks
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_size = min_size
        self.max_size = max_size
        self.lock_pool_size = lock_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self.lock_pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_env(cls) -> "Database":
        """Create Database instance from DB_* environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "study_scheduler"),
            user=os.getenv("DB_USER", "scheduler"),
            password=os.getenv("DB_PASSWORD", ""),
            min_size=int(os.getenv("DB_POOL_MIN", "2")),
            max_size=int(os.getenv("DB_POOL_MAX", "10")),
            lock_pool_size=int(os.getenv("DB_LOCK_POOL_MAX", "4")),
        )

    @property
    def is_connected(self) -> bool:
        return self.pool is not None

    async def connect(self) -> None:
        """Create the query pool and the advisory lock pool."""
        if self.pool is not None:
            logger.warning("Database pool already exists")
            return

        logger.info(
            f"Connecting to PostgreSQL: {self.user}@{self.host}:{self.port}/{self.database}"
        )

        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_size,
            max_size=self.max_size,
        )
        self.lock_pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=1,
            max_size=self.lock_pool_size,
        )

        logger.info("Database pool created")

    async def disconnect(self) -> None:
        """Close both pools."""
        if self.pool is None:
            logger.warning("Database pool does not exist")
            return

        await self.pool.close()
        self.pool = None
        if self.lock_pool is not None:
            await self.lock_pool.close()
            self.lock_pool = None
        logger.info("Database pool closed")

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool.

        Yields:
            asyncpg.Connection: A database connection

        Raises:
            RuntimeError: If the pool is not initialized
        """
        if self.pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")

        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def lock_connection(self):
        """Get a connection from the advisory lock pool.

        Plan locks hold their connection for the whole locked operation, so
        they never draw from the query pool.

        Raises:
            RuntimeError: If the pool is not initialized
        """
        if self.lock_pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")

        async with self.lock_pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """Get a connection with an open transaction.

        The transaction commits when the block exits normally and rolls
        back when it raises.

        Yields:
            asyncpg.Connection: A connection inside a transaction
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args) -> str:
        """Execute a query and return the command status string."""
        async with self.connection() as conn:
            return await conn.execute(query, *args)

    async def executemany(self, query: str, args: list) -> None:
        """Execute a query once per parameter tuple in a single transaction."""
        async with self.transaction() as conn:
            await conn.executemany(query, args)

    async def fetch(self, query: str, *args) -> list:
        """Execute a query and return all rows."""
        async with self.connection() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args):
        """Execute a query and return the first row, or None."""
        async with self.connection() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        """Execute a query and return the first value of the first row."""
        async with self.connection() as conn:
            return await conn.fetchval(query, *args)


def get_database() -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database.from_env()
    return _database


async def init_database() -> Database:
    """Initialize and connect the global database instance.

    Returns:
        Database: The connected database instance
    """
    db = get_database()
    await db.connect()
    return db


async def close_database() -> None:
    """Close the global database instance."""
    global _database
    if _database is not None:
        await _database.disconnect()
        _database = None
