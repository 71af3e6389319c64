"""
PostgreSQL connection pool and schema shared by the conversation log and
the checkpoint store.

Both stores use the same AsyncConnectionPool so that clearing a
conversation can delete turns and checkpoints in one transaction.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import psycopg
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from iso_assistant.config import (
    DATABASE_URL,
    DB_CONNECTION_KWARGS,
    DB_POOL_MAX_SIZE,
)
from iso_assistant.errors import StorageError
from iso_assistant.logging_config import get_logger

logger = get_logger(__name__)


CONVERSATION_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS conversation_turns (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        thread_id TEXT NOT NULL,
        speaker TEXT NOT NULL CHECK (speaker IN ('user', 'assistant')),
        text TEXT NOT NULL DEFAULT '',
        finalized BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS conversation_turns_user_created_idx
    ON conversation_turns (user_id, created_at, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_checkpoints (
        thread_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        phase TEXT NOT NULL,
        state_type TEXT NOT NULL,
        state BYTEA NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
        PRIMARY KEY (thread_id, version)
    )
    """,
]


@asynccontextmanager
async def storage_errors(operation: str) -> AsyncIterator[None]:
    """Translate driver and pool failures into StorageError."""
    try:
        yield
    except (psycopg.Error, PoolTimeout) as e:
        logger.error("storage_operation_failed", operation=operation, error=str(e))
        raise StorageError(f"{operation} failed: {e}") from e


class Database:
    """
    Owns the async connection pool.

    Attributes:
        pool: AsyncConnectionPool (opened lazily by open())
    """

    def __init__(
        self,
        conninfo: str = DATABASE_URL,
        max_size: int = DB_POOL_MAX_SIZE,
        pool: Optional[AsyncConnectionPool] = None,
    ) -> None:
        self.pool = pool or AsyncConnectionPool(
            conninfo=conninfo,
            max_size=max_size,
            kwargs=DB_CONNECTION_KWARGS.copy(),
            open=False,
        )

    async def open(self) -> None:
        async with storage_errors("open pool"):
            await self.pool.open()
        logger.info("database_pool_opened", max_size=self.pool.max_size)

    async def close(self) -> None:
        await self.pool.close()
        logger.info("database_pool_closed")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[psycopg.AsyncConnection]:
        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[psycopg.AsyncConnection]:
        """Yield a connection inside an explicit transaction block."""
        async with self.pool.connection() as conn:
            async with conn.transaction():
                yield conn

    async def setup_schema(self) -> None:
        """Create the conversation and checkpoint tables if missing."""
        async with storage_errors("setup schema"):
            async with self.connection() as conn:
                for statement in CONVERSATION_SCHEMA:
                    await conn.execute(statement)
        logger.info("conversation_schema_ready")

    async def ping(self) -> bool:
        try:
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
            return True
        except (psycopg.Error, PoolTimeout) as e:
            logger.warning("database_ping_failed", error=str(e))
            return False
