"""
Append-only, time-ordered log of user and assistant turns.

Provides:
- Turn: one logged message
- ConversationLog: interface shared by the backends
- PostgresConversationLog: durable log on the shared connection pool
- InMemoryConversationLog: process-local log for development and tests

Assistant turns are created as empty placeholders before generation starts
and finalized exactly once; a second finalize is rejected.
"""

import itertools
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Literal, Optional

import psycopg
from pydantic import BaseModel

from iso_assistant.config import DEFAULT_THREAD_NAME
from iso_assistant.database import Database, storage_errors
from iso_assistant.errors import TurnAlreadyFinalizedError, TurnNotFoundError
from iso_assistant.logging_config import get_logger

logger = get_logger(__name__)

Speaker = Literal["user", "assistant"]


class Turn(BaseModel):
    """One message in a conversation."""

    id: int
    user_id: str
    thread_id: str
    speaker: Speaker
    text: str
    finalized: bool
    created_at: datetime


class ConversationLog(ABC):
    """Per-user conversation record. Failures raise StorageError."""

    @abstractmethod
    async def append(
        self, user_id: str, speaker: Speaker, text: str, thread_id: str = DEFAULT_THREAD_NAME
    ) -> int:
        """Append a turn and return its id."""

    @abstractmethod
    async def create_placeholder(self, user_id: str, thread_id: str = DEFAULT_THREAD_NAME) -> int:
        """Create an empty assistant turn and return its id."""

    @abstractmethod
    async def finalize(self, turn_id: int, text: str) -> None:
        """
        Set the final text of a placeholder turn.

        Raises:
            TurnNotFoundError: No such turn (or it was deleted by a clear)
            TurnAlreadyFinalizedError: The turn text is already final
        """

    @abstractmethod
    async def recent(
        self, user_id: str, limit: int, thread_id: Optional[str] = None
    ) -> List[Turn]:
        """Return the latest `limit` turns, oldest first."""

    @abstractmethod
    async def clear(
        self, user_id: str, thread_id: Optional[str] = None, conn: Optional[psycopg.AsyncConnection] = None
    ) -> int:
        """Delete the user's turns (optionally only one thread). Returns rows deleted."""


# ============================================================================
# POSTGRES BACKEND
# ============================================================================


class PostgresConversationLog(ConversationLog):
    """Conversation log stored in the conversation_turns table."""

    def __init__(self, database: Database) -> None:
        self.database = database

    @asynccontextmanager
    async def _connection(
        self, conn: Optional[psycopg.AsyncConnection] = None
    ) -> AsyncIterator[psycopg.AsyncConnection]:
        if conn is not None:
            yield conn
        else:
            async with self.database.connection() as pooled:
                yield pooled

    async def _insert(self, user_id: str, thread_id: str, speaker: Speaker, text: str, finalized: bool) -> int:
        async with storage_errors(f"append {speaker} turn"):
            async with self._connection() as conn:
                cur = await conn.execute(
                    """
                    INSERT INTO conversation_turns (user_id, thread_id, speaker, text, finalized)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (user_id, thread_id, speaker, text, finalized),
                )
                row = await cur.fetchone()
        return row["id"]

    async def append(
        self, user_id: str, speaker: Speaker, text: str, thread_id: str = DEFAULT_THREAD_NAME
    ) -> int:
        # Only assistant placeholders are ever updated; everything appended is final.
        turn_id = await self._insert(user_id, thread_id, speaker, text, finalized=True)
        logger.debug("turn_appended", turn_id=turn_id, speaker=speaker)
        return turn_id

    async def create_placeholder(self, user_id: str, thread_id: str = DEFAULT_THREAD_NAME) -> int:
        turn_id = await self._insert(user_id, thread_id, "assistant", "", finalized=False)
        logger.debug("placeholder_created", turn_id=turn_id)
        return turn_id

    async def finalize(self, turn_id: int, text: str) -> None:
        async with storage_errors("finalize turn"):
            async with self._connection() as conn:
                cur = await conn.execute(
                    """
                    UPDATE conversation_turns
                    SET text = %s, finalized = TRUE
                    WHERE id = %s AND NOT finalized
                    RETURNING id
                    """,
                    (text, turn_id),
                )
                updated = await cur.fetchone()
                if updated is None:
                    cur = await conn.execute(
                        "SELECT 1 AS present FROM conversation_turns WHERE id = %s",
                        (turn_id,),
                    )
                    exists = await cur.fetchone()
        if updated is None:
            if exists is None:
                raise TurnNotFoundError(turn_id)
            raise TurnAlreadyFinalizedError(turn_id)
        logger.debug("turn_finalized", turn_id=turn_id, chars=len(text))

    async def recent(
        self, user_id: str, limit: int, thread_id: Optional[str] = None
    ) -> List[Turn]:
        if limit <= 0:
            return []
        query = """
            SELECT id, user_id, thread_id, speaker, text, finalized, created_at
            FROM conversation_turns
            WHERE user_id = %s
        """
        params: list = [user_id]
        if thread_id is not None:
            query += " AND thread_id = %s"
            params.append(thread_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params.append(limit)

        async with storage_errors("read recent turns"):
            async with self._connection() as conn:
                cur = await conn.execute(query, params)
                rows = await cur.fetchall()

        # Newest-first from the index; callers want creation order
        return [Turn(**row) for row in reversed(rows)]

    async def clear(
        self, user_id: str, thread_id: Optional[str] = None, conn: Optional[psycopg.AsyncConnection] = None
    ) -> int:
        query = "DELETE FROM conversation_turns WHERE user_id = %s"
        params: list = [user_id]
        if thread_id is not None:
            query += " AND thread_id = %s"
            params.append(thread_id)

        async with storage_errors("clear turns"):
            async with self._connection(conn) as active:
                cur = await active.execute(query, params)
                deleted = cur.rowcount
        logger.info("turns_cleared", user_id=user_id, thread_id=thread_id, deleted=deleted)
        return deleted


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================


class InMemoryConversationLog(ConversationLog):
    """
    Conversation log kept in a dict.

    Every operation completes without awaiting, so each one is atomic with
    respect to other coroutines on the event loop.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._turns: Dict[int, Turn] = {}
        self._ids = itertools.count(1)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _insert(self, user_id: str, thread_id: str, speaker: Speaker, text: str, finalized: bool) -> int:
        turn_id = next(self._ids)
        self._turns[turn_id] = Turn(
            id=turn_id,
            user_id=user_id,
            thread_id=thread_id,
            speaker=speaker,
            text=text,
            finalized=finalized,
            created_at=self._clock(),
        )
        return turn_id

    async def append(
        self, user_id: str, speaker: Speaker, text: str, thread_id: str = DEFAULT_THREAD_NAME
    ) -> int:
        return self._insert(user_id, thread_id, speaker, text, finalized=True)

    async def create_placeholder(self, user_id: str, thread_id: str = DEFAULT_THREAD_NAME) -> int:
        return self._insert(user_id, thread_id, "assistant", "", finalized=False)

    async def finalize(self, turn_id: int, text: str) -> None:
        turn = self._turns.get(turn_id)
        if turn is None:
            raise TurnNotFoundError(turn_id)
        if turn.finalized:
            raise TurnAlreadyFinalizedError(turn_id)
        self._turns[turn_id] = turn.model_copy(update={"text": text, "finalized": True})

    async def get(self, turn_id: int) -> Optional[Turn]:
        return self._turns.get(turn_id)

    async def recent(
        self, user_id: str, limit: int, thread_id: Optional[str] = None
    ) -> List[Turn]:
        if limit <= 0:
            return []
        turns = [
            t for t in self._turns.values()
            if t.user_id == user_id and (thread_id is None or t.thread_id == thread_id)
        ]
        turns.sort(key=lambda t: (t.created_at, t.id))
        return turns[-limit:]

    async def clear(
        self, user_id: str, thread_id: Optional[str] = None, conn: Optional[psycopg.AsyncConnection] = None
    ) -> int:
        doomed = [
            turn_id for turn_id, t in self._turns.items()
            if t.user_id == user_id and (thread_id is None or t.thread_id == thread_id)
        ]
        for turn_id in doomed:
            del self._turns[turn_id]
        return len(doomed)
