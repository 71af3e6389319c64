"""
Durable, versioned agent state per thread.

Provides:
- Checkpoint: Immutable snapshot of agent state
- CheckpointStore: Interface shared by the backends
- PostgresCheckpointStore: agent_checkpoints table on the shared pool
- InMemoryCheckpointStore: Process-local store for development and tests

Every save appends a new version; versions strictly increase per thread and
load() returns the highest one. Checkpoints are only removed by clear().
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

import psycopg

from iso_assistant.agent_state import AgentState
from iso_assistant.checkpoint_serde import CheckpointSerializer
from iso_assistant.database import Database, storage_errors
from iso_assistant.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    thread_id: str
    version: int
    phase: str
    state: AgentState
    created_at: datetime


class CheckpointStore(ABC):
    """Failures raise StorageError."""

    def __init__(self, serde: Optional[CheckpointSerializer] = None) -> None:
        self.serde = serde or CheckpointSerializer()

    @abstractmethod
    async def load(self, thread_id: str) -> Optional[Checkpoint]:
        """Latest checkpoint for the thread, or None."""

    @abstractmethod
    async def save(self, thread_id: str, state: AgentState) -> Checkpoint:
        """Persist state as the next version. Visible to load() once this returns."""

    @abstractmethod
    async def history(self, thread_id: str) -> List[Checkpoint]:
        """Every checkpoint of the thread, oldest first."""

    @abstractmethod
    async def clear(self, thread_id: str, conn: Optional[psycopg.AsyncConnection] = None) -> int:
        """Delete every checkpoint of the thread. Returns rows deleted."""


# ============================================================================
# POSTGRES BACKEND
# ============================================================================


class PostgresCheckpointStore(CheckpointStore):
    def __init__(self, database: Database, serde: Optional[CheckpointSerializer] = None) -> None:
        super().__init__(serde)
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

    def _to_checkpoint(self, row: dict) -> Checkpoint:
        state = self.serde.loads_typed((row["state_type"], bytes(row["state"])))
        return Checkpoint(
            thread_id=row["thread_id"],
            version=row["version"],
            phase=row["phase"],
            state=state,
            created_at=row["created_at"],
        )

    async def load(self, thread_id: str) -> Optional[Checkpoint]:
        async with storage_errors("load checkpoint"):
            async with self._connection() as conn:
                cur = await conn.execute(
                    """
                    SELECT thread_id, version, phase, state_type, state, created_at
                    FROM agent_checkpoints
                    WHERE thread_id = %s
                    ORDER BY version DESC
                    LIMIT 1
                    """,
                    (thread_id,),
                )
                row = await cur.fetchone()
        return self._to_checkpoint(row) if row else None

    async def save(self, thread_id: str, state: AgentState) -> Checkpoint:
        state_type, data = self.serde.dumps_typed(state)
        phase = state["phase"]

        # Autocommit connection: the row is committed when execute() returns.
        # A concurrent writer on the same thread fails the primary key instead
        # of silently sharing a version.
        async with storage_errors("save checkpoint"):
            async with self._connection() as conn:
                cur = await conn.execute(
                    """
                    INSERT INTO agent_checkpoints (thread_id, version, phase, state_type, state)
                    SELECT %s, COALESCE(MAX(version), 0) + 1, %s, %s, %s
                    FROM agent_checkpoints
                    WHERE thread_id = %s
                    RETURNING version, created_at
                    """,
                    (thread_id, phase, state_type, data, thread_id),
                )
                row = await cur.fetchone()

        logger.debug("checkpoint_saved", thread_id=thread_id, version=row["version"], phase=phase)
        return Checkpoint(
            thread_id=thread_id,
            version=row["version"],
            phase=phase,
            state=self.serde.loads_typed((state_type, data)),
            created_at=row["created_at"],
        )

    async def history(self, thread_id: str) -> List[Checkpoint]:
        async with storage_errors("read checkpoint history"):
            async with self._connection() as conn:
                cur = await conn.execute(
                    """
                    SELECT thread_id, version, phase, state_type, state, created_at
                    FROM agent_checkpoints
                    WHERE thread_id = %s
                    ORDER BY version
                    """,
                    (thread_id,),
                )
                rows = await cur.fetchall()
        return [self._to_checkpoint(row) for row in rows]

    async def clear(self, thread_id: str, conn: Optional[psycopg.AsyncConnection] = None) -> int:
        async with storage_errors("clear checkpoints"):
            async with self._connection(conn) as active:
                cur = await active.execute(
                    "DELETE FROM agent_checkpoints WHERE thread_id = %s",
                    (thread_id,),
                )
                deleted = cur.rowcount
        logger.info("checkpoints_cleared", thread_id=thread_id, deleted=deleted)
        return deleted


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================


class InMemoryCheckpointStore(CheckpointStore):
    """
    Keeps serialized snapshots in a dict so a stored checkpoint cannot be
    mutated through a state object the loop still holds.
    """

    def __init__(self, serde: Optional[CheckpointSerializer] = None) -> None:
        super().__init__(serde)
        self._threads: Dict[str, List[Tuple[int, str, str, bytes, datetime]]] = {}

    def _to_checkpoint(self, thread_id: str, entry: Tuple[int, str, str, bytes, datetime]) -> Checkpoint:
        version, phase, state_type, data, created_at = entry
        return Checkpoint(
            thread_id=thread_id,
            version=version,
            phase=phase,
            state=self.serde.loads_typed((state_type, data)),
            created_at=created_at,
        )

    async def load(self, thread_id: str) -> Optional[Checkpoint]:
        entries = self._threads.get(thread_id)
        if not entries:
            return None
        return self._to_checkpoint(thread_id, entries[-1])

    async def save(self, thread_id: str, state: AgentState) -> Checkpoint:
        state_type, data = self.serde.dumps_typed(state)
        entries = self._threads.setdefault(thread_id, [])
        version = entries[-1][0] + 1 if entries else 1
        entry = (version, state["phase"], state_type, data, datetime.now(timezone.utc))
        entries.append(entry)
        return self._to_checkpoint(thread_id, entry)

    async def history(self, thread_id: str) -> List[Checkpoint]:
        return [self._to_checkpoint(thread_id, e) for e in self._threads.get(thread_id, [])]

    async def clear(self, thread_id: str, conn: Optional[psycopg.AsyncConnection] = None) -> int:
        return len(self._threads.pop(thread_id, []))
