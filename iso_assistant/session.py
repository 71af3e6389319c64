"""
Session orchestrator: runs one conversational turn end to end.

Per turn:
1. Claim the thread (one turn in flight per thread)
2. Log the user turn and an empty assistant placeholder
3. Publish a status event, run the agent loop with tokens relayed live
4. Finalize the placeholder and publish exactly one end event
5. Release the claim

Thread ids are namespaced under the authenticated user, so a client can only
ever name threads of its own user.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from iso_assistant.agent_loop import AgentLoop, AgentResult
from iso_assistant.agent_state import LoopPhase, ThreadGuard
from iso_assistant.checkpoint_store import CheckpointStore
from iso_assistant.config import (
    DEFAULT_THREAD_NAME,
    GENERATION_ERROR_MESSAGE,
    HISTORY_DEFAULT_LIMIT,
    STATUS_FINDING_MATCHES,
)
from iso_assistant.conversation_log import ConversationLog, Turn
from iso_assistant.database import Database, storage_errors
from iso_assistant.errors import (
    GenerationError,
    StorageError,
    ThreadBusyError,
    TurnAlreadyFinalizedError,
    TurnNotFoundError,
)
from iso_assistant.events import EndEvent, StatusEvent, TokenEvent
from iso_assistant.logging_config import LogContext, get_logger
from iso_assistant.relay import StreamingRelay

logger = get_logger(__name__)


def make_thread_id(user_id: str, thread_name: Optional[str] = None) -> str:
    return f"{user_id}:{thread_name or DEFAULT_THREAD_NAME}"


def thread_name_of(user_id: str, thread_id: str) -> str:
    """Client-facing thread name of a thread id built by make_thread_id."""
    prefix = f"{user_id}:"
    return thread_id[len(prefix):] if thread_id.startswith(prefix) else thread_id


@dataclass
class TurnHandle:
    interaction_id: int
    thread_id: str
    task: "asyncio.Task[AgentResult]"


@dataclass
class TurnOutcome:
    interaction_id: int
    response: str
    contexts: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ClearResult:
    deleted_turns: int
    deleted_checkpoints: int


class RelayTokenSink:
    """Publishes answer tokens to the user's channel as they arrive."""

    def __init__(self, relay: StreamingRelay, user_id: str, interaction_id: int) -> None:
        self.relay = relay
        self.user_id = user_id
        self.interaction_id = interaction_id
        self.tokens = 0
        self.final_text: Optional[str] = None

    async def on_token(self, text: str) -> None:
        self.tokens += 1
        await self.relay.publish(
            self.user_id, TokenEvent(interaction_id=self.interaction_id, payload=text)
        )

    async def on_end(self, final_text: str) -> None:
        # The end event is published after the turn is persisted
        self.final_text = final_text


class SessionOrchestrator:
    """
    Attributes:
        conversation_log: User-visible record of turns
        checkpoints: Agent state per thread
        agent_loop: Runs the retrieval agent
        relay: Channel the events are published to
        database: Shared Database, when the stores live in Postgres
    """

    def __init__(
        self,
        conversation_log: ConversationLog,
        checkpoints: CheckpointStore,
        agent_loop: AgentLoop,
        relay: StreamingRelay,
        database: Optional[Database] = None,
    ) -> None:
        self.conversation_log = conversation_log
        self.checkpoints = checkpoints
        self.agent_loop = agent_loop
        self.relay = relay
        self.database = database
        self._guards: Dict[str, ThreadGuard] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Thread claims
    # ------------------------------------------------------------------

    def _claim(self, thread_id: str) -> ThreadGuard:
        guard = self._guards.get(thread_id)
        if guard is not None and guard.claimed:
            logger.warning("thread_busy", thread_id=thread_id, interaction_id=guard.interaction_id)
            raise ThreadBusyError(thread_id, guard.interaction_id)
        guard = ThreadGuard(thread_id, claimed=True)
        self._guards[thread_id] = guard
        return guard

    def _release(self, guard: ThreadGuard) -> None:
        guard.claimed = False
        if self._guards.get(guard.thread_id) is guard:
            del self._guards[guard.thread_id]

    def is_busy(self, user_id: str, thread_name: Optional[str] = None) -> bool:
        guard = self._guards.get(make_thread_id(user_id, thread_name))
        return guard is not None and guard.claimed

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def start_turn(self, user_id: str, prompt: str, thread_name: Optional[str] = None) -> TurnHandle:
        """
        Start a turn and return as soon as it is logged.

        Raises:
            ThreadBusyError: A turn is already in flight on the thread
            StorageError: The turn could not be logged; the loop never ran
        """
        thread_id = make_thread_id(user_id, thread_name)
        guard = self._claim(thread_id)

        try:
            # A clear arriving now waits for both rows and deletes them
            async with guard.lock:
                await self.conversation_log.append(user_id, "user", prompt, thread_id)
                interaction_id = await self.conversation_log.create_placeholder(user_id, thread_id)
        except StorageError:
            self._release(guard)
            raise

        guard.interaction_id = interaction_id
        logger.info("turn_started", user_id=user_id, thread_id=thread_id, interaction_id=interaction_id)

        def run(sink: RelayTokenSink) -> Awaitable[Optional[AgentResult]]:
            return self.agent_loop.run(thread_id, prompt, sink, interaction_id=interaction_id, guard=guard)

        task = self._spawn(self._drive(user_id, thread_id, interaction_id, guard, run))
        return TurnHandle(interaction_id=interaction_id, thread_id=thread_id, task=task)

    async def run_turn(self, user_id: str, prompt: str, thread_name: Optional[str] = None) -> TurnOutcome:
        """Start a turn and wait for it to finish."""
        handle = await self.start_turn(user_id, prompt, thread_name)
        result = await handle.task
        return TurnOutcome(
            interaction_id=handle.interaction_id,
            response=result.text,
            contexts=result.contexts,
            error=str(result.error) if result.error else None,
        )

    async def resume_turn(self, user_id: str, thread_name: Optional[str] = None) -> Optional[TurnHandle]:
        """
        Resume the thread's unfinished turn after a restart.

        Returns:
            Handle of the resumed turn, or None if nothing is unfinished
        """
        thread_id = make_thread_id(user_id, thread_name)
        guard = self._claim(thread_id)

        try:
            checkpoint = await self.checkpoints.load(thread_id)
        except StorageError:
            self._release(guard)
            raise

        interaction_id = checkpoint.state.get("interaction_id") if checkpoint else None
        if checkpoint is None or checkpoint.phase == LoopPhase.DONE.value or interaction_id is None:
            self._release(guard)
            return None

        guard.interaction_id = interaction_id
        logger.info("turn_resuming", user_id=user_id, thread_id=thread_id, interaction_id=interaction_id)

        def run(sink: RelayTokenSink) -> Awaitable[Optional[AgentResult]]:
            return self.agent_loop.resume(thread_id, sink, guard=guard)

        task = self._spawn(self._drive(user_id, thread_id, interaction_id, guard, run))
        return TurnHandle(interaction_id=interaction_id, thread_id=thread_id, task=task)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _drive(
        self,
        user_id: str,
        thread_id: str,
        interaction_id: int,
        guard: ThreadGuard,
        run: Callable[[RelayTokenSink], Awaitable[Optional[AgentResult]]],
    ) -> AgentResult:
        result: Optional[AgentResult] = None
        with LogContext(user_id=user_id, thread_id=thread_id, interaction_id=interaction_id):
            try:
                await self.relay.publish(
                    user_id, StatusEvent(interaction_id=interaction_id, payload=STATUS_FINDING_MATCHES)
                )
                sink = RelayTokenSink(self.relay, user_id, interaction_id)
                result = await run(sink)
            except Exception as e:
                logger.exception("turn_failed", error=str(e))
                result = AgentResult(
                    text=GENERATION_ERROR_MESSAGE,
                    error=GenerationError(str(e)),
                    interaction_id=interaction_id,
                )
            finally:
                if result is None:
                    result = AgentResult(
                        text=GENERATION_ERROR_MESSAGE,
                        error=GenerationError("Turn ended without a result"),
                        interaction_id=interaction_id,
                    )
                try:
                    await self._finalize(interaction_id, result.text)
                    await self.relay.publish(
                        user_id, EndEvent(interaction_id=interaction_id, payload=result.text)
                    )
                finally:
                    self._release(guard)

            logger.info("turn_finished", ok=result.ok, error=str(result.error) if result.error else None)
        return result

    async def _finalize(self, interaction_id: int, text: str) -> None:
        try:
            await self.conversation_log.finalize(interaction_id, text)
        except TurnNotFoundError:
            logger.info("finalize_skipped_turn_deleted", turn_id=interaction_id)
        except TurnAlreadyFinalizedError:
            logger.warning("finalize_skipped_already_final", turn_id=interaction_id)
        except StorageError as e:
            logger.error("finalize_failed", turn_id=interaction_id, error=str(e))

    async def wait_idle(self) -> None:
        """Wait for every in-flight turn to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Conversation management
    # ------------------------------------------------------------------

    async def clear_conversation(self, user_id: str, thread_name: Optional[str] = None) -> ClearResult:
        """
        Delete the thread's turns and checkpoints.

        An in-flight turn on the thread is told to stop first; it writes
        nothing further and its finalize finds no turn.
        """
        thread_id = make_thread_id(user_id, thread_name)
        guard = self._guards.get(thread_id)
        if guard is not None and guard.claimed:
            guard.cleared = True
            logger.info("clearing_in_flight_turn", thread_id=thread_id, interaction_id=guard.interaction_id)
        lock = guard.lock if guard is not None else asyncio.Lock()

        async with lock:
            if self.database is not None:
                async with storage_errors("clear conversation"):
                    async with self.database.transaction() as conn:
                        deleted_turns = await self.conversation_log.clear(user_id, thread_id, conn=conn)
                        deleted_checkpoints = await self.checkpoints.clear(thread_id, conn=conn)
            else:
                deleted_turns = await self.conversation_log.clear(user_id, thread_id)
                deleted_checkpoints = await self.checkpoints.clear(thread_id)

        logger.info(
            "conversation_cleared",
            user_id=user_id,
            thread_id=thread_id,
            deleted_turns=deleted_turns,
            deleted_checkpoints=deleted_checkpoints,
        )
        return ClearResult(deleted_turns=deleted_turns, deleted_checkpoints=deleted_checkpoints)

    async def history(
        self, user_id: str, limit: int = HISTORY_DEFAULT_LIMIT, thread_name: Optional[str] = None
    ) -> List[Turn]:
        return await self.conversation_log.recent(user_id, limit, make_thread_id(user_id, thread_name))
