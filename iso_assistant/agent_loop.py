"""
Resumable retrieval agent loop.

Phases:
    start -> reasoning -> {tool_call -> tool_result -> reasoning}* -> responding -> done

Every phase transition is checkpointed, so a turn interrupted by a restart
can be resumed from its last checkpoint. Phases that depend on data that is
not checkpointed are re-entered one step earlier on resume:
tool_result re-runs its tool call and responding re-runs reasoning.

Provides:
- TokenSink: Receiver of streamed answer tokens
- AgentResult: Outcome of one turn
- AgentLoop: run() a new turn / resume() an unfinished one
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Protocol, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from iso_assistant.agent_state import (
    AgentState,
    LoopPhase,
    ThreadGuard,
    ToolCallRequest,
    empty_state,
)
from iso_assistant.checkpoint_store import CheckpointStore
from iso_assistant.config import (
    AGENT_MAX_TOOL_CALLS,
    GENERATION_ERROR_MESSAGE,
    MAX_HISTORY_MESSAGES,
    REASONING_MAX_ATTEMPTS,
    RETRIEVER_K,
    RETRIEVER_TOOL_NAME,
    STORAGE_ERROR_MESSAGE,
    TIMEOUT_ERROR_MESSAGE,
    TOOL_MAX_ATTEMPTS,
    TOOL_RETRY_BACKOFF_MAX_SECONDS,
    TOOL_RETRY_BACKOFF_SECONDS,
    TURN_TIMEOUT_SECONDS,
)
from iso_assistant.errors import (
    AssistantError,
    ConversationClearedError,
    GenerationError,
    StorageError,
    ToolError,
    TurnTimeoutError,
)
from iso_assistant.logging_config import LogContext, get_logger
from iso_assistant.prompts import (
    DUPLICATE_PASSAGES_MESSAGE,
    NO_PASSAGES_MESSAGE,
    RETRIEVAL_INCOMPLETE_NOTE,
    SYSTEM_PROMPT,
    TOOL_LIMIT_NOTE,
)
from iso_assistant.retrieval_tool import (
    ISO_CONTEXT_RETRIEVER_SCHEMA,
    IsoContextRetrieverInput,
    RetrievalTool,
    format_passages,
)

logger = get_logger(__name__)


class TokenSink(Protocol):
    async def on_token(self, text: str) -> None:
        ...

    async def on_end(self, final_text: str) -> None:
        ...


@dataclass
class AgentResult:
    """
    Outcome of a turn.

    `text` is what should be persisted for the assistant turn: the answer on
    success, a user-visible error message otherwise. A cleared conversation
    has no text to persist.
    `contexts` are the passage texts the model was given, one per source url.
    """
    text: str
    contexts: List[str] = field(default_factory=list)
    error: Optional[AssistantError] = None
    interaction_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _TextStream:
    """A model stream that started with answer text."""
    first_text: str
    rest: AsyncIterator[AIMessageChunk]


@dataclass
class _Turn:
    """Mutable bookkeeping for one execution of the loop."""
    thread_id: str
    guard: ThreadGuard
    sink: TokenSink
    state: Optional[AgentState] = None
    live_stream: Optional[_TextStream] = None


def chunk_text(chunk: BaseMessage) -> str:
    """Plain text of a message chunk (content may be a list of blocks)."""
    content = chunk.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def trim_history(messages: Sequence[BaseMessage], max_messages: int) -> List[BaseMessage]:
    """
    Keep at most max_messages recent messages, starting on a HumanMessage.

    A single turn longer than the window is kept whole, since a ToolMessage
    without its tool call is rejected by chat models.
    """
    if len(messages) <= max_messages:
        return list(messages)

    cut = len(messages) - max_messages
    for i in range(cut, len(messages)):
        if isinstance(messages[i], HumanMessage):
            return list(messages[i:])
    for i in range(len(messages) - 1, -1, -1):
        if isinstance(messages[i], HumanMessage):
            return list(messages[i:])
    return list(messages[cut:])


class AgentLoop:
    """
    Runs turns of the ISO New England retrieval agent.

    Attributes:
        llm: Chat model (ChatOllama in production) supporting bind_tools and astream
        retrieval_tool: Executes the iso_context_retriever tool
        checkpoints: Stores one checkpoint per phase transition
    """

    def __init__(
        self,
        llm: BaseChatModel,
        retrieval_tool: RetrievalTool,
        checkpoints: CheckpointStore,
        max_tool_calls: int = AGENT_MAX_TOOL_CALLS,
        reasoning_attempts: int = REASONING_MAX_ATTEMPTS,
        tool_attempts: int = TOOL_MAX_ATTEMPTS,
        tool_backoff: float = TOOL_RETRY_BACKOFF_SECONDS,
        tool_backoff_max: float = TOOL_RETRY_BACKOFF_MAX_SECONDS,
        turn_timeout: float = TURN_TIMEOUT_SECONDS,
        max_history: int = MAX_HISTORY_MESSAGES,
        retriever_k: int = RETRIEVER_K,
    ) -> None:
        self.llm = llm
        self.llm_with_tools = llm.bind_tools([ISO_CONTEXT_RETRIEVER_SCHEMA])
        self.retrieval_tool = retrieval_tool
        self.checkpoints = checkpoints
        self.max_tool_calls = max_tool_calls
        self.reasoning_attempts = reasoning_attempts
        self.tool_attempts = tool_attempts
        self.tool_backoff = tool_backoff
        self.tool_backoff_max = tool_backoff_max
        self.turn_timeout = turn_timeout
        self.max_history = max_history
        self.retriever_k = retriever_k

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        thread_id: str,
        prompt: str,
        sink: TokenSink,
        interaction_id: Optional[int] = None,
        guard: Optional[ThreadGuard] = None,
    ) -> AgentResult:
        """
        Run a new turn for `prompt` on the thread.

        Tokens of the answer go to sink.on_token as they are generated and
        sink.on_end receives the text to persist. Generation, timeout and
        storage failures are reported in the result, never raised.
        """
        turn = _Turn(thread_id=thread_id, guard=guard or ThreadGuard(thread_id), sink=sink)

        async def start_and_drive() -> None:
            await self._start(turn, prompt, interaction_id)
            await self._drive(turn)

        with LogContext(thread_id=thread_id, interaction_id=interaction_id):
            logger.info("agent_turn_started", prompt_chars=len(prompt))
            return await self._execute(turn, start_and_drive(), prompt, interaction_id)

    async def resume(
        self,
        thread_id: str,
        sink: TokenSink,
        guard: Optional[ThreadGuard] = None,
    ) -> Optional[AgentResult]:
        """
        Continue the thread's unfinished turn from its latest checkpoint.

        Returns:
            The turn result, or None if the thread has nothing to resume
        """
        checkpoint = await self.checkpoints.load(thread_id)
        if checkpoint is None or checkpoint.phase == LoopPhase.DONE.value:
            return None

        state = checkpoint.state
        phase = LoopPhase(state["phase"])
        if phase == LoopPhase.TOOL_RESULT:
            phase = LoopPhase.TOOL_CALL
        elif phase in (LoopPhase.START, LoopPhase.RESPONDING):
            phase = LoopPhase.REASONING

        turn = _Turn(thread_id=thread_id, guard=guard or ThreadGuard(thread_id), sink=sink)
        turn.state = state
        interaction_id = state.get("interaction_id")

        async def resume_and_drive() -> None:
            await self._transition(turn, phase)
            await self._drive(turn)

        with LogContext(thread_id=thread_id, interaction_id=interaction_id):
            logger.info("agent_turn_resumed", from_phase=checkpoint.phase, to_phase=phase.value)
            return await self._execute(turn, resume_and_drive(), state["prompt"], interaction_id)

    async def _execute(self, turn: _Turn, body, prompt: str, interaction_id: Optional[int]) -> AgentResult:
        start_time = time.time()
        try:
            await asyncio.wait_for(body, timeout=self.turn_timeout)
        except asyncio.TimeoutError:
            error = TurnTimeoutError(self.turn_timeout)
            logger.warning("agent_turn_timeout", timeout_seconds=self.turn_timeout)
            return await self._fail(turn, error, TIMEOUT_ERROR_MESSAGE, prompt, interaction_id)
        except ConversationClearedError as e:
            logger.info("agent_turn_cleared")
            return AgentResult(text="", error=e, interaction_id=interaction_id)
        except GenerationError as e:
            logger.error("agent_generation_failed", error=str(e))
            return await self._fail(turn, e, GENERATION_ERROR_MESSAGE, prompt, interaction_id)
        except StorageError as e:
            logger.error("agent_storage_failed", error=str(e))
            return await self._fail(turn, e, STORAGE_ERROR_MESSAGE, prompt, interaction_id)

        state = turn.state
        answer = state["messages"][-1].content
        await turn.sink.on_end(answer)
        logger.info(
            "agent_turn_complete",
            tool_calls=state["tool_calls_made"],
            contexts=len(state["contexts"]),
            chars=len(answer),
            elapsed=round(time.time() - start_time, 3),
        )
        return AgentResult(text=answer, contexts=list(state["contexts"]), interaction_id=interaction_id)

    async def _fail(
        self,
        turn: _Turn,
        error: AssistantError,
        text: str,
        prompt: str,
        interaction_id: Optional[int],
    ) -> AgentResult:
        """Replace the turn's messages with the prompt and the error text, then end."""
        contexts: List[str] = []
        if turn.state is not None:
            state = turn.state
            contexts = list(state["contexts"])
            history = list(state["messages"][:state["turn_start"]])
            turn.state = AgentState(
                **{
                    **state,
                    "messages": history + [HumanMessage(content=prompt), AIMessage(content=text)],
                    "phase": LoopPhase.DONE.value,
                    "pending_tool_call": None,
                    "passages": [],
                    "error": str(error),
                }
            )
            try:
                await self._save(turn)
            except ConversationClearedError as e:
                logger.info("agent_error_checkpoint_skipped", reason="cleared")
                return AgentResult(text="", contexts=contexts, error=e, interaction_id=interaction_id)
            except StorageError as e:
                logger.error("agent_error_checkpoint_failed", error=str(e))

        await turn.sink.on_end(text)
        return AgentResult(text=text, contexts=contexts, error=error, interaction_id=interaction_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _drive(self, turn: _Turn) -> None:
        handlers = {
            LoopPhase.REASONING: self._reasoning,
            LoopPhase.TOOL_CALL: self._tool_call,
            LoopPhase.TOOL_RESULT: self._tool_result,
            LoopPhase.RESPONDING: self._responding,
        }
        while turn.state["phase"] != LoopPhase.DONE.value:
            phase = LoopPhase(turn.state["phase"])
            await handlers[phase](turn)

    async def _save(self, turn: _Turn) -> None:
        async with turn.guard.lock:
            turn.guard.check()
            await self.checkpoints.save(turn.thread_id, turn.state)

    async def _transition(self, turn: _Turn, phase: LoopPhase, **updates: Any) -> None:
        turn.state = AgentState(**{**turn.state, **updates, "phase": phase.value})
        await self._save(turn)

    async def _emit(self, turn: _Turn, text: str) -> None:
        turn.guard.check()
        await turn.sink.on_token(text)

    async def _start(self, turn: _Turn, prompt: str, interaction_id: Optional[int]) -> None:
        checkpoint = await self.checkpoints.load(turn.thread_id)
        previous = checkpoint.state if checkpoint else empty_state()

        messages = list(previous["messages"])
        if previous["phase"] != LoopPhase.DONE.value:
            # Unfinished turn (crash or clear race): drop its partial messages
            logger.warning(
                "agent_abandoning_unfinished_turn",
                phase=previous["phase"],
                abandoned_interaction_id=previous.get("interaction_id"),
            )
            messages = messages[:previous["turn_start"]]

        turn.state = AgentState(
            messages=messages + [HumanMessage(content=prompt)],
            phase=LoopPhase.START.value,
            prompt=prompt,
            interaction_id=interaction_id,
            turn_start=len(messages),
            pending_tool_call=None,
            passages=[],
            contexts=[],
            sources=[],
            tool_calls_made=0,
            retrieval_incomplete=False,
            error=None,
        )
        await self._save(turn)
        await self._transition(turn, LoopPhase.REASONING)

    async def _reasoning(self, turn: _Turn) -> None:
        """
        Ask the model for the next action.

        The stream is classified on its first meaningful chunk: a tool call
        chunk means the whole message is collected and validated, answer
        text means the live stream is handed to the responding phase.
        """
        state = turn.state
        limit_reached = state["tool_calls_made"] >= self.max_tool_calls
        force_answer = limit_reached or state["retrieval_incomplete"]
        model = self.llm if force_answer else self.llm_with_tools

        messages: List[BaseMessage] = [SystemMessage(content=SYSTEM_PROMPT)]
        messages += trim_history(state["messages"], self.max_history)
        if limit_reached:
            messages.append(SystemMessage(content=TOOL_LIMIT_NOTE))

        for attempt in range(1, self.reasoning_attempts + 1):
            try:
                outcome = await self._classify_stream(model, messages)
            except Exception as e:
                logger.warning("agent_model_error", attempt=attempt, error=str(e))
                continue

            if isinstance(outcome, _TextStream):
                turn.live_stream = outcome
                await self._transition(turn, LoopPhase.RESPONDING)
                return

            call = self._validate_tool_call(outcome) if outcome is not None and not force_answer else None
            if call is not None:
                logger.info("agent_tool_call", query=call["query"], tool_calls_made=state["tool_calls_made"])
                tool_message = AIMessage(
                    content=chunk_text(outcome),
                    tool_calls=[{"name": call["name"], "args": {"query": call["query"]}, "id": call["id"]}],
                )
                await self._transition(
                    turn,
                    LoopPhase.TOOL_CALL,
                    messages=list(state["messages"]) + [tool_message],
                    pending_tool_call=call,
                )
                return

            logger.warning(
                "agent_unrecognised_output",
                attempt=attempt,
                empty=outcome is None,
                forced_answer=force_answer,
            )

        raise GenerationError(
            f"Model produced no usable output after {self.reasoning_attempts} attempts"
        )

    async def _classify_stream(self, model: Any, messages: List[BaseMessage]):
        """
        Returns:
            _TextStream, the collected tool call AIMessageChunk, or None for empty output
        """
        stream = model.astream(messages).__aiter__()
        collected: Optional[AIMessageChunk] = None

        while True:
            try:
                chunk = await stream.__anext__()
            except StopAsyncIteration:
                break

            if getattr(chunk, "tool_call_chunks", None) or getattr(chunk, "tool_calls", None):
                collected = chunk if collected is None else collected + chunk
                async for rest in stream:
                    collected = collected + rest
                return collected

            text = chunk_text(chunk)
            if text:
                return _TextStream(first_text=text, rest=stream)

        return None

    def _validate_tool_call(self, message: AIMessageChunk) -> Optional[ToolCallRequest]:
        if getattr(message, "invalid_tool_calls", None):
            return None
        for call in message.tool_calls:
            if call.get("name") != RETRIEVER_TOOL_NAME:
                continue
            try:
                args = IsoContextRetrieverInput.model_validate(call.get("args") or {})
            except ValidationError:
                continue
            return ToolCallRequest(
                id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=RETRIEVER_TOOL_NAME,
                query=args.query,
            )
        return None

    async def _tool_call(self, turn: _Turn) -> None:
        """Run exactly one search, retrying transient failures."""
        state = turn.state
        call = state["pending_tool_call"]

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.tool_attempts),
                wait=wait_exponential(multiplier=self.tool_backoff, max=self.tool_backoff_max),
                retry=retry_if_exception_type(ToolError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    passages = await self.retrieval_tool.search(call["query"], self.retriever_k)
        except ToolError as e:
            logger.warning("agent_retrieval_incomplete", query=call["query"], error=str(e))
            await self._transition(
                turn,
                LoopPhase.REASONING,
                messages=list(state["messages"]) + [
                    ToolMessage(content=RETRIEVAL_INCOMPLETE_NOTE, tool_call_id=call["id"], name=call["name"])
                ],
                pending_tool_call=None,
                tool_calls_made=state["tool_calls_made"] + 1,
                retrieval_incomplete=True,
            )
            return

        await self._transition(turn, LoopPhase.TOOL_RESULT, passages=passages)

    async def _tool_result(self, turn: _Turn) -> None:
        state = turn.state
        call = state["pending_tool_call"]
        passages = state["passages"]

        seen = set(state["sources"])
        fresh = [p for p in passages if p.source_url not in seen]
        if fresh:
            content = format_passages(fresh)
        elif passages:
            content = DUPLICATE_PASSAGES_MESSAGE
        else:
            content = NO_PASSAGES_MESSAGE

        logger.info("agent_tool_result", passages=len(passages), new_sources=len(fresh))
        await self._transition(
            turn,
            LoopPhase.REASONING,
            messages=list(state["messages"]) + [
                ToolMessage(content=content, tool_call_id=call["id"], name=call["name"])
            ],
            contexts=list(state["contexts"]) + [p.text for p in fresh],
            sources=list(state["sources"]) + [p.source_url for p in fresh],
            pending_tool_call=None,
            passages=[],
            tool_calls_made=state["tool_calls_made"] + 1,
        )

    async def _responding(self, turn: _Turn) -> None:
        live = turn.live_stream
        if live is None:
            await self._transition(turn, LoopPhase.REASONING)
            return
        turn.live_stream = None

        parts = [live.first_text]
        await self._emit(turn, live.first_text)
        try:
            async for chunk in live.rest:
                text = chunk_text(chunk)
                if text:
                    parts.append(text)
                    await self._emit(turn, text)
        except AssistantError:
            raise
        except Exception as e:
            # Tokens already reached the client, so the answer cannot be regenerated
            raise GenerationError(f"Model stream failed mid-answer: {e}") from e

        answer = "".join(parts)
        await self._transition(
            turn,
            LoopPhase.DONE,
            messages=list(turn.state["messages"]) + [AIMessage(content=answer)],
        )
