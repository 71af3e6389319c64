"""
Shared test doubles and fixtures.

The chat model and passage index doubles are scripted so tests control
exactly what the agent sees, including failures and pauses.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Sequence, Set, Tuple

import pytest
from langchain_core.documents import Document
from langchain_core.messages import AIMessageChunk
from langchain_core.messages.tool import tool_call_chunk

from iso_assistant.agent_loop import AgentLoop
from iso_assistant.agent_state import AgentState, empty_state
from iso_assistant.checkpoint_store import InMemoryCheckpointStore
from iso_assistant.config import RETRIEVER_TOOL_NAME
from iso_assistant.conversation_log import InMemoryConversationLog
from iso_assistant.errors import StorageError
from iso_assistant.relay import StreamingRelay
from iso_assistant.retrieval_tool import RetrievalTool
from iso_assistant.session import SessionOrchestrator


# ============================================================================
# CHAT MODEL DOUBLE
# ============================================================================


def answer(*tokens: str) -> List[AIMessageChunk]:
    """Script entry: a streamed text answer, one chunk per token."""
    return [AIMessageChunk(content=token) for token in tokens]


def tool_call(query: Any, name: str = RETRIEVER_TOOL_NAME, call_id: str = "call_1") -> List[AIMessageChunk]:
    """Script entry: a single retrieval tool call."""
    return [
        AIMessageChunk(
            content="",
            tool_call_chunks=[
                tool_call_chunk(name=name, args=json.dumps({"query": query}), id=call_id, index=0)
            ],
        )
    ]


class _BoundModel:
    def __init__(self, model: "ScriptedChatModel", tools: Sequence[Any]) -> None:
        self.model = model
        self.tools = list(tools)

    def astream(self, messages, **kwargs):
        return self.model._next(messages, tools=self.tools)


class ScriptedChatModel:
    """
    Each astream() call plays the next script entry.

    An entry is an exception (raised on the first chunk) or a list whose
    items are yielded in order, except that exceptions are raised, numbers
    are slept on and asyncio.Events are waited on.
    """

    def __init__(self, script: Sequence[Any]) -> None:
        self.script = list(script)
        self.calls: List[dict] = []

    def bind_tools(self, tools: Sequence[Any], **kwargs) -> _BoundModel:
        return _BoundModel(self, tools)

    def astream(self, messages, **kwargs):
        return self._next(messages, tools=None)

    def _next(self, messages, tools):
        self.calls.append({"messages": list(messages), "tools": tools})
        entry = self.script.pop(0) if self.script else []
        return self._play(entry)

    async def _play(self, entry):
        if isinstance(entry, BaseException):
            raise entry
        for item in entry:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, (int, float)):
                await asyncio.sleep(item)
            elif isinstance(item, asyncio.Event):
                await item.wait()
            else:
                yield item


# ============================================================================
# PASSAGE INDEX DOUBLE
# ============================================================================


def passage(url: str, score: float, text: Optional[str] = None, content_type: str = "text") -> Tuple[Document, float]:
    return (
        Document(page_content=text or f"Excerpt from {url}", metadata={"url": url, "content_type": content_type}),
        score,
    )


class FakePassageIndex:
    """
    Returns canned (Document, score) pairs.

    Attributes:
        failures: Number of upcoming calls that raise ConnectionError
        gate: When set, each call signals `entered` and waits on the gate
    """

    def __init__(self, results: Optional[List[Tuple[Document, float]]] = None, failures: int = 0) -> None:
        self.results = list(results or [])
        self.failures = failures
        self.calls: List[Tuple[str, int]] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    async def similarity_search_with_score(self, query: str, k: int) -> List[Tuple[Document, float]]:
        self.calls.append((query, k))
        if self.gate is not None:
            if self.entered is not None:
                self.entered.set()
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("passage index unavailable")
        return self.results[:k]


# ============================================================================
# SINKS AND STORAGE DOUBLES
# ============================================================================


class RecordingSink:
    def __init__(self) -> None:
        self.tokens: List[str] = []
        self.ended: List[str] = []

    async def on_token(self, text: str) -> None:
        self.tokens.append(text)

    async def on_end(self, final_text: str) -> None:
        self.ended.append(final_text)


class FailingConversationLog(InMemoryConversationLog):
    """In-memory log whose named operations raise StorageError."""

    def __init__(self, fail_on: Set[str]) -> None:
        super().__init__()
        self.fail_on = set(fail_on)

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StorageError(f"{operation} failed: database unavailable")

    async def append(self, *args, **kwargs):
        self._maybe_fail("append")
        return await super().append(*args, **kwargs)

    async def create_placeholder(self, *args, **kwargs):
        self._maybe_fail("create_placeholder")
        return await super().create_placeholder(*args, **kwargs)

    async def finalize(self, *args, **kwargs):
        self._maybe_fail("finalize")
        return await super().finalize(*args, **kwargs)


class BlockingConversationLog(InMemoryConversationLog):
    """In-memory log whose append waits until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def append(self, *args, **kwargs):
        self.entered.set()
        await self.release.wait()
        return await super().append(*args, **kwargs)


class FakeDatabase:
    """Database stand-in handing out one mocked connection."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    @asynccontextmanager
    async def connection(self):
        yield self.conn

    @asynccontextmanager
    async def transaction(self):
        yield self.conn


def make_state(**overrides: Any) -> AgentState:
    state = empty_state()
    state.update(overrides)
    return state


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def conversation_log():
    return InMemoryConversationLog()


@pytest.fixture
def checkpoints():
    return InMemoryCheckpointStore()


@pytest.fixture
def relay():
    return StreamingRelay()


@pytest.fixture
def index():
    return FakePassageIndex()


@pytest.fixture
def make_loop(checkpoints, index):
    """Factory for an AgentLoop over a scripted model, without retry backoff."""

    def factory(script: Sequence[Any], **kwargs: Any) -> Tuple[AgentLoop, ScriptedChatModel]:
        model = ScriptedChatModel(script)
        kwargs.setdefault("tool_backoff", 0)
        kwargs.setdefault("tool_backoff_max", 0)
        loop = AgentLoop(model, RetrievalTool(index), checkpoints, **kwargs)
        return loop, model

    return factory


@pytest.fixture
def make_orchestrator(conversation_log, checkpoints, relay, make_loop):
    def factory(script: Sequence[Any], log=None, **kwargs: Any) -> Tuple[SessionOrchestrator, ScriptedChatModel]:
        loop, model = make_loop(script, **kwargs)
        orchestrator = SessionOrchestrator(log or conversation_log, checkpoints, loop, relay)
        return orchestrator, model

    return factory
