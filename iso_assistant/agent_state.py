"""
Agent state types for the retrieval agent loop.

Contains:
- LoopPhase: Phases of the agent loop state machine
- ToolCallRequest: Validated tool call waiting to be executed
- AgentState: Checkpointed per-thread state
- ThreadGuard: Per-thread claim, lock and cleared flag shared by a running
  turn and clear-conversation
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from typing_extensions import TypedDict

from langchain_core.messages import BaseMessage

from iso_assistant.errors import ConversationClearedError
from iso_assistant.retrieval_tool import RetrievedPassage


class LoopPhase(str, Enum):
    START = "start"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    RESPONDING = "responding"
    DONE = "done"


class ToolCallRequest(TypedDict):
    """A tool call emitted by the model."""
    id: str
    name: str
    query: str


class AgentState(TypedDict):
    """
    State persisted in every checkpoint.

    `passages` only lives between tool_call and tool_result and is never
    written to storage; a resumed tool_result re-runs the tool call.
    """
    # Core message state (system prompt excluded)
    messages: List[BaseMessage]
    phase: str

    # Current turn
    prompt: str
    interaction_id: Optional[int]
    turn_start: int                               # Index of this turn's HumanMessage
    pending_tool_call: Optional[ToolCallRequest]
    passages: List[RetrievedPassage]              # Transient, excluded from checkpoints
    contexts: List[str]                           # Passage texts used this turn, one per source
    sources: List[str]                            # Source urls of those passages
    tool_calls_made: int
    retrieval_incomplete: bool
    error: Optional[str]


def empty_state() -> AgentState:
    return AgentState(
        messages=[],
        phase=LoopPhase.DONE.value,
        prompt="",
        interaction_id=None,
        turn_start=0,
        pending_tool_call=None,
        passages=[],
        contexts=[],
        sources=[],
        tool_calls_made=0,
        retrieval_incomplete=False,
        error=None,
    )


@dataclass
class ThreadGuard:
    """
    Coordination point for one thread.

    The lock serializes checkpoint writes against clear-conversation. Once
    `cleared` is set the in-flight turn must stop writing.
    """
    thread_id: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cleared: bool = False
    claimed: bool = False
    interaction_id: Optional[int] = None

    def check(self) -> None:
        if self.cleared:
            raise ConversationClearedError(self.thread_id)
