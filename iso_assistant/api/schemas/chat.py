"""
Pydantic request and response models for the chat API.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# REQUEST MODELS
# ============================================================================


class ChatRequest(BaseModel):
    """Start a turn. thread_id is the client's thread name."""

    prompt: str = Field(min_length=1)
    thread_id: Optional[str] = None


class ResumeRequest(BaseModel):
    thread_id: Optional[str] = None


class ChatMessage(BaseModel):
    """Incoming WebSocket message from client."""

    model_config = ConfigDict(str_strip_whitespace=True)

    type: Literal["chat_message"] = "chat_message"
    message: str = Field(min_length=1)
    thread_id: Optional[str] = None


# ============================================================================
# RESPONSE MODELS
# ============================================================================


class ChatStartedResponse(BaseModel):
    message: Literal["started", "resumed"] = "started"
    interaction_id: int
    thread_id: str


class ChatSyncResponse(BaseModel):
    response: str
    contexts: List[str]
    interaction_id: int


class TurnOut(BaseModel):
    """One logged turn as shown to the client."""

    id: int
    thread_id: str
    speaker: Literal["user", "assistant"]
    text: str
    finalized: bool
    created_at: datetime


class HistoryResponse(BaseModel):
    thread_id: str
    turns: List[TurnOut]


class DeleteResponse(BaseModel):
    """Response after clearing a conversation."""

    deleted_turns: int
    deleted_checkpoints: int


class ErrorResponse(BaseModel):
    error: str


# ============================================================================
# WEBSOCKET EVENTS
# ============================================================================


class ConnectionEstablished(BaseModel):
    """Sent when WebSocket connection is established."""

    type: Literal["connection_established"] = "connection_established"
    user_id: str
    thread_id: str
    existing_messages: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionErrorEvent(BaseModel):
    """Sent when a client message could not start a turn."""

    type: Literal["error"] = "error"
    error: str
    interaction_id: Optional[int] = None
