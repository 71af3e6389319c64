"""
Error taxonomy for the assistant.

Storage and generation failures always end a turn with a finalized
assistant turn and an `end` event; tool failures are recovered inside
the agent loop; auth failures reject the request before any turn exists.
"""

from typing import Optional


class AssistantError(Exception):
    """Base class for all assistant errors."""


class AuthError(AssistantError):
    """No valid identity is attached to the request."""


class StorageError(AssistantError):
    """Conversation log or checkpoint store is unavailable."""


class TurnNotFoundError(AssistantError):
    """The turn does not exist (never created, or deleted by a clear)."""

    def __init__(self, turn_id: int):
        super().__init__(f"Turn {turn_id} not found")
        self.turn_id = turn_id


class TurnAlreadyFinalizedError(AssistantError):
    """finalize() was called on a turn whose text is already final."""

    def __init__(self, turn_id: int):
        super().__init__(f"Turn {turn_id} is already finalized")
        self.turn_id = turn_id


class ToolError(AssistantError):
    """The retrieval tool failed to produce results."""


class GenerationError(AssistantError):
    """The model errored or produced output that is not a recognised action."""


class TurnTimeoutError(AssistantError):
    """The turn exceeded its wall-clock budget."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Turn exceeded {timeout_seconds:g}s timeout")
        self.timeout_seconds = timeout_seconds


class ConversationClearedError(AssistantError):
    """The thread was cleared while a turn was in flight."""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread {thread_id} was cleared mid-turn")
        self.thread_id = thread_id


class ThreadBusyError(AssistantError):
    """Another turn is already running on this thread."""

    def __init__(self, thread_id: str, interaction_id: Optional[int] = None):
        super().__init__(f"Thread {thread_id} already has a turn in flight")
        self.thread_id = thread_id
        self.interaction_id = interaction_id
