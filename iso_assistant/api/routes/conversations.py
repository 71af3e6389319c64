"""
REST endpoints for reading and clearing a user's conversation.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from iso_assistant.api.middleware.auth import require_user
from iso_assistant.api.schemas.chat import DeleteResponse, HistoryResponse, TurnOut
from iso_assistant.api.services.agent_service import AgentService, get_agent_service
from iso_assistant.config import DEFAULT_THREAD_NAME, HISTORY_DEFAULT_LIMIT
from iso_assistant.session import thread_name_of

router = APIRouter()


@router.get("/conversations/history", response_model=HistoryResponse)
async def conversation_history(
    limit: int = Query(HISTORY_DEFAULT_LIMIT, ge=1, le=200),
    thread_id: Optional[str] = None,
    user_id: str = Depends(require_user),
    agent: AgentService = Depends(get_agent_service),
):
    """
    Most recent turns of a thread, oldest first.

    Used by reconnecting clients to backfill what they missed; in-flight
    assistant turns appear with finalized=false.
    """
    turns = await agent.orchestrator.history(user_id, limit, thread_id)
    return HistoryResponse(
        thread_id=thread_id or DEFAULT_THREAD_NAME,
        turns=[
            TurnOut(
                id=turn.id,
                thread_id=thread_name_of(user_id, turn.thread_id),
                speaker=turn.speaker,
                text=turn.text,
                finalized=turn.finalized,
                created_at=turn.created_at,
            )
            for turn in turns
        ],
    )


@router.delete("/conversations", response_model=DeleteResponse)
async def clear_conversation(
    thread_id: Optional[str] = None,
    user_id: str = Depends(require_user),
    agent: AgentService = Depends(get_agent_service),
):
    """
    Delete a thread's turns and agent checkpoints.

    WARNING: This is destructive and cannot be undone. A turn still
    generating on the thread stops writing and ends with an end event.
    """
    result = await agent.orchestrator.clear_conversation(user_id, thread_id)
    return DeleteResponse(
        deleted_turns=result.deleted_turns,
        deleted_checkpoints=result.deleted_checkpoints,
    )
