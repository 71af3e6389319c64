"""
Chat endpoints: start a streamed turn, run a turn synchronously, resume an
unfinished turn, and the WebSocket channel that relays turn events.
"""

import asyncio

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from iso_assistant.api.middleware.auth import authenticate_websocket, require_user
from iso_assistant.api.schemas.chat import (
    ChatMessage,
    ChatRequest,
    ChatStartedResponse,
    ChatSyncResponse,
    ConnectionErrorEvent,
    ConnectionEstablished,
    ResumeRequest,
)
from iso_assistant.api.services.agent_service import AgentService, get_agent_service
from iso_assistant.config import DEFAULT_THREAD_NAME, HISTORY_DEFAULT_LIMIT
from iso_assistant.errors import StorageError, ThreadBusyError
from iso_assistant.logging_config import bind_context, get_logger
from iso_assistant.relay import Subscription

logger = get_logger(__name__)

router = APIRouter()


# ============================================================================
# REST ENDPOINTS
# ============================================================================


@router.post("/chat", status_code=status.HTTP_202_ACCEPTED, response_model=ChatStartedResponse)
async def start_chat(
    request: ChatRequest,
    user_id: str = Depends(require_user),
    agent: AgentService = Depends(get_agent_service),
):
    """
    Start a turn and return immediately.

    Tokens are delivered on the user's WebSocket channel, tagged with the
    returned interaction_id.
    """
    handle = await agent.orchestrator.start_turn(user_id, request.prompt, request.thread_id)
    return ChatStartedResponse(
        message="started",
        interaction_id=handle.interaction_id,
        thread_id=request.thread_id or DEFAULT_THREAD_NAME,
    )


@router.post("/chat-sync", response_model=ChatSyncResponse)
async def chat_sync(
    request: ChatRequest,
    user_id: str = Depends(require_user),
    agent: AgentService = Depends(get_agent_service),
):
    """Run a turn to completion and return the answer with the passages it used."""
    outcome = await agent.orchestrator.run_turn(user_id, request.prompt, request.thread_id)
    return ChatSyncResponse(
        response=outcome.response,
        contexts=outcome.contexts,
        interaction_id=outcome.interaction_id,
    )


@router.post("/chat/resume", status_code=status.HTTP_202_ACCEPTED, response_model=ChatStartedResponse)
async def resume_chat(
    request: ResumeRequest,
    user_id: str = Depends(require_user),
    agent: AgentService = Depends(get_agent_service),
):
    """Resume the thread's unfinished turn (after a restart)."""
    handle = await agent.orchestrator.resume_turn(user_id, request.thread_id)
    if handle is None:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "nothing_to_resume"})
    return ChatStartedResponse(
        message="resumed",
        interaction_id=handle.interaction_id,
        thread_id=request.thread_id or DEFAULT_THREAD_NAME,
    )


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.model_dump(mode="json"))


async def _stop_forwarder(forwarder: "asyncio.Task[None]") -> None:
    """Cancel the forwarder and collect its outcome."""
    forwarder.cancel()
    (outcome,) = await asyncio.gather(forwarder, return_exceptions=True)
    if isinstance(outcome, Exception) and not isinstance(outcome, WebSocketDisconnect):
        logger.warning("websocket_forwarder_failed", error=str(outcome))


@router.websocket("/ws/chat")
async def websocket_chat(websocket: WebSocket, agent: AgentService = Depends(get_agent_service)):
    """
    WebSocket channel for the authenticated user.

    Protocol:
        1. Client connects with ?api_key=... (and optional &thread_id=...)
        2. Server sends connection_established
        3. Server forwards every status/token/end event of the user
        4. Client may send chat_message to start a turn

    Client Message Format:
        {
            "type": "chat_message",
            "message": "What is the Forward Capacity Market?",
            "thread_id": "default"  // optional
        }
    """
    user_id = await authenticate_websocket(websocket)
    if user_id is None:
        return

    await websocket.accept()
    bind_context(user_id=user_id, channel="websocket")
    thread_name = websocket.query_params.get("thread_id") or DEFAULT_THREAD_NAME

    # Subscribe before anything is sent so no event of a new turn is missed
    subscription = agent.relay.subscribe(user_id, stop_on_end=False)
    forwarder = None

    try:
        try:
            existing = len(await agent.orchestrator.history(user_id, HISTORY_DEFAULT_LIMIT, thread_name))
        except StorageError:
            existing = 0

        await websocket.send_json(
            ConnectionEstablished(
                user_id=user_id, thread_id=thread_name, existing_messages=existing
            ).model_dump(mode="json")
        )
        forwarder = asyncio.create_task(_forward_events(websocket, subscription))

        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict) or data.get("type") != "chat_message":
                continue

            try:
                incoming = ChatMessage.model_validate(data)
            except ValidationError as e:
                logger.info("websocket_invalid_message", errors=e.error_count())
                await websocket.send_json(ConnectionErrorEvent(error="invalid_message").model_dump(mode="json"))
                continue

            try:
                await agent.orchestrator.start_turn(user_id, incoming.message, incoming.thread_id or thread_name)
            except ThreadBusyError as e:
                await websocket.send_json(
                    ConnectionErrorEvent(error="thread_busy", interaction_id=e.interaction_id).model_dump(mode="json")
                )
            except StorageError:
                await websocket.send_json(
                    ConnectionErrorEvent(error="storage_unavailable").model_dump(mode="json")
                )

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", user_id=user_id)
    finally:
        # Running turns are not cancelled; their events simply have no subscriber here
        subscription.close()
        if forwarder is not None:
            await _stop_forwarder(forwarder)
