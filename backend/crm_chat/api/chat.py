"""Chat API endpoints consumed by the assistant chat surface."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from crm_chat.chat.errors import ChatError, StorageError
from crm_chat.chat.manager import ChatSurfaceManager, get_surface_manager
from crm_chat.chat.orchestrator import ConversationOrchestrator
from crm_chat.llm.assistant import get_transport
from crm_chat.models.conversation import Sender, SessionSummary, SubmitOutcome
from crm_chat.models.surface import (
    DeleteSessionResponse,
    OpenSurfaceRequest,
    SelectSessionRequest,
    SessionTitleResponse,
    SubmitMessageRequest,
    SubmitMessageResponse,
    SurfaceState,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(manager: ChatSurfaceManager, surface_id: str) -> ConversationOrchestrator:
    orchestrator = manager.get_surface(surface_id)
    if not orchestrator:
        raise HTTPException(status_code=404, detail="Chat surface not found")
    return orchestrator


def _storage_unavailable(e: StorageError) -> HTTPException:
    logger.error(f"Conversation storage error: {e}")
    return HTTPException(status_code=503, detail=str(e))


def _surface_state(surface_id: str, orchestrator: ConversationOrchestrator) -> SurfaceState:
    state = orchestrator.state
    error = state.last_error
    return SurfaceState(
        surface_id=surface_id,
        session_id=state.session_id,
        status=state.status,
        is_busy=state.is_busy,
        last_error=error.to_dict() if isinstance(error, ChatError) else None,
        turns=list(state.turns),
        sessions=list(orchestrator.summaries),
    )


@router.post("/chat/surfaces")
async def open_chat_surface(
    request: OpenSurfaceRequest,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> SurfaceState:
    """Open a chat surface; a session is selected or created for it."""
    try:
        surface_id, orchestrator = await manager.open_surface(
            request.user_id, request.user_email
        )
    except StorageError as e:
        raise _storage_unavailable(e) from e

    return _surface_state(surface_id, orchestrator)


@router.get("/chat/surfaces/{surface_id}")
async def get_chat_surface(
    surface_id: str,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> SurfaceState:
    """Get the current state of a chat surface."""
    orchestrator = _get_orchestrator(manager, surface_id)
    return _surface_state(surface_id, orchestrator)


@router.delete("/chat/surfaces/{surface_id}")
async def close_chat_surface(
    surface_id: str,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> dict[str, str]:
    """Close a chat surface (the user left the assistant page)."""
    if not await manager.close_surface(surface_id):
        raise HTTPException(status_code=404, detail="Chat surface not found")
    return {"status": "closed", "surface_id": surface_id}


@router.get("/chat/surfaces/{surface_id}/sessions")
async def list_chat_sessions(
    surface_id: str,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> list[SessionSummary]:
    """Refetch the session list, most recently active first."""
    orchestrator = _get_orchestrator(manager, surface_id)
    try:
        return await orchestrator.refresh_sessions()
    except StorageError as e:
        raise _storage_unavailable(e) from e


@router.post("/chat/surfaces/{surface_id}/sessions")
async def start_chat_session(
    surface_id: str,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> SurfaceState:
    """Start a new, empty conversation."""
    orchestrator = _get_orchestrator(manager, surface_id)
    orchestrator.start_new_session()
    return _surface_state(surface_id, orchestrator)


@router.put("/chat/surfaces/{surface_id}/sessions/active")
async def select_chat_session(
    surface_id: str,
    request: SelectSessionRequest,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> SurfaceState:
    """Switch the surface to an existing session."""
    orchestrator = _get_orchestrator(manager, surface_id)
    try:
        await orchestrator.select_session(request.session_id)
    except StorageError as e:
        raise _storage_unavailable(e) from e
    return _surface_state(surface_id, orchestrator)


@router.delete("/chat/surfaces/{surface_id}/sessions/{session_id}")
async def delete_chat_session(
    surface_id: str,
    session_id: str,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> DeleteSessionResponse:
    """Delete a session and all of its turns."""
    orchestrator = _get_orchestrator(manager, surface_id)
    try:
        count = await orchestrator.delete_session(session_id)
    except StorageError as e:
        raise _storage_unavailable(e) from e

    return DeleteSessionResponse(
        deleted_turns=count,
        state=_surface_state(surface_id, orchestrator),
    )


@router.get("/chat/surfaces/{surface_id}/sessions/{session_id}/title")
async def get_chat_session_title(
    surface_id: str,
    session_id: str,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> SessionTitleResponse:
    """Get the opening user message of a session."""
    orchestrator = _get_orchestrator(manager, surface_id)
    try:
        title = await orchestrator.sessions.first_user_message(session_id)
    except StorageError as e:
        raise _storage_unavailable(e) from e
    return SessionTitleResponse(session_id=session_id, title=title)


@router.post("/chat/surfaces/{surface_id}/messages")
async def submit_chat_message(
    surface_id: str,
    request: SubmitMessageRequest,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> SubmitMessageResponse:
    """Send a message to the assistant on the surface's active session.

    Assistant failures are reported in the response body, not as HTTP errors.
    """
    orchestrator = _get_orchestrator(manager, surface_id)

    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Message cannot be empty")
    if orchestrator.is_busy:
        raise HTTPException(
            status_code=409, detail="Session is busy processing another message"
        )

    outcome = await orchestrator.submit(request.message, context=request.context)
    if outcome == SubmitOutcome.REJECTED:
        raise HTTPException(status_code=409, detail="No active session")

    state = orchestrator.state
    reply = None
    if outcome == SubmitOutcome.SUCCESS and state.turns and state.turns[-1].sender == Sender.ASSISTANT:
        reply = state.turns[-1].message
    error = state.last_error.to_dict() if isinstance(state.last_error, ChatError) else None

    return SubmitMessageResponse(
        outcome=outcome,
        reply=reply,
        error=error,
        state=_surface_state(surface_id, orchestrator),
    )


@router.get("/chat/surfaces/{surface_id}/transcript", response_class=PlainTextResponse)
async def export_chat_transcript(
    surface_id: str,
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> str:
    """Plain-text copy of the conversation on screen."""
    orchestrator = _get_orchestrator(manager, surface_id)
    return orchestrator.transcript()


@router.get("/chat/assistant/health")
async def check_assistant_connection() -> dict[str, Any]:
    """Test that the assistant webhook answers."""
    transport = get_transport()
    connected = await transport.test_connection()
    return {"connected": connected, "webhook_url": transport.webhook_url}


# Admin endpoint for monitoring
@router.get("/chat/stats")
async def get_chat_stats(
    manager: ChatSurfaceManager = Depends(get_surface_manager),
) -> dict[str, Any]:
    """Get chat surface statistics (admin endpoint)."""
    return manager.get_stats()
