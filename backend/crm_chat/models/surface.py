"""Pydantic models for the chat surface API."""

from typing import Any

from pydantic import BaseModel, Field

from crm_chat.models.conversation import (
    AssistantContext,
    ChatStatus,
    ConversationTurn,
    SessionSummary,
    SubmitOutcome,
)


class OpenSurfaceRequest(BaseModel):
    """Request to open a chat surface for a signed-in user."""

    user_id: str = Field(min_length=1)
    user_email: str = Field(min_length=1)


class SurfaceState(BaseModel):
    """What a chat surface renders: the active session and the session list."""

    surface_id: str
    session_id: str | None
    status: ChatStatus
    is_busy: bool
    last_error: dict[str, Any] | None = None
    turns: list[ConversationTurn]
    sessions: list[SessionSummary]


class SelectSessionRequest(BaseModel):
    """Request to make a session active."""

    session_id: str = Field(min_length=1)


class SubmitMessageRequest(BaseModel):
    """A message typed into the chat surface."""

    message: str
    context: AssistantContext | None = None


class SubmitMessageResponse(BaseModel):
    """Outcome of a submitted message."""

    outcome: SubmitOutcome
    reply: str | None = None
    error: dict[str, Any] | None = None
    state: SurfaceState


class DeleteSessionResponse(BaseModel):
    """Result of deleting a session."""

    deleted_turns: int
    state: SurfaceState


class SessionTitleResponse(BaseModel):
    """Display title of a session (its opening user message)."""

    session_id: str
    title: str | None = None
