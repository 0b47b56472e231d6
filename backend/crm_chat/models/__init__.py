"""Pydantic models for the CRM chat assistant."""

from crm_chat.models.conversation import (
    ActiveSession,
    AssistantContext,
    AssistantReply,
    AssistantRequest,
    ChatStatus,
    ConversationTurn,
    HistoryEntry,
    Sender,
    SessionSummary,
    SubmitOutcome,
    UserIdentity,
)

__all__ = [
    "ActiveSession",
    "AssistantContext",
    "AssistantReply",
    "AssistantRequest",
    "ChatStatus",
    "ConversationTurn",
    "HistoryEntry",
    "Sender",
    "SessionSummary",
    "SubmitOutcome",
    "UserIdentity",
]
