"""Chat session orchestration for the CRM assistant.

- errors: the chat error taxonomy
- summaries: session list derivation from the flat turn log
- sessions: SessionManager, the per-surface session list and active pointer
- orchestrator: ConversationOrchestrator, the turn-taking state machine
- manager: ChatSurfaceManager, the registry of open chat surfaces
"""

from crm_chat.chat.errors import (
    AssistantTimeoutError,
    ChatError,
    ProtocolError,
    RequestValidationError,
    StorageError,
    TransportError,
)

__all__ = [
    "AssistantTimeoutError",
    "ChatError",
    "ProtocolError",
    "RequestValidationError",
    "StorageError",
    "TransportError",
]
