"""Integration with the external assistant workflow."""

from crm_chat.llm.assistant import (
    ASSISTANT_TIMEOUT_MS,
    AssistantTransport,
    get_transport,
    validate_request,
)

__all__ = [
    "ASSISTANT_TIMEOUT_MS",
    "AssistantTransport",
    "get_transport",
    "validate_request",
]
