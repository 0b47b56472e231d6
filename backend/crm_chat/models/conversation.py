"""Pydantic models for chat conversations and the assistant webhook."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Sender(str, Enum):
    """Who wrote a conversation turn.

    Storage rows and the webhook payload both call the assistant "ai".
    """

    USER = "user"
    ASSISTANT = "assistant"

    @property
    def wire_value(self) -> str:
        """Value used in storage rows and webhook history entries."""
        return "ai" if self is Sender.ASSISTANT else "user"

    @classmethod
    def from_wire(cls, value: str) -> "Sender":
        """Map a stored/wire sender value back to a Sender."""
        if value == "user":
            return cls.USER
        if value in ("ai", "assistant"):
            return cls.ASSISTANT
        raise ValueError(f"Unknown sender: {value!r}")


class ChatStatus(str, Enum):
    """State of the conversation orchestrator."""

    IDLE = "idle"
    SENDING = "sending"
    SUCCESS = "success"
    FAILED = "failed"


class SubmitOutcome(str, Enum):
    """Result of a single submit call."""

    REJECTED = "rejected"
    SUCCESS = "success"
    FAILED = "failed"


class ConversationTurn(BaseModel):
    """One message in a conversation session.

    Turns are append-only. An optimistic turn has no id until it is persisted.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    user_id: str
    session_id: str
    sender: Sender
    message: str
    created_at: datetime


class SessionSummary(BaseModel):
    """Latest turn of a session, as shown in the conversation list."""

    session_id: str
    last_message_at: datetime
    preview_message: str


class HistoryEntry(BaseModel):
    """A prior turn sent to the assistant as context."""

    sender: Literal["user", "ai"]
    message: str


class AssistantContext(BaseModel):
    """CRM records the user has selected alongside the chat."""

    model_config = ConfigDict(populate_by_name=True)

    selected_client_id: str | None = Field(default=None, alias="selectedClientId")
    selected_lender_ids: list[str] | None = Field(default=None, alias="selectedLenderIds")
    selected_document_ids: list[str] | None = Field(
        default=None, alias="selectedDocumentIds"
    )


class AssistantRequest(BaseModel):
    """A single chat turn sent to the assistant webhook."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    user_email: str = Field(alias="userEmail")
    session_id: str = Field(alias="sessionId")
    message: str
    history: list[HistoryEntry] = Field(default_factory=list)
    context: AssistantContext = Field(default_factory=AssistantContext)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON body the webhook expects."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class AssistantReply(BaseModel):
    """Body returned by the assistant webhook."""

    model_config = ConfigDict(extra="allow")

    output: str | None = None
    error: str | None = None
    status: str | None = None


@dataclass
class UserIdentity:
    """The signed-in user a chat surface acts for."""

    user_id: str
    user_email: str


@dataclass
class ActiveSession:
    """In-memory state of the conversation shown on one chat surface."""

    session_id: str | None = None
    turns: list[ConversationTurn] = field(default_factory=list)
    is_busy: bool = False
    last_error: Exception | None = None
    status: ChatStatus = ChatStatus.IDLE
