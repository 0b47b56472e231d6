"""Error taxonomy for the chat subsystem.

Assistant errors are surfaced to the user and recorded on the active session.
StorageError raised while persisting a delivered reply is logged and swallowed.
"""

from typing import Any


class ChatError(Exception):
    """Base exception for chat errors."""

    def __init__(self, message: str, retriable: bool = False):
        super().__init__(message)
        self.retriable = retriable

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "type": type(self).__name__,
            "message": str(self),
            "retriable": self.retriable,
        }


class RequestValidationError(ChatError):
    """The assistant request is malformed (caller error)."""

    pass


class AssistantTimeoutError(ChatError):
    """The assistant did not answer before the deadline."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Request timeout after {timeout_ms}ms", retriable=True)
        self.timeout_ms = timeout_ms

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["timeout_ms"] = self.timeout_ms
        return data


class TransportError(ChatError):
    """The webhook answered with a non-2xx status, or could not be reached.

    status_code is None when no HTTP response was received at all.
    """

    def __init__(self, status_code: int | None, body: str = "", reason: str = ""):
        if status_code is None:
            message = f"Webhook request failed: {body}"
            retriable = True
        else:
            reason_part = f" {reason}" if reason else ""
            message = f"Webhook request failed: {status_code}{reason_part}. {body}"
            retriable = status_code >= 500 or status_code == 429
        super().__init__(message, retriable=retriable)
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["body"] = self.body
        return data


class ProtocolError(ChatError):
    """The webhook answered 2xx but the body is unusable."""

    pass


class StorageError(ChatError):
    """The conversation store is unavailable or rejected a write."""

    def __init__(self, message: str):
        super().__init__(message, retriable=True)
