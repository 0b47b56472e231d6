"""Transport for the external assistant workflow (n8n webhook)."""

import asyncio
import logging
import os
from typing import Any

import httpx
from pydantic import ValidationError

from crm_chat.chat.errors import (
    AssistantTimeoutError,
    ProtocolError,
    RequestValidationError,
    TransportError,
)
from crm_chat.models.conversation import AssistantReply, AssistantRequest

logger = logging.getLogger(__name__)

# Default configuration
N8N_WEBHOOK_URL = os.getenv(
    "N8N_WEBHOOK_URL",
    "https://n8n.srv783065.hstgr.cloud/webhook/0d7564b0-45e8-499f-b3b9-b136386319e5/chat",
)
ASSISTANT_TIMEOUT_MS = 30000


def validate_request(request: AssistantRequest | dict[str, Any]) -> AssistantRequest:
    """Check a request before it goes on the wire.

    Args:
        request: A model, or a raw camelCase payload.

    Returns:
        The validated request model.

    Raises:
        RequestValidationError: If a required field is missing or blank.
    """
    if isinstance(request, dict):
        if "history" in request and not isinstance(request["history"], list):
            raise RequestValidationError("History must be a list")
        try:
            request = AssistantRequest.model_validate(request)
        except ValidationError as e:
            raise RequestValidationError(f"Invalid assistant request: {e}") from e

    if not request.user_id:
        raise RequestValidationError("User ID is required")
    if not request.user_email:
        raise RequestValidationError("User email is required")
    if not request.session_id:
        raise RequestValidationError("Session ID is required")
    if not request.message or not request.message.strip():
        raise RequestValidationError("Message cannot be empty")
    if not isinstance(request.history, list):
        raise RequestValidationError("History must be a list")

    return request


class AssistantTransport:
    """Sends chat turns to the assistant webhook.

    One POST per turn, bounded by a deadline. No retries; the caller decides
    what to do with a failure.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        timeout_ms: int = ASSISTANT_TIMEOUT_MS,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the transport.

        Args:
            webhook_url: Webhook endpoint. Defaults to N8N_WEBHOOK_URL.
            timeout_ms: Default deadline for a single request.
            http_client: Optional shared client (a new one is opened per request otherwise).
        """
        self.webhook_url = webhook_url or N8N_WEBHOOK_URL
        self.timeout_ms = timeout_ms
        self._http_client = http_client

    async def send(
        self,
        request: AssistantRequest | dict[str, Any],
        timeout_ms: int | None = None,
    ) -> str:
        """Send one chat turn and return the assistant's reply text.

        Args:
            request: The turn to send.
            timeout_ms: Deadline override for this call.

        Returns:
            The reply text.

        Raises:
            RequestValidationError: Request is malformed (no network call made).
            AssistantTimeoutError: No response within the deadline.
            TransportError: Non-2xx status, or the webhook could not be reached.
            ProtocolError: 2xx body without a usable reply.
        """
        request = validate_request(request)
        timeout_ms = timeout_ms if timeout_ms is not None else self.timeout_ms

        logger.info(
            f"Sending message to assistant webhook (session {request.session_id}, "
            f"history {len(request.history)} turn(s))"
        )

        try:
            async with asyncio.timeout(timeout_ms / 1000):
                response = await self._post(request.to_wire(), timeout_ms)
        except (TimeoutError, httpx.TimeoutException) as e:
            logger.warning(f"Assistant webhook timed out after {timeout_ms}ms")
            raise AssistantTimeoutError(timeout_ms) from e
        except httpx.HTTPError as e:
            logger.error(f"Assistant webhook unreachable: {e}")
            raise TransportError(None, body=str(e)) from e

        logger.debug(f"Assistant webhook response status: {response.status_code}")

        if not response.is_success:
            logger.error(
                f"Assistant webhook error response: {response.status_code} {response.text[:500]}"
            )
            raise TransportError(
                response.status_code, body=response.text, reason=response.reason_phrase
            )

        return self._parse_reply(response)

    async def test_connection(self) -> bool:
        """Check that the webhook answers a canned request with a usable reply."""
        test_request = AssistantRequest(
            user_id="test-user",
            user_email="test@example.com",
            session_id="test-session",
            message="Test connection",
        )

        try:
            await self.send(test_request)
            return True
        except Exception as e:
            logger.warning(f"Assistant connection test failed: {e}")
            return False

    async def _post(self, payload: dict[str, Any], timeout_ms: int) -> httpx.Response:
        """POST the payload as JSON."""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        timeout = httpx.Timeout(timeout_ms / 1000)

        if self._http_client is not None:
            return await self._http_client.post(
                self.webhook_url, json=payload, headers=headers, timeout=timeout
            )

        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(self.webhook_url, json=payload, headers=headers)

    def _parse_reply(self, response: httpx.Response) -> str:
        """Extract the reply text from a 2xx response."""
        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Assistant response is not valid JSON: {response.text[:200]}") from e

        if not isinstance(data, dict):
            raise ProtocolError("Assistant response is not a JSON object")

        try:
            reply = AssistantReply.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"Unexpected assistant response format: {e}") from e

        if reply.error:
            raise ProtocolError(f"n8n workflow error: {reply.error}")

        if not reply.output or not reply.output.strip():
            logger.warning(f"No output in assistant response: {data}")
            raise ProtocolError("No AI response received from n8n workflow")

        return reply.output


# Global transport instance (lazy initialization)
_transport: AssistantTransport | None = None


def get_transport() -> AssistantTransport:
    """Get or create the global assistant transport."""
    global _transport
    if _transport is None:
        _transport = AssistantTransport()
    return _transport
