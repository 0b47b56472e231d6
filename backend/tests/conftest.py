"""Pytest configuration and fixtures."""

import json
import os
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from crm_chat.chat.manager import ChatSurfaceManager, get_surface_manager
from crm_chat.chat.orchestrator import ConversationOrchestrator
from crm_chat.db.database import close_database, init_database
from crm_chat.llm.assistant import AssistantTransport
from crm_chat.main import app
from crm_chat.models.conversation import UserIdentity

WEBHOOK_URL = "https://assistant.test/webhook/chat"

Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]


class FakeWebhook:
    """Scripted stand-in for the assistant webhook, served via httpx.MockTransport.

    Queued responses are used in order; once the queue is empty the webhook
    echoes the message back as {"output": "Echo: <message>"}.
    """

    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []
        self._queue: list[httpx.Response | Exception | Handler] = []

    @property
    def call_count(self) -> int:
        return len(self.payloads)

    def reply(self, output: str) -> None:
        self._queue.append(httpx.Response(200, json={"output": output}))

    def respond(self, status_code: int, **kwargs: Any) -> None:
        self._queue.append(httpx.Response(status_code, **kwargs))

    def raise_error(self, error: Exception) -> None:
        self._queue.append(error)

    def handle_with(self, handler: Handler) -> None:
        self._queue.append(handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.payloads.append(payload)

        if not self._queue:
            return httpx.Response(200, json={"output": f"Echo: {payload['message']}"})

        item = self._queue.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return await item(request)


@pytest.fixture(autouse=True)
async def setup_test_db():
    """Set up a test database for each test."""
    # Create a temporary database file
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    # Initialize the database
    await init_database(db_path)

    yield

    # Clean up
    await close_database()
    os.unlink(db_path)


@pytest.fixture
def webhook() -> FakeWebhook:
    """Scripted assistant webhook."""
    return FakeWebhook()


@pytest.fixture
async def http_client(webhook: FakeWebhook) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client routed to the fake webhook."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(webhook.handler)) as client:
        yield client


@pytest.fixture
def transport(http_client: httpx.AsyncClient) -> AssistantTransport:
    """Assistant transport talking to the fake webhook."""
    return AssistantTransport(webhook_url=WEBHOOK_URL, http_client=http_client)


@pytest.fixture
def identity() -> UserIdentity:
    """Signed-in broker."""
    return UserIdentity(user_id="user-1", user_email="broker@example.com")


@pytest.fixture
def orchestrator(
    identity: UserIdentity, transport: AssistantTransport
) -> ConversationOrchestrator:
    """Orchestrator wired to the test database and the fake webhook."""
    return ConversationOrchestrator(identity, transport=transport)


@pytest.fixture
async def surface_manager(
    transport: AssistantTransport,
) -> AsyncGenerator[ChatSurfaceManager, None]:
    """Surface manager using the fake webhook."""
    manager = ChatSurfaceManager(transport=transport)
    yield manager
    await manager.shutdown()


@pytest.fixture
async def client(surface_manager: ChatSurfaceManager) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    app.dependency_overrides[get_surface_manager] = lambda: surface_manager
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
