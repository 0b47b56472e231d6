"""Tests for the ConversationOrchestrator turn-taking loop."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from crm_chat.chat.errors import (
    AssistantTimeoutError,
    RequestValidationError,
    StorageError,
    TransportError,
)
from crm_chat.chat.orchestrator import ConversationOrchestrator, build_history
from crm_chat.db.conversation_store import ConversationStore, conversation_store
from crm_chat.models.conversation import (
    AssistantContext,
    ChatStatus,
    Sender,
    SubmitOutcome,
)


class FailingStore(ConversationStore):
    """ConversationStore that rejects every write."""

    def __init__(self):
        self.attempts = 0

    async def insert_turn(self, turn):
        self.attempts += 1
        raise StorageError("insert rejected")


def _gate(webhook, reply: str = "done") -> asyncio.Event:
    """Hold the next webhook call until the returned event is set."""
    release = asyncio.Event()

    async def gated(request: httpx.Request) -> httpx.Response:
        await release.wait()
        return httpx.Response(200, json={"output": reply})

    webhook.handle_with(gated)
    return release


async def _wait_until_busy(orchestrator: ConversationOrchestrator) -> None:
    for _ in range(100):
        if orchestrator.is_busy:
            return
        await asyncio.sleep(0)
    raise AssertionError("orchestrator never became busy")


class TestBuildHistory:
    """Tests for build_history."""

    def test_empty(self):
        assert build_history([]) == []

    async def test_maps_assistant_to_ai(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("Hi")

        history = build_history(orchestrator.state.turns)

        assert [h.sender for h in history] == ["user", "ai"]


class TestOpen:
    """Tests for opening a chat surface."""

    async def test_creates_session_for_new_user(self, orchestrator):
        state = await orchestrator.open()

        assert state.session_id is not None
        assert state.turns == []
        assert state.status == ChatStatus.IDLE

    async def test_resumes_most_recent_session(self, orchestrator, identity, transport):
        await orchestrator.open()
        await orchestrator.submit("Hello")
        await orchestrator.wait_for_persistence()
        first_session = orchestrator.state.session_id

        reopened = ConversationOrchestrator(identity, transport=transport)
        state = await reopened.open()

        assert state.session_id == first_session
        assert [t.message for t in state.turns] == ["Hello", "Echo: Hello"]


class TestSubmit:
    """Tests for submit."""

    async def test_successful_exchange(self, orchestrator, webhook):
        await orchestrator.open()
        webhook.reply("FHA rates are...")

        outcome = await orchestrator.submit("What's the rate on FHA loans?")

        state = orchestrator.state
        assert outcome == SubmitOutcome.SUCCESS
        assert state.status == ChatStatus.SUCCESS
        assert state.is_busy is False
        assert state.last_error is None
        assert [(t.sender, t.message) for t in state.turns] == [
            (Sender.USER, "What's the rate on FHA loans?"),
            (Sender.ASSISTANT, "FHA rates are..."),
        ]
        assert orchestrator.summaries[0].session_id == state.session_id
        assert orchestrator.summaries[0].preview_message == "FHA rates are..."

    async def test_blank_message_rejected(self, orchestrator, webhook):
        await orchestrator.open()

        outcome = await orchestrator.submit("   ")

        assert outcome == SubmitOutcome.REJECTED
        assert orchestrator.state.turns == []
        assert orchestrator.state.status == ChatStatus.IDLE
        assert webhook.call_count == 0

    async def test_rejected_without_session(self, orchestrator, webhook):
        outcome = await orchestrator.submit("Hello")

        assert outcome == SubmitOutcome.REJECTED
        assert webhook.call_count == 0

    async def test_request_payload(self, orchestrator, webhook, identity):
        await orchestrator.open()
        context = AssistantContext(selected_client_id="client-7", selected_lender_ids=["l-1"])

        await orchestrator.submit("Summarize client's financial profile", context=context)

        payload = webhook.payloads[0]
        assert payload["userId"] == identity.user_id
        assert payload["userEmail"] == identity.user_email
        assert payload["sessionId"] == orchestrator.state.session_id
        assert payload["history"] == []
        assert payload["context"] == {"selectedClientId": "client-7", "selectedLenderIds": ["l-1"]}

    async def test_history_excludes_current_message(self, orchestrator, webhook):
        await orchestrator.open()
        await orchestrator.submit("first")

        await orchestrator.submit("second")

        assert webhook.payloads[1]["history"] == [
            {"sender": "user", "message": "first"},
            {"sender": "ai", "message": "Echo: first"},
        ]
        assert webhook.payloads[1]["message"] == "second"

    async def test_history_bounded_to_last_ten(self, orchestrator, webhook):
        await orchestrator.open()
        for i in range(6):
            await orchestrator.submit(f"q{i}")

        await orchestrator.submit("q6")

        history = webhook.payloads[6]["history"]
        expected = [
            {"sender": t.sender.wire_value, "message": t.message}
            for t in orchestrator.state.turns[2:12]
        ]
        assert len(history) == 10
        assert history == expected
        assert history[0] == {"sender": "user", "message": "q1"}

    async def test_transport_failure(self, orchestrator, webhook):
        await orchestrator.open()
        webhook.respond(500, text="internal error")

        outcome = await orchestrator.submit("Hello")
        await orchestrator.wait_for_persistence()

        state = orchestrator.state
        assert outcome == SubmitOutcome.FAILED
        assert state.status == ChatStatus.FAILED
        assert state.is_busy is False
        assert isinstance(state.last_error, TransportError)
        assert state.last_error.status_code == 500
        assert state.last_error.body == "internal error"
        assert [t.message for t in state.turns] == ["Hello"]
        assert await conversation_store.fetch_user_turns("user-1") == []
        assert orchestrator.summaries == []

    async def test_timeout(self, identity, transport, webhook):
        orchestrator = ConversationOrchestrator(identity, transport=transport, timeout_ms=50)
        await orchestrator.open()

        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"output": "too late"})

        webhook.handle_with(slow)

        outcome = await orchestrator.submit("Hello")

        assert outcome == SubmitOutcome.FAILED
        assert isinstance(orchestrator.state.last_error, AssistantTimeoutError)
        assert "50ms" in str(orchestrator.state.last_error)
        assert all(t.sender == Sender.USER for t in orchestrator.state.turns)

    async def test_retry_after_failure(self, orchestrator, webhook):
        await orchestrator.open()
        webhook.respond(503, text="unavailable")
        await orchestrator.submit("Hello")

        outcome = await orchestrator.submit("Hello")

        state = orchestrator.state
        assert outcome == SubmitOutcome.SUCCESS
        assert state.last_error is None
        assert [t.sender for t in state.turns] == [Sender.USER, Sender.USER, Sender.ASSISTANT]

    async def test_busy_rejects_second_submit(self, orchestrator, webhook):
        await orchestrator.open()
        release = _gate(webhook)

        first = asyncio.create_task(orchestrator.submit("first"))
        await _wait_until_busy(orchestrator)
        second = await orchestrator.submit("second")
        release.set()

        assert second == SubmitOutcome.REJECTED
        assert await first == SubmitOutcome.SUCCESS
        assert webhook.call_count == 1
        assert [t.message for t in orchestrator.state.turns] == ["first", "done"]

    async def test_status_sending_while_in_flight(self, orchestrator, webhook):
        await orchestrator.open()
        release = _gate(webhook)

        task = asyncio.create_task(orchestrator.submit("Hello"))
        await _wait_until_busy(orchestrator)

        assert orchestrator.state.status == ChatStatus.SENDING
        assert [t.message for t in orchestrator.state.turns] == ["Hello"]

        release.set()
        await task

    async def test_message_is_trimmed(self, orchestrator, webhook):
        await orchestrator.open()

        await orchestrator.submit("  What's the rate on FHA loans?\n")
        await orchestrator.wait_for_persistence()

        assert webhook.payloads[0]["message"] == "What's the rate on FHA loans?"
        assert orchestrator.state.turns[0].message == "What's the rate on FHA loans?"
        stored = await conversation_store.fetch_turns("user-1", orchestrator.state.session_id)
        assert stored[0].message == "What's the rate on FHA loans?"

    async def test_malformed_context_fails_without_locking(self, orchestrator, webhook):
        await orchestrator.open()

        outcome = await orchestrator.submit("hi", context={"selectedLenderIds": "not-a-list"})

        state = orchestrator.state
        assert outcome == SubmitOutcome.FAILED
        assert isinstance(state.last_error, RequestValidationError)
        assert state.is_busy is False
        assert state.status == ChatStatus.FAILED
        assert state.turns == []
        assert webhook.call_count == 0

        assert await orchestrator.submit("hi") == SubmitOutcome.SUCCESS

    async def test_context_as_dict(self, orchestrator, webhook):
        await orchestrator.open()

        await orchestrator.submit("hi", context={"selectedClientId": "client-3"})

        assert webhook.payloads[0]["context"] == {"selectedClientId": "client-3"}

    async def test_cancelled_send_releases_surface(self, orchestrator, webhook):
        await orchestrator.open()
        _gate(webhook)

        task = asyncio.create_task(orchestrator.submit("Hello"))
        await _wait_until_busy(orchestrator)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.is_busy is False
        assert orchestrator.state.status == ChatStatus.IDLE

    async def test_activity_timestamps_are_utc(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("Hello")

        assert orchestrator.created_at.utcoffset() == timedelta(0)
        assert orchestrator.last_activity.utcoffset() == timedelta(0)
        assert orchestrator.last_activity >= orchestrator.created_at

    async def test_callbacks(self, identity, transport, webhook):
        replies: list[str] = []
        errors: list[Exception] = []
        orchestrator = ConversationOrchestrator(
            identity, transport=transport, on_success=replies.append, on_error=errors.append
        )
        await orchestrator.open()

        await orchestrator.submit("Hello")
        webhook.respond(500, text="boom")
        await orchestrator.submit("Again")

        assert replies == ["Echo: Hello"]
        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)


class TestPersistence:
    """Tests for writing turns to storage."""

    async def test_reload_order_matches_exchange(self, orchestrator):
        await orchestrator.open()
        for message in ["one", "two", "three"]:
            await orchestrator.submit(message)
        await orchestrator.wait_for_persistence()

        turns = await conversation_store.fetch_turns("user-1", orchestrator.state.session_id)

        assert len(turns) == 6
        assert [t.sender for t in turns] == [Sender.USER, Sender.ASSISTANT] * 3
        assert [t.message for t in turns] == [t.message for t in orchestrator.state.turns]
        assert all(t.id is not None for t in turns)

    async def test_storage_failure_does_not_break_conversation(self, identity, transport):
        store = FailingStore()
        orchestrator = ConversationOrchestrator(identity, transport=transport, store=store)
        orchestrator.start_new_session()

        outcome = await orchestrator.submit("Hello")
        await orchestrator.wait_for_persistence()

        assert outcome == SubmitOutcome.SUCCESS
        assert store.attempts == 2
        assert len(orchestrator.state.turns) == 2
        assert orchestrator.state.is_busy is False
        assert orchestrator.state.status == ChatStatus.SUCCESS
        assert orchestrator.state.last_error is None

    async def test_auto_save_disabled(self, identity, transport):
        orchestrator = ConversationOrchestrator(identity, transport=transport, auto_save=False)
        await orchestrator.open()

        await orchestrator.submit("Hello")
        await orchestrator.wait_for_persistence()

        assert len(orchestrator.state.turns) == 2
        assert await conversation_store.fetch_user_turns("user-1") == []


class TestSessionSwitching:
    """Tests for selecting, creating and deleting sessions."""

    async def test_select_same_session_is_noop(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("Hello")
        await orchestrator.wait_for_persistence()
        first = orchestrator.state.session_id
        orchestrator.start_new_session()

        assert await orchestrator.select_session(first) is True
        turns = orchestrator.state.turns
        assert await orchestrator.select_session(first) is False
        assert orchestrator.state.turns is turns

    async def test_start_new_session(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("Hello")
        previous = orchestrator.state.session_id

        new_id = orchestrator.start_new_session()

        assert new_id != previous
        assert orchestrator.state.session_id == new_id
        assert orchestrator.state.turns == []

    async def test_delete_other_session_leaves_active_untouched(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("in A")
        session_a = orchestrator.state.session_id
        session_b = orchestrator.start_new_session()
        await orchestrator.submit("in B")
        await orchestrator.wait_for_persistence()
        before = list(orchestrator.state.turns)

        await orchestrator.delete_session(session_a)

        assert orchestrator.state.session_id == session_b
        assert orchestrator.state.turns == before
        assert [s.session_id for s in orchestrator.summaries] == [session_b]

    async def test_delete_only_session_creates_new_one(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("Hello")
        await orchestrator.wait_for_persistence()
        deleted = orchestrator.state.session_id

        count = await orchestrator.delete_session(deleted)

        assert count == 2
        assert orchestrator.state.session_id is not None
        assert orchestrator.state.session_id != deleted
        assert orchestrator.state.turns == []
        assert orchestrator.summaries == []

    async def test_delete_active_moves_to_next_recent(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("older")
        older = orchestrator.state.session_id
        orchestrator.start_new_session()
        await orchestrator.submit("newer")
        await orchestrator.wait_for_persistence()

        await orchestrator.delete_session(orchestrator.state.session_id)

        assert orchestrator.state.session_id == older
        assert [t.message for t in orchestrator.state.turns] == ["older", "Echo: older"]

    async def test_switch_away_and_back_while_sending(self, orchestrator, webhook):
        await orchestrator.open()
        await orchestrator.submit("first")
        original = orchestrator.state.session_id
        release = _gate(webhook, reply="late reply")

        task = asyncio.create_task(orchestrator.submit("question"))
        await _wait_until_busy(orchestrator)
        orchestrator.start_new_session()
        assert await orchestrator.select_session(original) is True

        assert [t.message for t in orchestrator.state.turns] == [
            "first",
            "Echo: first",
            "question",
        ]
        assert orchestrator.state.status == ChatStatus.SENDING

        release.set()
        assert await task == SubmitOutcome.SUCCESS
        await orchestrator.wait_for_persistence()

        stored = await conversation_store.fetch_turns("user-1", original)
        expected = [(t.sender, t.message) for t in stored]
        assert [(t.sender, t.message) for t in orchestrator.state.turns] == expected
        assert expected[-2:] == [(Sender.USER, "question"), (Sender.ASSISTANT, "late reply")]

        await orchestrator.submit("follow up")
        assert webhook.payloads[-1]["history"][-2:] == [
            {"sender": "user", "message": "question"},
            {"sender": "ai", "message": "late reply"},
        ]

    async def test_select_sees_turns_still_being_written(self, orchestrator):
        await orchestrator.open()
        original = orchestrator.state.session_id
        await orchestrator.submit("Hello")
        orchestrator.start_new_session()

        await orchestrator.select_session(original)

        assert [t.message for t in orchestrator.state.turns] == ["Hello", "Echo: Hello"]

    async def test_switch_while_sending(self, orchestrator, webhook):
        await orchestrator.open()
        original = orchestrator.state.session_id
        release = _gate(webhook, reply="late reply")

        task = asyncio.create_task(orchestrator.submit("question"))
        await _wait_until_busy(orchestrator)
        new_id = orchestrator.start_new_session()

        assert orchestrator.is_busy
        assert await orchestrator.submit("blocked") == SubmitOutcome.REJECTED

        release.set()
        assert await task == SubmitOutcome.SUCCESS
        await orchestrator.wait_for_persistence()

        assert orchestrator.state.session_id == new_id
        assert orchestrator.state.turns == []
        assert orchestrator.is_busy is False
        stored = await conversation_store.fetch_turns("user-1", original)
        assert [t.message for t in stored] == ["question", "late reply"]
        assert orchestrator.summaries[0].session_id == original


class TestTranscript:
    """Tests for transcript export."""

    async def test_format(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("Hello")

        text = orchestrator.transcript()

        blocks = text.split("\n\n")
        assert len(blocks) == 2
        assert blocks[0].startswith("You (")
        assert blocks[0].endswith("):\nHello")
        assert blocks[1].startswith("AI (")
        assert blocks[1].endswith("):\nEcho: Hello")

    async def test_empty(self, orchestrator):
        assert orchestrator.transcript() == ""


class TestReset:
    """Tests for closing a surface."""

    async def test_close_flushes_and_resets(self, orchestrator):
        await orchestrator.open()
        await orchestrator.submit("Hello")

        await orchestrator.close()

        assert orchestrator.state.session_id is None
        assert orchestrator.state.turns == []
        assert len(await conversation_store.fetch_user_turns("user-1")) == 2
