"""ConversationOrchestrator runs the turn-taking loop of one chat surface."""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from crm_chat.chat.errors import ChatError, RequestValidationError, StorageError
from crm_chat.chat.sessions import SessionManager
from crm_chat.db.conversation_store import ConversationStore, conversation_store
from crm_chat.llm.assistant import ASSISTANT_TIMEOUT_MS, AssistantTransport, get_transport
from crm_chat.models.conversation import (
    ActiveSession,
    AssistantContext,
    AssistantRequest,
    ChatStatus,
    ConversationTurn,
    HistoryEntry,
    Sender,
    SessionSummary,
    SubmitOutcome,
    UserIdentity,
)

logger = logging.getLogger(__name__)

# Most recent turns sent to the assistant as context
HISTORY_LIMIT = 10


def _now() -> datetime:
    return datetime.now(UTC)


def build_history(
    turns: Sequence[ConversationTurn], limit: int = HISTORY_LIMIT
) -> list[HistoryEntry]:
    """The last `limit` turns, oldest first, in webhook form."""
    recent = turns[-limit:] if limit > 0 else []
    return [HistoryEntry(sender=t.sender.wire_value, message=t.message) for t in recent]


class ConversationOrchestrator:
    """Turn-taking state machine for one chat surface.

    States: idle -> sending -> success | failed; failed -> sending on resubmit.

    The in-memory ActiveSession is what the surface renders. Storage is written
    after the assistant replies and never rolls the memory state back:
    a failed write is logged and the conversation carries on.
    """

    def __init__(
        self,
        identity: UserIdentity,
        transport: AssistantTransport | None = None,
        store: ConversationStore | None = None,
        sessions: SessionManager | None = None,
        timeout_ms: int = ASSISTANT_TIMEOUT_MS,
        history_limit: int = HISTORY_LIMIT,
        auto_save: bool = True,
        on_success: Callable[[str], Any] | None = None,
        on_error: Callable[[Exception], Any] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            identity: User the surface acts for.
            transport: Assistant transport (global instance if not given).
            store: Conversation store (global instance if not given).
            sessions: Session manager (one is created over `store` if not given).
            timeout_ms: Deadline for each assistant call.
            history_limit: Number of prior turns sent with each message.
            auto_save: Persist turns after each successful exchange.
            on_success: Called with the reply text after a successful exchange.
            on_error: Called with the error after a failed exchange.
        """
        self.identity = identity
        self._transport = transport or get_transport()
        self._store = store or conversation_store
        self.sessions = sessions or SessionManager(identity.user_id, store=self._store)
        self.timeout_ms = timeout_ms
        self.history_limit = history_limit
        self.auto_save = auto_save
        self._on_success = on_success
        self._on_error = on_error

        self.state = ActiveSession()
        self.created_at = _now()
        self.last_activity = self.created_at

        self._write_lock = asyncio.Lock()
        self._pending_writes: set[asyncio.Task] = set()
        # User turn of the send in flight; not in storage until the reply arrives
        self._unanswered: ConversationTurn | None = None

    @property
    def is_busy(self) -> bool:
        """Whether an assistant call is in flight."""
        return self.state.is_busy

    @property
    def summaries(self) -> list[SessionSummary]:
        """Cached session list, most recent first."""
        return self.sessions.summaries

    async def open(self) -> ActiveSession:
        """Load the session list and activate a session to write into."""
        await self.sessions.list_sessions()
        turns = await self.sessions.ensure_active_session()
        self.state = ActiveSession(session_id=self.sessions.active_session_id, turns=turns)
        logger.info(
            f"Opened chat for user {self.identity.user_id} on session {self.state.session_id}"
        )
        return self.state

    async def submit(
        self, text: str, context: AssistantContext | dict[str, Any] | None = None
    ) -> SubmitOutcome:
        """Send a user message and wait for the assistant's reply.

        Assistant errors never raise: they end up on state.last_error. A request
        that cannot be built (e.g. a malformed context) fails before anything is
        appended or sent.

        Args:
            text: The message the user typed.
            context: CRM records selected alongside the chat (model or camelCase dict).

        Returns:
            REJECTED if nothing was sent, otherwise SUCCESS or FAILED.
        """
        session_id = self.state.session_id

        if not text or not text.strip():
            logger.debug("Ignoring blank message")
            return SubmitOutcome.REJECTED
        if session_id is None:
            logger.warning("Ignoring message: no active session")
            return SubmitOutcome.REJECTED
        if self.state.is_busy:
            logger.warning(f"Ignoring message: session {session_id} is busy")
            return SubmitOutcome.REJECTED

        self.last_activity = _now()
        message = text.strip()
        history = build_history(self.state.turns, self.history_limit)

        try:
            request = self._build_request(session_id, message, history, context)
        except RequestValidationError as e:
            logger.warning(f"Not sending message in session {session_id}: {e}")
            self.state.last_error = e
            self.state.status = ChatStatus.FAILED
            if self._on_error:
                self._on_error(e)
            return SubmitOutcome.FAILED

        user_turn = ConversationTurn(
            user_id=self.identity.user_id,
            session_id=session_id,
            sender=Sender.USER,
            message=message,
            created_at=_now(),
        )
        self.state.turns.append(user_turn)
        self.state.last_error = None
        self.state.is_busy = True
        self.state.status = ChatStatus.SENDING
        self._unanswered = user_turn

        try:
            reply = await self._transport.send(request, timeout_ms=self.timeout_ms)
        except ChatError as e:
            logger.error(f"Error sending message in session {session_id}: {e}")
            self._finish(session_id, ChatStatus.FAILED, error=e)
            if self._on_error:
                self._on_error(e)
            return SubmitOutcome.FAILED
        except BaseException:
            self._finish(session_id, ChatStatus.IDLE)
            raise

        assistant_turn = ConversationTurn(
            user_id=self.identity.user_id,
            session_id=session_id,
            sender=Sender.ASSISTANT,
            message=reply,
            created_at=_now(),
        )
        if self.state.session_id == session_id:
            self.state.turns.append(assistant_turn)
        else:
            logger.info(
                f"Reply for session {session_id} arrived after switching to "
                f"{self.state.session_id}; kept in storage only"
            )

        if self.auto_save:
            self._schedule_persist(user_turn, assistant_turn)
        self.sessions.record_turn(session_id, reply, assistant_turn.created_at)

        self._finish(session_id, ChatStatus.SUCCESS)
        if self._on_success:
            self._on_success(reply)
        return SubmitOutcome.SUCCESS

    async def select_session(self, session_id: str) -> bool:
        """Switch the surface to another session.

        A send in flight keeps running against its original session.

        Returns:
            False if the session was already active (nothing fetched).
        """
        # Turns of a finished exchange may still be on their way to storage
        await self.wait_for_persistence()
        turns = await self.sessions.select_session(session_id)
        if turns is None:
            return False

        self._replace_state(session_id, turns)
        return True

    def start_new_session(self) -> str:
        """Start an empty conversation and make it active."""
        session_id = self.sessions.create_session()
        self._replace_state(session_id, [])
        return session_id

    async def delete_session(self, session_id: str) -> int:
        """Delete a session; if it was on screen, move to another one.

        Raises:
            StorageError: If the delete fails (state is left untouched).
        """
        count = await self.sessions.delete_session(session_id)

        if session_id == self.state.session_id:
            turns = await self.sessions.ensure_active_session()
            self._replace_state(self.sessions.active_session_id, turns)
            logger.info(
                f"Deleted active session {session_id}; now on {self.state.session_id}"
            )

        return count

    async def refresh_sessions(self) -> list[SessionSummary]:
        """Refetch the session list from storage."""
        return await self.sessions.list_sessions()

    async def wait_for_persistence(self) -> None:
        """Wait until background writes started so far have finished."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    def transcript(self) -> str:
        """Plain-text export of the turns on screen."""
        blocks = []
        for turn in self.state.turns:
            sender = "You" if turn.sender == Sender.USER else "AI"
            timestamp = turn.created_at.strftime("%Y-%m-%d %H:%M:%S")
            blocks.append(f"{sender} ({timestamp}):\n{turn.message}")
        return "\n\n".join(blocks)

    def reset(self) -> None:
        """Forget the active session (surface unmounted)."""
        self.state = ActiveSession()
        self.sessions.active_session_id = None

    async def close(self) -> None:
        """Flush pending writes and reset the surface."""
        await self.wait_for_persistence()
        self.reset()

    def get_info(self) -> dict[str, Any]:
        """Get surface information."""
        error = self.state.last_error
        return {
            "user_id": self.identity.user_id,
            "session_id": self.state.session_id,
            "status": self.state.status.value,
            "is_busy": self.state.is_busy,
            "turn_count": len(self.state.turns),
            "last_error": error.to_dict() if isinstance(error, ChatError) else None,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    def _build_request(
        self,
        session_id: str,
        message: str,
        history: list[HistoryEntry],
        context: AssistantContext | dict[str, Any] | None,
    ) -> AssistantRequest:
        try:
            return AssistantRequest(
                user_id=self.identity.user_id,
                user_email=self.identity.user_email,
                session_id=session_id,
                message=message,
                history=history,
                context=context or AssistantContext(),
            )
        except ValidationError as e:
            raise RequestValidationError(f"Invalid assistant request: {e}") from e

    def _replace_state(self, session_id: str | None, turns: list[ConversationTurn]) -> None:
        """Show another session; the busy flag belongs to the surface and carries over.

        Coming back to the session of the send in flight restores its unanswered
        user turn, which storage does not hold yet.
        """
        busy = self.state.is_busy
        pending = self._unanswered
        if pending is not None and pending.session_id == session_id and pending not in turns:
            turns = [*turns, pending]
        self.state = ActiveSession(
            session_id=session_id,
            turns=turns,
            is_busy=busy,
            status=ChatStatus.SENDING if busy else ChatStatus.IDLE,
        )

    def _finish(
        self, session_id: str, status: ChatStatus, error: Exception | None = None
    ) -> None:
        self.state.is_busy = False
        self._unanswered = None
        if self.state.session_id == session_id:
            self.state.status = status
            self.state.last_error = error
        else:
            self.state.status = ChatStatus.IDLE

    def _schedule_persist(self, *turns: ConversationTurn) -> None:
        task = asyncio.create_task(self._persist_turns(turns))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist_turns(self, turns: Sequence[ConversationTurn]) -> None:
        """Write turns in order. Each write is independent; failures are logged only."""
        async with self._write_lock:
            for turn in turns:
                try:
                    await self._store.insert_turn(turn)
                except StorageError:
                    logger.exception(
                        f"Failed to save {turn.sender.value} message to session "
                        f"{turn.session_id}; conversation continues"
                    )
