"""SessionManager tracks a user's conversation sessions and the active one."""

import logging
import uuid
from datetime import datetime

from crm_chat.chat.summaries import apply_turn, derive_summaries
from crm_chat.db.conversation_store import ConversationStore, conversation_store
from crm_chat.models.conversation import ConversationTurn, SessionSummary

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns the session list and the active session pointer for one chat surface.

    A session exists in storage only once its first turn is persisted; a
    freshly created session id is usable immediately.
    """

    def __init__(self, user_id: str, store: ConversationStore | None = None):
        self.user_id = user_id
        self._store = store or conversation_store
        self.summaries: list[SessionSummary] = []
        self.active_session_id: str | None = None

    async def list_sessions(self) -> list[SessionSummary]:
        """Fetch the user's sessions, most recently active first.

        Raises:
            StorageError: If the store is unavailable.
        """
        turns = await self._store.fetch_user_turns(self.user_id)
        self.summaries = derive_summaries(turns)
        logger.debug(f"Loaded {len(self.summaries)} session(s) for user {self.user_id}")
        return list(self.summaries)

    def create_session(self) -> str:
        """Start a new session and make it active. Nothing is written yet."""
        session_id = str(uuid.uuid4())
        self.active_session_id = session_id
        logger.info(f"Started new conversation session {session_id}")
        return session_id

    async def select_session(self, session_id: str) -> list[ConversationTurn] | None:
        """Make a session active and fetch its turns.

        Returns:
            The session's turns, or None if it was already active (no fetch).
        """
        if session_id == self.active_session_id:
            return None

        turns = await self._store.fetch_turns(self.user_id, session_id)
        self.active_session_id = session_id
        logger.info(f"Selected session {session_id} ({len(turns)} turn(s))")
        return turns

    async def delete_session(self, session_id: str) -> int:
        """Delete every turn of a session.

        If the session was active the pointer is cleared; the caller activates
        another session with ensure_active_session().

        Returns:
            Number of turns deleted.
        """
        count = await self._store.delete_session_turns(self.user_id, session_id)
        self.summaries = [s for s in self.summaries if s.session_id != session_id]
        if self.active_session_id == session_id:
            self.active_session_id = None
        return count

    async def ensure_active_session(self) -> list[ConversationTurn]:
        """Activate the most recent session, or a new one if there are none.

        Uses the cached list; call list_sessions() first to refresh it.

        Returns:
            The turns of the session that became active.
        """
        if not self.summaries:
            self.create_session()
            return []

        session_id = self.summaries[0].session_id
        turns = await self._store.fetch_turns(self.user_id, session_id)
        self.active_session_id = session_id
        return turns

    def record_turn(self, session_id: str, message: str, at: datetime) -> None:
        """Reflect a newly appended turn in the cached list."""
        self.summaries = apply_turn(self.summaries, session_id, message, at)

    async def first_user_message(self, session_id: str) -> str | None:
        """Opening user message of a session, used as its title."""
        turn = await self._store.fetch_first_user_turn(self.user_id, session_id)
        return turn.message if turn else None
