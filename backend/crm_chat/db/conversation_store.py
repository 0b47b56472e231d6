"""ConversationStore - storage layer for chat conversation turns.

Every query is scoped by user_id; a user never sees another user's rows.
"""

import logging
import uuid
from datetime import UTC, datetime

import aiosqlite

from crm_chat.chat.errors import StorageError
from crm_chat.db.database import get_db
from crm_chat.models.conversation import ConversationTurn, Sender

logger = logging.getLogger(__name__)


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> datetime:
    """Get the current UTC timestamp."""
    return datetime.now(UTC)


def _row_to_turn(row: aiosqlite.Row) -> ConversationTurn:
    """Convert a database row to a ConversationTurn model."""
    return ConversationTurn(
        id=row["id"],
        user_id=row["user_id"],
        session_id=row["session_id"],
        sender=Sender.from_wire(row["sender"]),
        message=row["message"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


async def _connection() -> aiosqlite.Connection:
    try:
        return await get_db()
    except RuntimeError as e:
        raise StorageError(str(e)) from e


class ConversationStore:
    """Storage abstraction for conversation turns."""

    async def insert_turn(self, turn: ConversationTurn) -> ConversationTurn:
        """Persist a turn, generating its id and created_at.

        Raises:
            StorageError: If the write fails.
        """
        db = await _connection()
        persisted = turn.model_copy(update={"id": _generate_id(), "created_at": _now()})

        try:
            await db.execute(
                """
                INSERT INTO conversations (id, user_id, session_id, sender, message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    persisted.id,
                    persisted.user_id,
                    persisted.session_id,
                    persisted.sender.wire_value,
                    persisted.message,
                    persisted.created_at.isoformat(),
                ),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to save {turn.sender.value} message: {e}") from e

        logger.debug(
            f"Saved {persisted.sender.value} turn {persisted.id} to session {persisted.session_id}"
        )
        return persisted

    async def fetch_turns(self, user_id: str, session_id: str) -> list[ConversationTurn]:
        """Get all turns of a session, oldest first."""
        db = await _connection()

        try:
            cursor = await db.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ? AND session_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                [user_id, session_id],
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to fetch messages for session {session_id}: {e}") from e

        return [_row_to_turn(row) for row in rows]

    async def fetch_user_turns(self, user_id: str) -> list[ConversationTurn]:
        """Get every turn owned by a user, oldest first."""
        db = await _connection()

        try:
            cursor = await db.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                [user_id],
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to fetch conversation list: {e}") from e

        return [_row_to_turn(row) for row in rows]

    async def fetch_first_user_turn(
        self, user_id: str, session_id: str
    ) -> ConversationTurn | None:
        """Get the opening user message of a session."""
        db = await _connection()

        try:
            cursor = await db.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ? AND session_id = ? AND sender = 'user'
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1
                """,
                [user_id, session_id],
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to fetch first message of session {session_id}: {e}") from e

        if not row:
            return None
        return _row_to_turn(row)

    async def delete_session_turns(self, user_id: str, session_id: str) -> int:
        """Delete every turn of a session. Returns the number of rows removed."""
        db = await _connection()

        try:
            cursor = await db.execute(
                "DELETE FROM conversations WHERE user_id = ? AND session_id = ?",
                [user_id, session_id],
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to delete session {session_id}: {e}") from e

        logger.info(f"Deleted {cursor.rowcount} turn(s) of session {session_id}")
        return cursor.rowcount


# Global store instance
conversation_store = ConversationStore()
