"""Database module."""

from crm_chat.db.conversation_store import ConversationStore, conversation_store
from crm_chat.db.database import close_database, get_db, init_database

__all__ = [
    "get_db",
    "init_database",
    "close_database",
    "conversation_store",
    "ConversationStore",
]
