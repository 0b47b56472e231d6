"""Session list derivation from the flat, append-only turn log."""

from collections.abc import Iterable
from datetime import datetime

from crm_chat.models.conversation import ConversationTurn, SessionSummary


def sort_summaries(summaries: Iterable[SessionSummary]) -> list[SessionSummary]:
    """Most recently active session first."""
    return sorted(summaries, key=lambda s: s.last_message_at, reverse=True)


def derive_summaries(turns: Iterable[ConversationTurn]) -> list[SessionSummary]:
    """Group turns by session and keep the latest turn of each.

    Turns are expected oldest-first; on equal timestamps the later turn wins.

    Args:
        turns: Turns from any number of sessions.

    Returns:
        One summary per session, sorted by last_message_at descending.
    """
    latest: dict[str, ConversationTurn] = {}
    for turn in turns:
        current = latest.get(turn.session_id)
        if current is None or turn.created_at >= current.created_at:
            latest[turn.session_id] = turn

    return sort_summaries(
        SessionSummary(
            session_id=turn.session_id,
            last_message_at=turn.created_at,
            preview_message=turn.message,
        )
        for turn in latest.values()
    )


def apply_turn(
    summaries: list[SessionSummary],
    session_id: str,
    message: str,
    at: datetime,
) -> list[SessionSummary]:
    """Patch a summary list with a newly appended turn, without a refetch."""
    patched = [s for s in summaries if s.session_id != session_id]
    patched.append(
        SessionSummary(session_id=session_id, last_message_at=at, preview_message=message)
    )
    return sort_summaries(patched)
