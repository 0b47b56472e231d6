"""ChatSurfaceManager handles the lifecycle of open chat surfaces."""

import asyncio
import logging
import os
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from crm_chat.chat.orchestrator import ConversationOrchestrator
from crm_chat.db.conversation_store import ConversationStore
from crm_chat.llm.assistant import AssistantTransport
from crm_chat.models.conversation import UserIdentity

logger = logging.getLogger(__name__)

SURFACE_TIMEOUT_MINUTES = int(os.getenv("CHAT_SURFACE_TIMEOUT_MINUTES", "30"))
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CHAT_SURFACE_CLEANUP_SECONDS", "60"))

# Singleton manager instance
_manager: "ChatSurfaceManager | None" = None


class ChatSurfaceManager:
    """Manages open chat surfaces.

    Responsibilities:
    - Open a surface (one ConversationOrchestrator per surface)
    - Store open surfaces (in-memory)
    - Close idle surfaces
    - Get/close surfaces by ID
    """

    def __init__(
        self,
        surface_timeout_minutes: int = SURFACE_TIMEOUT_MINUTES,
        transport: AssistantTransport | None = None,
        store: ConversationStore | None = None,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
    ):
        """Initialize the surface manager.

        Args:
            surface_timeout_minutes: How long idle surfaces live before cleanup.
            transport: Assistant transport shared by all surfaces.
            store: Conversation store shared by all surfaces.
            cleanup_interval_seconds: Pause between idle sweeps.
        """
        self._surfaces: dict[str, ConversationOrchestrator] = {}
        self._surface_timeout = timedelta(minutes=surface_timeout_minutes)
        self._cleanup_interval = cleanup_interval_seconds
        self._transport = transport
        self._store = store
        self._sweeper: asyncio.Task | None = None
        self._stop_sweeping = asyncio.Event()

    @property
    def active_surface_count(self) -> int:
        """Number of open surfaces."""
        return len(self._surfaces)

    @property
    def is_sweeping(self) -> bool:
        """Whether the idle sweeper is running."""
        return self._sweeper is not None and not self._sweeper.done()

    async def open_surface(
        self, user_id: str, user_email: str
    ) -> tuple[str, ConversationOrchestrator]:
        """Open a chat surface for a user and activate a session on it.

        Returns:
            The surface ID and its orchestrator.

        Raises:
            StorageError: If the session list cannot be loaded.
        """
        orchestrator = ConversationOrchestrator(
            UserIdentity(user_id=user_id, user_email=user_email),
            transport=self._transport,
            store=self._store,
        )
        await orchestrator.open()

        surface_id = str(uuid.uuid4())[:12]
        self._surfaces[surface_id] = orchestrator
        logger.info(
            f"Opened chat surface {surface_id} for user {user_id} "
            f"(total surfaces: {len(self._surfaces)})"
        )

        return surface_id, orchestrator

    def get_surface(self, surface_id: str) -> ConversationOrchestrator | None:
        """Get a surface by ID, refreshing its last activity."""
        orchestrator = self._surfaces.get(surface_id)
        if orchestrator:
            orchestrator.last_activity = datetime.now(UTC)
        return orchestrator

    async def close_surface(self, surface_id: str) -> bool:
        """Close and remove a surface.

        Returns:
            True if the surface was found and closed, False otherwise.
        """
        orchestrator = self._surfaces.pop(surface_id, None)
        if orchestrator is None:
            return False

        await orchestrator.close()
        logger.info(f"Closed chat surface {surface_id}")
        return True

    def idle_surface_ids(self, now: datetime | None = None) -> list[str]:
        """Surfaces idle past the timeout. A send in flight counts as activity."""
        cutoff = (now or datetime.now(UTC)) - self._surface_timeout
        return [
            surface_id
            for surface_id, orchestrator in self._surfaces.items()
            if not orchestrator.is_busy and orchestrator.last_activity < cutoff
        ]

    async def cleanup_expired(self) -> int:
        """Close surfaces that have been idle too long.

        Returns:
            Number of surfaces cleaned up.
        """
        expired_ids = self.idle_surface_ids()
        for surface_id in expired_ids:
            await self.close_surface(surface_id)

        if expired_ids:
            logger.info(f"Closed {len(expired_ids)} idle chat surface(s)")
        return len(expired_ids)

    def start_sweeper(self) -> None:
        """Run idle cleanup in the background until stop_sweeper() is called."""
        if self.is_sweeping:
            return
        self._stop_sweeping.clear()
        self._sweeper = asyncio.create_task(self._sweep())
        logger.info(f"Idle surface sweeper running every {self._cleanup_interval}s")

    async def stop_sweeper(self) -> None:
        """Signal the sweeper to stop and wait for its current pass to finish."""
        if self._sweeper is None:
            return
        self._stop_sweeping.set()
        await self._sweeper
        self._sweeper = None

    async def _sweep(self) -> None:
        while not self._stop_sweeping.is_set():
            try:
                async with asyncio.timeout(self._cleanup_interval):
                    await self._stop_sweeping.wait()
            except TimeoutError:
                try:
                    await self.cleanup_expired()
                except Exception:
                    logger.exception("Idle surface sweep failed")

    async def shutdown(self) -> None:
        """Stop the sweeper and close every surface, flushing pending writes."""
        await self.stop_sweeper()
        closed = await asyncio.gather(
            *(self.close_surface(surface_id) for surface_id in list(self._surfaces))
        )
        logger.info(f"Chat surface manager stopped ({len(closed)} surface(s) closed)")

    def get_stats(self) -> dict[str, Any]:
        """Get manager statistics."""
        surfaces_by_user: dict[str, int] = {}
        for orchestrator in self._surfaces.values():
            user_id = orchestrator.identity.user_id
            surfaces_by_user[user_id] = surfaces_by_user.get(user_id, 0) + 1

        return {
            "active_surfaces": len(self._surfaces),
            "busy_surfaces": sum(1 for s in self._surfaces.values() if s.is_busy),
            "surfaces_by_user": surfaces_by_user,
            "cleanup_task_running": self.is_sweeping,
        }


def get_surface_manager() -> ChatSurfaceManager:
    """Get the singleton surface manager instance."""
    global _manager
    if _manager is None:
        _manager = ChatSurfaceManager()
    return _manager


async def init_surface_manager() -> ChatSurfaceManager:
    """Create the singleton and start its idle sweeper."""
    manager = get_surface_manager()
    manager.start_sweeper()
    return manager


async def shutdown_surface_manager() -> None:
    """Close every surface and drop the singleton."""
    global _manager
    manager, _manager = _manager, None
    if manager is not None:
        await manager.shutdown()
