"""Registry of open relay channel sessions."""

import logging
from typing import Dict, List, Optional

from relay_bridge.metrics import RelayMetrics
from relay_bridge.session import RelaySession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Tracks relay sessions by id for status reporting and shutdown."""

    def __init__(self, metrics: Optional[RelayMetrics] = None):
        self.sessions: Dict[str, RelaySession] = {}
        self.metrics = metrics

    def register(self, session: RelaySession) -> None:
        """Register a session for a newly accepted connection.

        Args:
            session: Session bound to the connection.
        """
        self.sessions[session.session_id] = session
        if self.metrics:
            self.metrics.session_opened()
        logger.info(f"Client connected: {session.session_id} (total: {len(self.sessions)})")

    async def release(self, session: RelaySession) -> None:
        """Close a session and forget it.

        Safe to call more than once; only the first call closes the session.

        Args:
            session: Session whose connection went away.
        """
        if self.sessions.pop(session.session_id, None) is None:
            return

        try:
            await session.close()
        finally:
            if self.metrics:
                self.metrics.session_closed()
            logger.info(
                f"Client disconnected: {session.session_id} (total: {len(self.sessions)})"
            )

    def snapshot(self) -> List[Dict]:
        """Status of every open session."""
        return [session.get_status() for session in list(self.sessions.values())]

    async def close_all(self) -> None:
        """Release every session (server shutdown)."""
        for session in list(self.sessions.values()):
            await self.release(session)

    def __len__(self) -> int:
        return len(self.sessions)
