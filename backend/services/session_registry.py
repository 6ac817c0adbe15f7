"""In-memory registry of open viewer sessions."""
import logging
import time
import uuid
from typing import Callable, Dict, Optional

from services.viewer_session import ViewerSession
from config import MAX_OPEN_SESSIONS, SESSION_IDLE_TTL_SECONDS

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, bool], ViewerSession]


class SessionRegistry:
    """
    Creates, looks up and closes viewer sessions.

    Sessions untouched for longer than ``idle_ttl`` seconds are closed the
    next time a session is opened. When ``max_sessions`` are open, the
    least recently used one is closed to make room.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        max_sessions: int = MAX_OPEN_SESSIONS,
        idle_ttl: float = SESSION_IDLE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the registry.

        Args:
            session_factory: Builds a ViewerSession from a session ID and
                whether a page-flip widget drives navigation
            max_sessions: Most sessions kept open at once
            idle_ttl: Seconds a session may go unused before it is closed
            clock: Monotonic time source
        """
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")

        self.session_factory = session_factory
        self.max_sessions = max_sessions
        self.idle_ttl = idle_ttl
        self.clock = clock
        self._sessions: Dict[str, ViewerSession] = {}
        self._last_used: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def open(
        self,
        slug: Optional[str] = None,
        file: Optional[str] = None,
        flip_widget: bool = False
    ) -> ViewerSession:
        """Create a session and start loading the requested book."""
        await self.evict_idle()
        while len(self._sessions) >= self.max_sessions:
            oldest = min(self._last_used, key=self._last_used.get)
            logger.info(f"Session limit {self.max_sessions} reached, closing {oldest}")
            await self.close(oldest)

        session = self.session_factory(self._generate_session_id(), flip_widget)
        self._sessions[session.session_id] = session
        self._last_used[session.session_id] = self.clock()
        await session.load(slug=slug, file=file)
        return session

    def get(self, session_id: str) -> ViewerSession:
        """
        Raises:
            KeyError: If no open session has this ID
        """
        session = self._sessions[session_id]
        self._last_used[session_id] = self.clock()
        return session

    async def close(self, session_id: str) -> None:
        """
        Raises:
            KeyError: If no open session has this ID
        """
        session = self._sessions.pop(session_id)
        self._last_used.pop(session_id, None)
        await session.close()

    async def evict_idle(self) -> int:
        """Close sessions idle for longer than the TTL and return how many were closed."""
        deadline = self.clock() - self.idle_ttl
        expired = [session_id for session_id, used in self._last_used.items() if used < deadline]
        for session_id in expired:
            await self.close(session_id)
        if expired:
            logger.info(f"Closed {len(expired)} idle viewer sessions")
        return len(expired)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._last_used.clear()
        for session in sessions:
            await session.close()
        logger.info(f"Closed {len(sessions)} viewer sessions")

    def _generate_session_id(self) -> str:
        return f"view_{uuid.uuid4().hex[:12]}"
