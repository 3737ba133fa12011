"""
Session Registry

In-memory store of live edit sessions, keyed by id. Sessions expire after
SESSION_TTL_SECONDS without access; when the registry is full the least
recently used idle session makes room for a new one.
"""

from collections import OrderedDict
from typing import Optional, List
from datetime import datetime, timezone, timedelta

from threadgenie.core.config import settings
from threadgenie.core.exceptions import SessionNotFoundError, OperationRejectedError
from threadgenie.core.logging import get_logger
from threadgenie.core.metrics import set_active_sessions
from threadgenie.modules.session.models import EditSession

logger = get_logger(__name__)


class SessionRegistry:
    """LRU-ordered registry. The most recently accessed session is last."""

    def __init__(self, ttl_seconds: Optional[int] = None, max_sessions: Optional[int] = None):
        self.ttl = timedelta(seconds=settings.SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self.max_sessions = settings.MAX_SESSIONS if max_sessions is None else max_sessions
        self._sessions: "OrderedDict[str, EditSession]" = OrderedDict()
        self._last_access: dict = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def _touch(self, session_id: str):
        self._sessions.move_to_end(session_id)
        self._last_access[session_id] = datetime.now(timezone.utc)

    def _publish_size(self):
        set_active_sessions(len(self._sessions))

    def add(self, session: EditSession) -> EditSession:
        if session.id not in self._sessions and len(self._sessions) >= self.max_sessions:
            self._evict_one()

        self._sessions[session.id] = session
        self._touch(session.id)
        self._publish_size()

        logger.info("session_registered", session_id=session.id, active_sessions=len(self._sessions))
        return session

    def get(self, session_id: str) -> EditSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._touch(session_id)
        return session

    def remove(self, session_id: str) -> EditSession:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._last_access.pop(session_id, None)
        self._publish_size()

        logger.info("session_removed", session_id=session_id, active_sessions=len(self._sessions))
        return session

    def _evict_one(self):
        for session_id, session in self._sessions.items():
            if not session.is_busy:
                del self._sessions[session_id]
                self._last_access.pop(session_id, None)
                logger.info("session_evicted", session_id=session_id, reason="capacity")
                return

        raise OperationRejectedError(
            "Too many sessions with operations in flight",
            operation="create_session",
            details={"max_sessions": self.max_sessions}
        )

    def purge_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Drop sessions idle for longer than the TTL. Busy sessions are kept."""
        now = now or datetime.now(timezone.utc)
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if not session.is_busy and now - self._last_access[session_id] > self.ttl
        ]

        for session_id in expired:
            del self._sessions[session_id]
            del self._last_access[session_id]

        if expired:
            self._publish_size()
            logger.info("sessions_expired", count=len(expired), active_sessions=len(self._sessions))

        return expired
