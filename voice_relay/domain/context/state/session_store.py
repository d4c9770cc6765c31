from typing import Dict, Any, List, Optional
import asyncio
import structlog

from voice_relay.domain.errors import ConfigurationError
from voice_relay.domain.models.session import Session

logger = structlog.get_logger(__name__)


class SessionStore:
    """Registry of live call sessions keyed by session id.

    Owned by one engine instance; every insert and removal goes through a
    single lock so a session key has exactly one point of mutation.
    """

    def __init__(self):
        self.sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: Session) -> Session:
        """Register a new session, replacing a stale one with the same id"""

        async with self._lock:
            if session.session_id in self.sessions:
                logger.warning("Replacing existing session", session_id=session.session_id)
            self.sessions[session.session_id] = session

        logger.info("Session created", session_id=session.session_id, agent_id=session.agent_id)
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if session_id is None:
            return None
        return self.sessions.get(session_id)

    def require(self, session_id: Optional[str]) -> Session:
        """Get a session or raise ConfigurationError"""

        session = self.get(session_id)
        if session is None:
            raise ConfigurationError(f"Unknown session: {session_id}", session_id=session_id)
        return session

    async def remove(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            session = self.sessions.pop(session_id, None)

        if session is not None:
            logger.info("Session removed", session_id=session_id)
        return session

    async def clear(self) -> List[Session]:
        async with self._lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
        return sessions

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def get_all_active_sessions(self) -> Dict[str, Dict[str, Any]]:
        return {
            session_id: session.get_state_summary()
            for session_id, session in self.sessions.items()
        }
