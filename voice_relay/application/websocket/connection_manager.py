from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages relay WebSocket connections and outbound event routing"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def register(self, session_id: str, websocket: WebSocket, agent_id: Optional[str] = None):
        """Bind an accepted WebSocket to a session id once setup arrives"""
        async with self._lock:
            self.active_connections[session_id] = websocket
            self.session_metadata[session_id] = {
                "agent_id": agent_id,
                "connected_at": datetime.now(timezone.utc),
                "last_activity": datetime.now(timezone.utc)
            }

        logger.info("WebSocket registered", session_id=session_id, agent_id=agent_id)

    async def disconnect(self, session_id: str, close: bool = True):
        """Forget a connection, closing the socket unless the peer already did"""
        async with self._lock:
            ws = self.active_connections.pop(session_id, None)
            self.session_metadata.pop(session_id, None)

        if ws is None:
            return

        if close:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing WebSocket", session_id=session_id, error=str(e))

        logger.info("WebSocket disconnected", session_id=session_id)

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific session"""
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected session",
                           session_id=session_id, event_type=event.type)
            return False

        try:
            await websocket.send_json(event.to_wire())

            if session_id in self.session_metadata:
                self.session_metadata[session_id]["last_activity"] = datetime.now(timezone.utc)

            return True

        except Exception as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.disconnect(session_id, close=False)
            return False

    async def send_error(self, session_id: str, error_message: str) -> bool:
        """Send an error event to a session"""
        return await self.send_event(session_id, ErrorEvent(message=error_message))

    def is_connected(self, session_id: str) -> bool:
        return session_id in self.active_connections

    def get_session_metadata(self, session_id: str) -> Optional[Dict]:
        return self.session_metadata.get(session_id)

    def get_active_sessions(self, agent_id: Optional[str] = None) -> Set[str]:
        """Get active session IDs, optionally filtered by agent"""
        if agent_id:
            return {
                session_id
                for session_id, metadata in self.session_metadata.items()
                if metadata.get("agent_id") == agent_id
            }
        return set(self.active_connections.keys())
