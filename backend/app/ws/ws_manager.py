from typing import Dict, List, Optional
from fastapi import WebSocket
import logging

from ..realtime.chat_session import ChatSession

logger = logging.getLogger(__name__)


class SessionManager:
    """Tracks the live chat session behind each connected socket."""

    def __init__(self):
        # per-user sockets (one per tab typically)
        self.user_sockets: Dict[str, List[WebSocket]] = {}
        self.socket_sessions: Dict[WebSocket, ChatSession] = {}

    def register(self, user_id: str, websocket: WebSocket, session: ChatSession):
        if user_id not in self.user_sockets:
            self.user_sockets[user_id] = []
        self.user_sockets[user_id].append(websocket)
        self.socket_sessions[websocket] = session
        logger.info(f"Session registered user_id={user_id} sockets={len(self.user_sockets[user_id])}")

    def unregister(self, user_id: str, websocket: WebSocket) -> Optional[ChatSession]:
        sockets = self.user_sockets.get(user_id)
        if sockets and websocket in sockets:
            sockets.remove(websocket)
            if not sockets:
                del self.user_sockets[user_id]
        session = self.socket_sessions.pop(websocket, None)
        logger.info(f"Session unregistered user_id={user_id}")
        return session

    def session_for(self, websocket: WebSocket) -> Optional[ChatSession]:
        return self.socket_sessions.get(websocket)

    async def close_user_sessions(self, user_id: str) -> int:
        """Identity went away: tear down every session and socket of the user."""
        closed = 0
        for ws in list(self.user_sockets.get(user_id, [])):
            session = self.unregister(user_id, ws)
            if session is not None:
                await session.close()
                closed += 1
            try:
                await ws.close()
            except RuntimeError:
                # socket already closed by the client
                pass
        return closed

    async def close_all(self):
        for user_id in list(self.user_sockets):
            await self.close_user_sessions(user_id)


manager = SessionManager()
