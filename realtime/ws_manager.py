import logging
from typing import Dict, Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)

class ConnectionManager:
    """Open dashboard sockets, grouped by admin id."""

    def __init__(self):
        self.admin_sockets: Dict[str, Set[WebSocket]] = {}

    async def connect(self, ws: WebSocket, admin_id: str):
        self.admin_sockets.setdefault(admin_id, set()).add(ws)
        logger.debug("Dashboard socket opened for %s (%d open)", admin_id, self.connection_count(admin_id))

    async def disconnect(self, ws: WebSocket):
        for admin_id in [k for k, sockets in self.admin_sockets.items() if ws in sockets]:
            sockets = self.admin_sockets[admin_id]
            sockets.discard(ws)
            if not sockets:
                del self.admin_sockets[admin_id]

    def connection_count(self, admin_id: str) -> int:
        return len(self.admin_sockets.get(admin_id, ()))

    async def send_to_user(self, admin_id: str, message: dict):
        dead = []
        for ws in list(self.admin_sockets.get(admin_id, ())):
            try:
                await ws.send_json(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            logger.debug("Dropping dashboard socket for %s after failed send", admin_id)
            await self.disconnect(ws)

manager = ConnectionManager()
