# chatsync/services/websocket_manager.py
import asyncio
import logging
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    Mantiene las conexiones WebSocket por usuario.
    user_id -> set(WebSocket)
    """
    def __init__(self):
        self.active_connections: Dict[int, Set[WebSocket]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, user_id: int, websocket: WebSocket):
        await websocket.accept()
        if user_id not in self.active_connections:
            self.active_connections[user_id] = set()
        self.active_connections[user_id].add(websocket)

    def disconnect(self, user_id: int, websocket: WebSocket):
        if user_id in self.active_connections:
            self.active_connections[user_id].discard(websocket)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    def is_connected(self, user_id: int) -> bool:
        return bool(self.active_connections.get(user_id))

    async def send_to_user(self, user_id: int, message: dict):
        """
        Envía un mensaje a TODAS las conexiones de ese usuario
        (tabs distintas, dispositivos, etc.)
        """
        if user_id not in self.active_connections:
            return
        dead_sockets = []
        for ws in list(self.active_connections[user_id]):
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.debug("[ws] socket muerto de %s: %s", user_id, e)
                dead_sockets.append(ws)
        # limpiar sockets muertos
        for ws in dead_sockets:
            self.disconnect(user_id, ws)

    def push(self, user_id: int, message: dict):
        """send_to_user sin esperar (lo llaman los listeners de los stores)."""
        if not self.is_connected(user_id):
            return
        task = asyncio.get_running_loop().create_task(self.send_to_user(user_id, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


# instancia global
ws_manager = WebSocketManager()
