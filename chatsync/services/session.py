# chatsync/services/session.py
import asyncio
import logging
import os
import time
from typing import Dict, Optional

from chatsync.infra.backend import USERS, RemoteBackend
from chatsync.infra.filters import eq
from chatsync.models.message import UserSummary
from chatsync.services.chat_store import ChatStore
from chatsync.services.notification_store import NotificationStore

logger = logging.getLogger(__name__)

# segundos sin uso (y sin websockets ni requests en curso) antes de liberar una sesión
SESSION_IDLE_SECONDS = float(os.getenv("SESSION_IDLE_SECONDS", "300"))
SWEEP_INTERVAL = 60


class Session:
    """Stores de un viewer. Se crean al componer la app, nada global."""

    def __init__(self, viewer: UserSummary, backend: RemoteBackend):
        self.viewer = viewer
        self.chat = ChatStore(backend)
        self.chat.set_current_user(viewer)
        self.notifications = NotificationStore(backend)
        # websockets + requests usando la sesión ahora mismo
        self.leases = 0
        self.last_used = time.monotonic()

    def touch(self):
        self.last_used = time.monotonic()

    def start_realtime(self):
        self.chat.subscribe_to_realtime(self.viewer.id)
        self.notifications.subscribe_to_realtime(self.viewer.id)

    async def close(self):
        self.chat.reset()
        self.notifications.reset()
        await self.notifications.flush()


class SessionRegistry:
    """
    viewer_id -> Session
    La sesión se abre la primera vez que se usa y queda suscrita al realtime.
    Quien la usa la toma con acquire() y la suelta con release(); prune()
    cierra las que no tienen usos y llevan idle_ttl segundos quietas.
    """

    def __init__(self, backend: RemoteBackend, idle_ttl: Optional[float] = None):
        self.backend = backend
        self.idle_ttl = SESSION_IDLE_SECONDS if idle_ttl is None else idle_ttl
        self._sessions: Dict[int, Session] = {}

    def __contains__(self, viewer_id: int) -> bool:
        return viewer_id in self._sessions

    def __len__(self):
        return len(self._sessions)

    async def open(self, viewer_id: int) -> Session:
        session = self._sessions.get(viewer_id)
        if session is not None:
            session.touch()
            return session

        rows = await self.backend.query(USERS, eq("id", viewer_id), start=0, end=0)
        name = (rows[0].get("name") or "") if rows else ""

        # otra corrutina pudo abrirla mientras esperábamos
        session = self._sessions.get(viewer_id)
        if session is None:
            session = Session(UserSummary(id=viewer_id, name=name), self.backend)
            self._sessions[viewer_id] = session
            session.start_realtime()
            logger.info("[session] Sesión abierta para el usuario %s", viewer_id)
        return session

    def acquire(self, session: Session):
        session.leases += 1
        session.touch()

    def release(self, session: Session):
        session.leases = max(0, session.leases - 1)
        session.touch()

    async def prune(self) -> int:
        """Cierra las sesiones ociosas. Devuelve cuántas cerró."""
        now = time.monotonic()
        idle = [
            viewer_id
            for viewer_id, session in self._sessions.items()
            if session.leases == 0 and now - session.last_used >= self.idle_ttl
        ]
        for viewer_id in idle:
            await self.close(viewer_id)
        return len(idle)

    async def sweep(self, interval: float = SWEEP_INTERVAL):
        """Loop de fondo que libera sesiones ociosas."""
        while True:
            await asyncio.sleep(interval)
            try:
                closed = await self.prune()
                if closed:
                    logger.info("[session] %s sesiones ociosas cerradas", closed)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[session] Error liberando sesiones ociosas")

    async def close(self, viewer_id: int):
        session = self._sessions.pop(viewer_id, None)
        if session is not None:
            await session.close()
            logger.info("[session] Sesión cerrada para el usuario %s", viewer_id)

    async def close_all(self):
        for viewer_id in list(self._sessions):
            await self.close(viewer_id)
