# chatsync/services/notification_store.py
import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set, Tuple, Union

from chatsync.infra.backend import NOTIFICATIONS, RemoteBackend
from chatsync.infra.filters import all_of, contains, eq, is_null
from chatsync.infra.realtime import Subscription
from chatsync.models.change_event import ChangeEvent
from chatsync.models.notification import ALLOWED_TYPES, Notification, NotificationType, Pending
from chatsync.services.errors import BackendError

logger = logging.getLogger(__name__)

PAGE_SIZE = 20

VIEWED_CONTENT = "A recruiter viewed your proposal."

Listener = Callable[[str], None]


def job_token(job_id) -> str:
    """Marca que se embebe en el contenido para detectar duplicados."""
    return f"[job:{job_id}]"


class NotificationStore:
    """
    Lista plana de notificaciones (más nueva primero) con paginación,
    envíos optimistas y dedupe.

    Un envío optimista entra como Pending con id negativo; si el backend lo
    confirma se reemplaza por la fila real, si falla se quita.
    """

    def __init__(self, backend: RemoteBackend):
        self.backend = backend

        self.notifications: List[Notification] = []
        self.loading = False
        self.loading_more = False
        self.page = 0
        self.has_more = True
        self.error: Optional[str] = None

        # propuestas ya vistas en esta sesión
        self.viewed_proposals: Set[int] = set()

        self._temp_ids = itertools.count(-1, -1)
        self._sends_in_flight: Set[Tuple] = set()
        self._subscription: Optional[Subscription] = None
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        self._generation = 0

    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify_listeners(self, topic: str = "notifications"):
        for listener in list(self._listeners):
            try:
                listener(topic)
            except Exception:
                logger.exception("[notifications] listener falló")

    def _find(self, notification_id: int) -> Optional[int]:
        for i, n in enumerate(self.notifications):
            if n.id == notification_id:
                return i
        return None

    # ------------------------------------------------------------------
    # fetch

    async def fetch_notifications(self, user_id: int, force: bool = False):
        if not user_id:
            return
        if self.loading and not force:
            return

        self._generation += 1
        token = self._generation
        self.loading = True
        self.error = None

        try:
            rows = await self.backend.query(
                NOTIFICATIONS,
                eq("target_user_id", user_id),
                order_by="created_at",
                descending=True,
                start=0,
                end=PAGE_SIZE - 1,
            )
        except BackendError as e:
            logger.error("[notifications] Error cargando notificaciones: %s", e)
            if token == self._generation:
                self.loading = False
                self.error = str(e)
            return

        if token != self._generation:
            return

        self.notifications = [Notification(**r) for r in rows]
        self.loading = False
        self.page = 1
        self.has_more = len(rows) == PAGE_SIZE
        self.notify_listeners()

    async def fetch_more_notifications(self, user_id: int):
        if self.loading or self.loading_more or not self.has_more:
            return

        token = self._generation
        self.loading_more = True
        start = self.page * PAGE_SIZE

        try:
            rows = await self.backend.query(
                NOTIFICATIONS,
                eq("target_user_id", user_id),
                order_by="created_at",
                descending=True,
                start=start,
                end=start + PAGE_SIZE - 1,
            )
        except BackendError as e:
            logger.error("[notifications] Error cargando más notificaciones: %s", e)
            self.loading_more = False
            if token == self._generation:
                self.error = str(e)
            return

        self.loading_more = False
        if token != self._generation:
            return

        known = {n.id for n in self.notifications}
        self.notifications = self.notifications + [
            Notification(**r) for r in rows if r["id"] not in known
        ]
        self.page += 1
        self.has_more = len(rows) == PAGE_SIZE
        self.notify_listeners()

    # ------------------------------------------------------------------
    # envío

    async def send_notification(
        self,
        target_user_id: int,
        notification_type: Union[str, NotificationType],
        content: str,
        job_ref: Optional[int] = None,
    ) -> Optional[Notification]:
        kind = notification_type.value if isinstance(notification_type, NotificationType) else notification_type
        if kind not in ALLOWED_TYPES:
            logger.warning("[notifications] Tipo no permitido: %r", kind)
            return None

        scope = (target_user_id, kind, job_ref if job_ref is not None else content)
        if scope in self._sends_in_flight:
            logger.debug("[notifications] Envío ya en curso para %r", scope)
            return None

        self._sends_in_flight.add(scope)
        try:
            return await self._send(target_user_id, kind, content, job_ref)
        finally:
            self._sends_in_flight.discard(scope)

    async def _send(self, target_user_id: int, kind: str, content: str, job_ref) -> Optional[Notification]:
        if job_ref is not None:
            token = job_token(job_ref)
            try:
                existing = await self.backend.query(
                    NOTIFICATIONS,
                    all_of(
                        eq("target_user_id", target_user_id),
                        eq("type", kind),
                        contains("content", token),
                    ),
                    start=0,
                    end=0,
                )
            except BackendError as e:
                logger.error("[notifications] No se pudo verificar duplicados: %s", e)
                self.error = str(e)
                return None

            if existing:
                logger.info("[notifications] %s ya enviada a %s para %s", kind, target_user_id, token)
                return None
            if token not in content:
                content = f"{content} {token}"

        temp_id = next(self._temp_ids)
        placeholder = Notification(
            id=temp_id,
            target_user_id=target_user_id,
            type=kind,
            content=content,
            created_at=datetime.now(timezone.utc),
            status=Pending(temp_id=temp_id),
        )
        self.notifications = [placeholder] + self.notifications
        self.notify_listeners()

        try:
            row = await self.backend.insert(NOTIFICATIONS, {
                "target_user_id": target_user_id,
                "type": kind,
                "content": content,
                "read_at": None,
            })
        except BackendError as e:
            logger.error("[notifications] Error enviando notificación: %s", e)
            self.notifications = [n for n in self.notifications if n.id != temp_id]
            self.error = str(e)
            self.notify_listeners()
            return None

        confirmed = Notification(**row)

        # si se leyó mientras estaba pendiente, la lectura pasa a la fila real
        index = self._find(temp_id)
        read_at = self.notifications[index].read_at if index is not None else None
        if read_at is not None:
            confirmed = confirmed.model_copy(update={"read_at": read_at})
            self._in_background(
                self.backend.update(NOTIFICATIONS, eq("id", confirmed.id), {"read_at": read_at.isoformat()}),
                "marcar como leída",
            )

        # el realtime pudo haber insertado ya la fila real
        rest = [n for n in self.notifications if n.id not in (temp_id, confirmed.id)]
        self.notifications = [confirmed] + rest
        self.notify_listeners()
        return confirmed

    def is_proposal_viewed(self, proposal_id: int) -> bool:
        return proposal_id in self.viewed_proposals

    def mark_proposal_viewed_locally(self, proposal_id: int):
        self.viewed_proposals.add(proposal_id)

    async def send_job_viewed_notification(
        self,
        target_user_id: int,
        job_id: int,
        proposal_id: int,
        sender_id: Optional[int] = None,
    ) -> Optional[Notification]:
        if self.is_proposal_viewed(proposal_id):
            logger.debug("[notifications] Propuesta %s ya vista", proposal_id)
            return None
        self.mark_proposal_viewed_locally(proposal_id)

        if not target_user_id or target_user_id == sender_id:
            return None

        return await self.send_notification(
            target_user_id,
            NotificationType.VIEWED,
            VIEWED_CONTENT,
            job_ref=job_id,
        )

    # ------------------------------------------------------------------
    # lectura

    def _in_background(self, coro, what: str):
        task = asyncio.get_running_loop().create_task(self._background_write(coro, what))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_write(self, coro, what: str):
        try:
            await coro
        except BackendError as e:
            logger.error("[notifications] Error al %s: %s", what, e)

    async def flush(self):
        """Espera las escrituras en segundo plano pendientes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def mark_as_read(self, notification_id: int) -> bool:
        index = self._find(notification_id)
        if index is None:
            return False

        notification = self.notifications[index]
        if notification.read_at is not None:
            return False

        now = datetime.now(timezone.utc)
        updated = list(self.notifications)
        updated[index] = notification.model_copy(update={"read_at": now})
        self.notifications = updated
        self.notify_listeners()

        if notification.is_pending:
            return True

        self._in_background(
            self.backend.update(NOTIFICATIONS, eq("id", notification_id), {"read_at": now.isoformat()}),
            "marcar como leída",
        )
        return True

    def mark_all_as_read(self, user_id: int):
        now = datetime.now(timezone.utc)
        self.notifications = [
            n if n.read_at is not None else n.model_copy(update={"read_at": now})
            for n in self.notifications
        ]
        self.notify_listeners()

        self._in_background(
            self.backend.update(
                NOTIFICATIONS,
                all_of(eq("target_user_id", user_id), is_null("read_at")),
                {"read_at": now.isoformat()},
            ),
            "marcar todas como leídas",
        )

    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if n.read_at is None)

    # ------------------------------------------------------------------
    # realtime

    def subscribe_to_realtime(self, user_id: int):
        if self._subscription is not None or not user_id:
            return
        self._subscription = self.backend.subscribe(
            NOTIFICATIONS,
            "INSERT",
            eq("target_user_id", user_id),
            self._on_insert,
        )
        logger.info("[realtime] Notificaciones suscritas para el usuario %s", user_id)

    def unsubscribe_realtime(self):
        if self._subscription is None:
            return
        self.backend.unsubscribe(self._subscription)
        self._subscription = None

    async def _on_insert(self, change: ChangeEvent):
        if self._subscription is None:
            return
        notification = Notification(**change.record)
        if self._find(notification.id) is not None:
            return
        self.notifications = [notification] + self.notifications
        self.notify_listeners()

    def reset(self):
        self.unsubscribe_realtime()
        self._generation += 1
        self.notifications = []
        self.loading = False
        self.loading_more = False
        self.page = 0
        self.has_more = True
        self.error = None
        self.viewed_proposals = set()
        self.notify_listeners()
