# chatsync/services/realtime_merge.py
import logging
from typing import List, Optional

from chatsync.infra.backend import MESSAGES
from chatsync.infra.filters import any_of, eq
from chatsync.infra.realtime import Subscription
from chatsync.models.change_event import ChangeEvent
from chatsync.services.conversation_id import key_from_row
from chatsync.services.errors import BackendError

logger = logging.getLogger(__name__)

EVENTS = ("INSERT", "UPDATE")


class ChatRealtime:
    """
    Mantiene el cache de mensajes del ChatStore al día con los cambios del
    backend, sin polling.

    Un canal por viewer. Si el backend no admite OR en el filtro de columna
    se suscribe dos veces por evento (sender_id y receiver_id); los dos
    streams acaban en el mismo upsert por id.
    """

    def __init__(self, store):
        self.store = store
        self.viewer_id: Optional[int] = None
        self._subscriptions: List[Subscription] = []

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def subscribe(self, viewer_id: int):
        if self._subscriptions or not viewer_id:
            return

        backend = self.store.backend
        if backend.supports_compound_filters:
            filters = [any_of(eq("sender_id", viewer_id), eq("receiver_id", viewer_id))]
        else:
            filters = [eq("sender_id", viewer_id), eq("receiver_id", viewer_id)]

        for event in EVENTS:
            for column_filter in filters:
                self._subscriptions.append(
                    backend.subscribe(MESSAGES, event, column_filter, self.handle_event)
                )

        self.viewer_id = viewer_id
        logger.info("[realtime] Chat suscrito para el usuario %s (%d canales)",
                    viewer_id, len(self._subscriptions))

    def unsubscribe(self):
        if not self._subscriptions:
            return
        for sub in self._subscriptions:
            self.store.backend.unsubscribe(sub)
        logger.info("[realtime] Chat desuscrito para el usuario %s", self.viewer_id)
        self._subscriptions = []
        self.viewer_id = None

    async def handle_event(self, change: ChangeEvent):
        if not self.active:
            return

        row = change.record
        message_id = row.get("id") if row else None
        if message_id is None:
            logger.warning("[realtime] Evento sin id: %r", row)
            return

        conversation_id = key_from_row(row)
        if conversation_id is None:
            logger.warning("[realtime] No se pudo armar la conversación del row %r", row)
            return

        # el payload crudo no trae los nombres de sender/receiver
        try:
            message = await self.store.select_message(message_id)
        except BackendError as e:
            # sin reintento: el próximo evento o un refresh lo reconcilian
            logger.warning("[realtime] No se pudo leer el mensaje %s: %s", message_id, e)
            return

        if message is None or not self.active:
            return

        changed = self.store.merge_message(
            conversation_id,
            message,
            replace=change.event == "UPDATE",
        )
        if changed:
            self.store.refresh_conversations()
            self.store.notify_listeners(f"messages:{conversation_id}")
