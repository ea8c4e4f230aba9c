# chatsync/services/chat_store.py
"""
Cache de mensajes por conversación + paginación.

Todo lo que se muestra (conversaciones, contadores de no leídos) se deriva
de messages_by_conversation. Cada lista está en orden ascendente por
created_at: los fetch se invierten, fetch_more antepone páginas más viejas
y send/realtime añaden al final.

No hay locks: los flags de loading evitan fetch duplicados y el merge por id
es idempotente. Cada fetch lleva un token; si otro fetch, cancel o reset lo
reemplazó mientras esperaba al backend, su resultado se descarta.
"""
import logging
from typing import Callable, Dict, List, Optional, Tuple

from chatsync.infra.backend import MESSAGES, USERS, RemoteBackend
from chatsync.infra.filters import all_of, any_of, between_users, eq
from chatsync.models.message import Conversation, Message, UserSummary
from chatsync.services.aggregator import group_by_conversation, group_conversations
from chatsync.services.conversation_id import decode, encode
from chatsync.services.errors import BackendError
from chatsync.services.realtime_merge import ChatRealtime

logger = logging.getLogger(__name__)

CONVERSATIONS_PAGE_SIZE = 20
MESSAGES_PAGE_SIZE = 50
# mensajes recientes con los que se reconstruyen las conversaciones
CONVERSATIONS_SCAN_LIMIT = 1000

Listener = Callable[[str], None]


def messages_topic(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


class ChatStore:

    def __init__(self, backend: RemoteBackend):
        self.backend = backend

        self.messages_by_conversation: Dict[str, List[Message]] = {}
        self.conversations: List[Conversation] = []

        self.conversations_page = 0
        self.conversations_has_more = True
        self.conversations_loading = False

        self.messages_page: Dict[str, int] = {}
        self.messages_has_more: Dict[str, bool] = {}
        self.messages_loading: Dict[str, bool] = {}

        self.current_conversation: Optional[str] = None
        self.current_user: Optional[UserSummary] = None
        self.error: Optional[str] = None

        self.realtime = ChatRealtime(self)

        self._sends_in_flight = 0
        self._listeners: List[Listener] = []
        self._epoch = 0
        self._generations: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # estado básico / listeners

    @property
    def sending_message(self) -> bool:
        return self._sends_in_flight > 0

    def set_current_user(self, user: UserSummary):
        self.current_user = user

    def set_current_conversation(self, conversation_id: Optional[str]):
        self.current_conversation = conversation_id

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify_listeners(self, topic: str):
        for listener in list(self._listeners):
            try:
                listener(topic)
            except Exception:
                logger.exception("[chat] listener falló para %s", topic)

    # tokens de request

    def _token(self, scope: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(scope, 0)

    def _supersede(self, scope: str) -> Tuple[int, int]:
        self._generations[scope] = self._generations.get(scope, 0) + 1
        return self._token(scope)

    def _is_current(self, scope: str, token: Tuple[int, int]) -> bool:
        return self._token(scope) == token

    def cancel_messages(self, conversation_id: str):
        """Descarta el fetch en vuelo de esa conversación (p.ej. al salir de la pantalla)."""
        self._supersede(messages_topic(conversation_id))
        self.messages_loading[conversation_id] = False

    # ------------------------------------------------------------------
    # lectura del backend

    async def _enrich(self, rows: List[dict]) -> List[Message]:
        """Añade sender/receiver (id + nombre) que el row crudo no trae."""
        if not rows:
            return []

        user_ids = {r["sender_id"] for r in rows} | {r["receiver_id"] for r in rows}
        users = await self.backend.query(USERS, any_of(*[eq("id", uid) for uid in user_ids]))
        summaries = {u["id"]: UserSummary(id=u["id"], name=u.get("name") or "") for u in users}

        messages = []
        for row in rows:
            data = dict(row)
            data["sender"] = summaries.get(row["sender_id"]) or UserSummary(id=row["sender_id"])
            data["receiver"] = summaries.get(row["receiver_id"]) or UserSummary(id=row["receiver_id"])
            messages.append(Message(**data))
        return messages

    async def _select_messages(self, where, start: int, end: int) -> List[Message]:
        rows = await self.backend.query(
            MESSAGES,
            where,
            order_by="created_at",
            descending=True,
            start=start,
            end=end,
        )
        return await self._enrich(rows)

    async def select_message(self, message_id: int) -> Optional[Message]:
        rows = await self.backend.query(MESSAGES, eq("id", message_id))
        if not rows:
            return None
        return (await self._enrich(rows[:1]))[0]

    # ------------------------------------------------------------------
    # conversaciones

    def refresh_conversations(self):
        """Re-deriva y recorta a lo que la paginación ya había mostrado."""
        if self.current_user is None:
            return
        disclosed = self.conversations_page * CONVERSATIONS_PAGE_SIZE
        all_conversations = group_conversations(self.messages_by_conversation, self.current_user)
        self.conversations = all_conversations[:disclosed]
        self.conversations_has_more = len(all_conversations) > disclosed
        self.notify_listeners("conversations")

    async def fetch_conversations(self, user: UserSummary, force: bool = False):
        if user is None or not user.id:
            return
        if self.conversations_loading and not force:
            return

        token = self._supersede("conversations")
        self.conversations_loading = True
        self.error = None
        self.current_user = user

        try:
            messages = await self._select_messages(
                any_of(eq("sender_id", user.id), eq("receiver_id", user.id)),
                start=0,
                end=CONVERSATIONS_SCAN_LIMIT - 1,
            )
        except BackendError as e:
            logger.error("[chat] Error cargando conversaciones: %s", e)
            if self._is_current("conversations", token):
                self.conversations_loading = False
                self.error = str(e)
            return

        if not self._is_current("conversations", token):
            logger.debug("[chat] fetch de conversaciones descartado")
            return

        self.messages_by_conversation = group_by_conversation(messages)
        all_conversations = group_conversations(self.messages_by_conversation, user)

        self.conversations = all_conversations[:CONVERSATIONS_PAGE_SIZE]
        self.conversations_loading = False
        self.conversations_page = 1
        self.conversations_has_more = len(all_conversations) > CONVERSATIONS_PAGE_SIZE
        self.notify_listeners("conversations")

    def fetch_more_conversations(self, user: UserSummary):
        """Muestra la siguiente página; sale del cache, sin red."""
        if self.conversations_loading or not self.conversations_has_more:
            return

        self.current_user = user
        all_conversations = group_conversations(self.messages_by_conversation, user)

        self.conversations_page += 1
        disclosed = self.conversations_page * CONVERSATIONS_PAGE_SIZE
        self.conversations = all_conversations[:disclosed]
        self.conversations_has_more = len(all_conversations) > disclosed
        self.notify_listeners("conversations")

    # ------------------------------------------------------------------
    # mensajes de una conversación

    async def fetch_messages(self, conversation_id: str, user_id: int, force: bool = False):
        user_a, user_b = decode(conversation_id)
        if not user_id:
            return
        if self.messages_loading.get(conversation_id) and not force:
            return

        scope = messages_topic(conversation_id)
        token = self._supersede(scope)
        self.messages_loading[conversation_id] = True
        self.error = None
        self.current_conversation = conversation_id

        try:
            page = await self._select_messages(
                between_users(user_a, user_b),
                start=0,
                end=MESSAGES_PAGE_SIZE - 1,
            )
        except BackendError as e:
            logger.error("[chat] Error cargando mensajes de %s: %s", conversation_id, e)
            if self._is_current(scope, token):
                self.messages_loading[conversation_id] = False
                self.error = str(e)
            return

        if not self._is_current(scope, token):
            logger.debug("[chat] fetch de %s descartado", conversation_id)
            return

        self.messages_by_conversation[conversation_id] = list(reversed(page))
        self.messages_loading[conversation_id] = False
        self.messages_page[conversation_id] = 1
        self.messages_has_more[conversation_id] = len(page) == MESSAGES_PAGE_SIZE
        self.refresh_conversations()
        self.notify_listeners(scope)

        await self.mark_messages_as_read(conversation_id, user_id)

    async def fetch_more_messages(self, conversation_id: str, user_id: int):
        user_a, user_b = decode(conversation_id)
        if (
            self.messages_loading.get(conversation_id)
            or not self.messages_has_more.get(conversation_id)
            or conversation_id not in self.messages_by_conversation
        ):
            return

        scope = messages_topic(conversation_id)
        token = self._token(scope)
        self.messages_loading[conversation_id] = True

        current_page = self.messages_page.get(conversation_id, 1)
        start = current_page * MESSAGES_PAGE_SIZE

        try:
            page = await self._select_messages(
                between_users(user_a, user_b),
                start=start,
                end=start + MESSAGES_PAGE_SIZE - 1,
            )
        except BackendError as e:
            logger.error("[chat] Error cargando más mensajes de %s: %s", conversation_id, e)
            if self._is_current(scope, token):
                self.messages_loading[conversation_id] = False
                self.error = str(e)
            return

        if not self._is_current(scope, token):
            logger.debug("[chat] fetch_more de %s descartado", conversation_id)
            return

        existing = self.messages_by_conversation.get(conversation_id, [])
        # los mensajes nuevos corren el offset: puede repetir alguno
        known = {m.id for m in existing}
        older = [m for m in reversed(page) if m.id not in known]

        self.messages_by_conversation[conversation_id] = older + existing
        self.messages_loading[conversation_id] = False
        self.messages_page[conversation_id] = current_page + 1
        self.messages_has_more[conversation_id] = len(page) == MESSAGES_PAGE_SIZE
        self.refresh_conversations()
        self.notify_listeners(scope)

    def merge_message(self, conversation_id: str, message: Message, replace: bool = False) -> bool:
        """
        Upsert por id. Sin replace, un id ya presente no cambia nada.
        Devuelve True si el cache cambió.
        """
        existing = self.messages_by_conversation.get(conversation_id, [])
        for i, current in enumerate(existing):
            if current.id == message.id:
                if not replace:
                    return False
                updated = list(existing)
                updated[i] = message
                self.messages_by_conversation[conversation_id] = updated
                return True

        self.messages_by_conversation[conversation_id] = existing + [message]
        return True

    async def send_message(self, sender_id: int, receiver_id: int, content: str) -> Optional[Message]:
        text = (content or "").strip()
        if not text:
            return None

        conversation_id = encode(sender_id, receiver_id)
        self._sends_in_flight += 1
        try:
            row = await self.backend.insert(MESSAGES, {
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "content": text,
                "is_read": False,
            })
            message = (await self._enrich([row]))[0]
        except BackendError as e:
            logger.error("[chat] Error enviando mensaje a %s: %s", receiver_id, e)
            self.error = str(e)
            return None
        finally:
            self._sends_in_flight -= 1

        # el eco realtime puede haber llegado antes
        if self.merge_message(conversation_id, message):
            self.refresh_conversations()
            self.notify_listeners(messages_topic(conversation_id))
        return message

    async def mark_messages_as_read(self, conversation_id: str, user_id: int):
        user_a, user_b = decode(conversation_id)

        try:
            await self.backend.update(
                MESSAGES,
                all_of(
                    between_users(user_a, user_b),
                    eq("receiver_id", user_id),
                    eq("is_read", False),
                ),
                {"is_read": True},
            )
        except BackendError as e:
            logger.error("[chat] Error marcando %s como leída: %s", conversation_id, e)
            return

        existing = self.messages_by_conversation.get(conversation_id, [])
        if not any(m.receiver.id == user_id and not m.is_read for m in existing):
            return

        self.messages_by_conversation[conversation_id] = [
            m.model_copy(update={"is_read": True})
            if m.receiver.id == user_id and not m.is_read
            else m
            for m in existing
        ]
        self.refresh_conversations()
        self.notify_listeners(messages_topic(conversation_id))

    # ------------------------------------------------------------------
    # realtime

    def subscribe_to_realtime(self, user_id: int):
        self.realtime.subscribe(user_id)

    def unsubscribe_realtime(self):
        self.realtime.unsubscribe()

    # ------------------------------------------------------------------
    # selectores

    def get_conversation_messages(self, conversation_id: str) -> List[Message]:
        return self.messages_by_conversation.get(conversation_id, [])

    def get_unread_count(self, conversation_id: str, user_id: int) -> int:
        return sum(
            1 for m in self.get_conversation_messages(conversation_id)
            if m.receiver.id == user_id and not m.is_read
        )

    def get_total_unread_messages(self, user_id: int) -> int:
        return sum(
            self.get_unread_count(conversation_id, user_id)
            for conversation_id in self.messages_by_conversation
        )

    def reset(self):
        self.unsubscribe_realtime()
        self._epoch += 1
        self._generations = {}

        self.messages_by_conversation = {}
        self.conversations = []
        self.conversations_page = 0
        self.conversations_has_more = True
        self.conversations_loading = False
        self.messages_page = {}
        self.messages_has_more = {}
        self.messages_loading = {}
        self.current_conversation = None
        self.current_user = None
        self.error = None
        self.notify_listeners("conversations")
