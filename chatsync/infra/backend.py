# chatsync/infra/backend.py
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from chatsync.infra.filters import Where
from chatsync.infra.realtime import OnEvent, Subscription, SubscriptionRegistry

# tablas que usa la capa de sincronización
MESSAGES = "messages"
USERS = "users"
NOTIFICATIONS = "notifications"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def apply_window(
    rows: List[Dict[str, Any]],
    order_by: Optional[str] = None,
    descending: bool = False,
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Ordena y recorta como un .order().range() (end inclusivo).
    Empates por id para que el orden sea estable entre páginas.
    """
    if order_by:
        rows = sorted(
            rows,
            key=lambda r: (str(r.get(order_by) or ""), r.get("id") or 0),
            reverse=descending,
        )
    if start is not None or end is not None:
        lo = start or 0
        hi = None if end is None else end + 1
        rows = rows[lo:hi]
    return rows


class RemoteBackend(ABC):
    """
    Colaborador externo: CRUD + suscripciones a cambios por fila.
    Los fallos se propagan como BackendError.
    """

    # True si un filtro de suscripción puede expresar un OR entre columnas
    supports_compound_filters = False

    def __init__(self):
        self.realtime = SubscriptionRegistry()

    @abstractmethod
    async def query(
        self,
        table: str,
        where: Optional[Where] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, table: str, where: Where, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...

    def subscribe(self, table: str, event: str, column_filter: Where, on_event: OnEvent) -> Subscription:
        return self.realtime.add(table, event, column_filter, on_event)

    def unsubscribe(self, subscription: Subscription):
        self.realtime.remove(subscription)

    async def close(self):
        self.realtime.clear()
