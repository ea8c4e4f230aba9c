# chatsync/infra/table_client.py
import logging
import os
import time
from typing import Any, Dict, List, Optional, Set

from azure.core.exceptions import AzureError
from azure.data.tables import EdmType, EntityProperty, UpdateMode
from azure.data.tables.aio import TableServiceClient

from chatsync.infra.backend import RemoteBackend, apply_window, utcnow_iso
from chatsync.infra.filters import Where, _AllOf, _AnyOf, _Eq
from chatsync.infra.servicebus_consumer import ChangeFeed
from chatsync.models.change_event import ChangeEvent
from chatsync.services.errors import BackendError

logger = logging.getLogger(__name__)

CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
TABLE_PREFIX = os.getenv("TABLE_PREFIX", "chatsync")

INT32_MAX = 2 ** 31 - 1
_SYSTEM_KEYS = ("PartitionKey", "RowKey")


def to_entity(table: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """
    row -> entidad de Table Storage.
    Table Storage no guarda None: esas columnas se omiten.
    """
    entity = {}
    for key, value in row.items():
        if value is None:
            continue
        if isinstance(value, int) and not isinstance(value, bool) and abs(value) > INT32_MAX:
            value = EntityProperty(value, EdmType.INT64)
        entity[key] = value
    entity["PartitionKey"] = table
    entity["RowKey"] = f"{row['id']:020d}"
    return entity


def from_entity(entity) -> Dict[str, Any]:
    row = {}
    for key, value in entity.items():
        if key in _SYSTEM_KEYS:
            continue
        if isinstance(value, EntityProperty):
            value = value.value
        row[key] = value
    return row


def to_odata(where: Where, parameters: Dict[str, Any]) -> Optional[str]:
    """
    Traduce el predicado a un query_filter de OData (con @parámetros).
    Devuelve None si no se puede expresar; un and() traduce lo que puede
    y el resto se sigue filtrando en Python.
    """
    if isinstance(where, _Eq):
        if where.value is None:
            return None
        name = f"p{len(parameters)}"
        if where.column == "id" and isinstance(where.value, int):
            parameters[name] = f"{where.value:020d}"
            return f"RowKey eq @{name}"
        parameters[name] = where.value
        return f"{where.column} eq @{name}"

    if isinstance(where, _AllOf):
        parts = [p for p in (to_odata(w, parameters) for w in where.parts) if p]
        if not parts:
            return None
        return " and ".join(f"({p})" for p in parts)

    if isinstance(where, _AnyOf):
        scratch = dict(parameters)
        parts = [to_odata(w, scratch) for w in where.parts]
        if not parts or None in parts:
            return None
        parameters.update(scratch)
        return " or ".join(f"({p})" for p in parts)

    # is_null / contains: Table Storage no los soporta
    return None


def new_row_id() -> int:
    # microsegundos desde epoch: único por cliente, cabe en Int64
    return time.time_ns() // 1000


class AzureBackend(RemoteBackend):
    """
    Filas en Azure Table Storage (una tabla por entidad, PartitionKey = tabla).
    Los cambios salen por el ChangeFeed de Service Bus.
    Los filtros van como OData; lo que no se puede traducir se filtra en Python.
    """

    supports_compound_filters = True

    def __init__(self, conn_str: Optional[str] = None, feed: Optional[ChangeFeed] = None):
        super().__init__()
        self.conn_str = conn_str or CONN_STR
        if not self.conn_str:
            raise RuntimeError("AZURE_STORAGE_CONNECTION_STRING no está configurada en .env")
        self.feed = feed or ChangeFeed(self.realtime)
        self._service: Optional[TableServiceClient] = None
        self._ready: Set[str] = set()

    async def _table(self, table: str):
        if self._service is None:
            self._service = TableServiceClient.from_connection_string(conn_str=self.conn_str)
        name = f"{TABLE_PREFIX}{table}"
        if name not in self._ready:
            await self._service.create_table_if_not_exists(table_name=name)
            self._ready.add(name)
        return self._service.get_table_client(table_name=name)

    async def _scan(self, table: str, where: Optional[Where]) -> List[Dict[str, Any]]:
        table_client = await self._table(table)
        parameters = {"pk": table}
        query_filter = "PartitionKey eq @pk"
        scoped = to_odata(where, parameters) if where is not None else None
        if scoped:
            query_filter = f"{query_filter} and ({scoped})"

        entities = table_client.query_entities(query_filter=query_filter, parameters=parameters)
        rows = [from_entity(e) async for e in entities]
        return [r for r in rows if where is None or where.matches(r)]

    async def query(
        self,
        table: str,
        where: Optional[Where] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            rows = await self._scan(table, where)
        except AzureError as e:
            raise BackendError(f"query {table} falló: {e}") from e
        return apply_window(rows, order_by, descending, start, end)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(row)
        stored["id"] = new_row_id()
        now = utcnow_iso()
        stored.setdefault("created_at", now)
        stored.setdefault("updated_at", now)

        try:
            table_client = await self._table(table)
            await table_client.create_entity(entity=to_entity(table, stored))
        except AzureError as e:
            raise BackendError(f"insert {table} falló: {e}") from e

        await self._publish(ChangeEvent(table=table, event="INSERT", record=stored))
        return stored

    async def update(self, table: str, where: Where, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        updated = []
        try:
            table_client = await self._table(table)
            for row in await self._scan(table, where):
                row.update(patch)
                row["updated_at"] = utcnow_iso()
                await table_client.update_entity(
                    entity=to_entity(table, row),
                    mode=UpdateMode.MERGE,
                )
                updated.append(row)
        except AzureError as e:
            raise BackendError(f"update {table} falló: {e}") from e

        for row in updated:
            await self._publish(ChangeEvent(table=table, event="UPDATE", record=row))
        return updated

    async def _publish(self, change: ChangeEvent):
        # la fila ya está escrita; si el feed falla sólo se pierde el realtime
        try:
            await self.feed.publish(change)
        except Exception as e:
            logger.error("[realtime] No se pudo publicar %s %s: %s", change.event, change.table, e)

    async def close(self):
        await super().close()
        await self.feed.close()
        if self._service is not None:
            await self._service.close()
            self._service = None
