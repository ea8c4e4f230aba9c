# chatsync/infra/memory_backend.py
import asyncio
import copy
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from chatsync.infra.backend import RemoteBackend, apply_window, utcnow_iso
from chatsync.infra.filters import Where
from chatsync.models.change_event import ChangeEvent


class InMemoryBackend(RemoteBackend):
    """
    Backend en memoria del proceso, con realtime local.
    Se usa en desarrollo (sin Azure configurado) y en los tests.
    """

    def __init__(self, supports_compound_filters: bool = False):
        super().__init__()
        self.supports_compound_filters = supports_compound_filters
        self.tables: Dict[str, Dict[int, Dict[str, Any]]] = defaultdict(dict)
        self._last_id: Dict[str, int] = defaultdict(int)

    def seed(self, table: str, rows: Iterable[Dict[str, Any]]):
        """Carga filas sin publicar eventos."""
        for row in rows:
            row = dict(row)
            if "id" not in row:
                self._last_id[table] += 1
                row["id"] = self._last_id[table]
            self._last_id[table] = max(self._last_id[table], row["id"])
            row.setdefault("created_at", utcnow_iso())
            row.setdefault("updated_at", row["created_at"])
            self.tables[table][row["id"]] = row

    async def query(
        self,
        table: str,
        where: Optional[Where] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        rows = [
            copy.deepcopy(r)
            for r in self.tables[table].values()
            if where is None or where.matches(r)
        ]
        return apply_window(rows, order_by, descending, start, end)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        self._last_id[table] += 1
        stored = dict(row)
        stored["id"] = self._last_id[table]
        now = utcnow_iso()
        stored.setdefault("created_at", now)
        stored.setdefault("updated_at", now)
        self.tables[table][stored["id"]] = stored

        self.realtime.dispatch(ChangeEvent(table=table, event="INSERT", record=copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update(self, table: str, where: Where, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        updated = []
        now = utcnow_iso()
        for row in self.tables[table].values():
            if where.matches(row):
                row.update(patch)
                row["updated_at"] = now
                updated.append(copy.deepcopy(row))

        for row in updated:
            self.realtime.dispatch(ChangeEvent(table=table, event="UPDATE", record=copy.deepcopy(row)))
        return updated
