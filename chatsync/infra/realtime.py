# chatsync/infra/realtime.py
import asyncio
import itertools
import logging
from typing import Awaitable, Callable, List, Set

from chatsync.infra.filters import Where
from chatsync.models.change_event import ChangeEvent

logger = logging.getLogger(__name__)

OnEvent = Callable[[ChangeEvent], Awaitable[None]]

_ids = itertools.count(1)


class Subscription:
    """Handle de una suscripción (tabla + evento + filtro de columna)."""

    def __init__(self, table: str, event: str, column_filter: Where, on_event: OnEvent):
        self.id = next(_ids)
        self.table = table
        self.event = event
        self.column_filter = column_filter
        self.on_event = on_event
        self.active = True

    def accepts(self, change: ChangeEvent) -> bool:
        return (
            self.active
            and change.table == self.table
            and change.event == self.event
            and (self.column_filter is None or self.column_filter.matches(change.record))
        )

    def __repr__(self):
        return f"<Subscription {self.id} {self.event} {self.table} {self.column_filter!r}>"


class SubscriptionRegistry:
    """
    Suscripciones activas del proceso.
    dispatch() lanza cada callback como task; drain() espera a que terminen
    (incluidas las que se disparen mientras tanto).
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()

    def add(self, table: str, event: str, column_filter: Where, on_event: OnEvent) -> Subscription:
        sub = Subscription(table, event, column_filter, on_event)
        self._subscriptions.append(sub)
        logger.debug("[realtime] + %r", sub)
        return sub

    def remove(self, sub: Subscription):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
            logger.debug("[realtime] - %r", sub)
        sub.active = False

    def __len__(self):
        return len(self._subscriptions)

    def dispatch(self, change: ChangeEvent) -> int:
        matched = [s for s in self._subscriptions if s.accepts(change)]
        for sub in matched:
            task = asyncio.get_running_loop().create_task(self._run(sub, change))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(matched)

    async def _run(self, sub: Subscription, change: ChangeEvent):
        try:
            await sub.on_event(change)
        except Exception:
            # el stream sigue aunque un callback falle
            logger.exception("[realtime] error en callback de %r", sub)

    async def drain(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self):
        for sub in list(self._subscriptions):
            self.remove(sub)
