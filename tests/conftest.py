from datetime import datetime, timedelta, timezone

import pytest

from chatsync.infra.memory_backend import InMemoryBackend
from chatsync.models.message import UserSummary
from chatsync.services.errors import BackendError

BASE_TIME = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

USERS = [
    {"id": 3, "name": "Tomás"},
    {"id": 5, "name": "Ana"},
    {"id": 7, "name": "Sofía"},
    {"id": 9, "name": "Bruno"},
    {"id": 42, "name": "Carla"},
]

ANA = UserSummary(id=5, name="Ana")


def ts(minutes: int) -> str:
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat()


def message_row(id, sender_id, receiver_id, minute, content=None, is_read=False):
    return {
        "id": id,
        "sender_id": sender_id,
        "receiver_id": receiver_id,
        "content": content or f"mensaje {id}",
        "created_at": ts(minute),
        "updated_at": ts(minute),
        "is_read": is_read,
    }


def notification_row(id, target_user_id, minute, type="viewed", content=None, read_at=None):
    return {
        "id": id,
        "target_user_id": target_user_id,
        "type": type,
        "content": content or f"notificación {id}",
        "created_at": ts(minute),
        "read_at": read_at,
    }


class RecordingBackend(InMemoryBackend):
    """InMemoryBackend que registra las llamadas y puede fallar a pedido."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = []
        self.failures = set()

    def fail_on(self, op, table):
        self.failures.add((op, table))

    def heal(self):
        self.failures.clear()

    def _check(self, op, table):
        self.calls.append((op, table))
        if (op, table) in self.failures:
            raise BackendError(f"{op} {table}: backend caído")

    def count(self, op, table=None):
        return sum(1 for o, t in self.calls if o == op and (table is None or t == table))

    async def query(self, table, *args, **kwargs):
        self._check("query", table)
        return await super().query(table, *args, **kwargs)

    async def insert(self, table, row):
        self._check("insert", table)
        return await super().insert(table, row)

    async def update(self, table, where, patch):
        self._check("update", table)
        return await super().update(table, where, patch)


@pytest.fixture
def backend():
    b = RecordingBackend()
    b.seed("users", USERS)
    return b


@pytest.fixture
def compound_backend():
    b = RecordingBackend(supports_compound_filters=True)
    b.seed("users", USERS)
    return b
