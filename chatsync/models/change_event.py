# chatsync/models/change_event.py
from typing import Any, Dict, Literal

from pydantic import BaseModel

EventKind = Literal["INSERT", "UPDATE"]


class ChangeEvent(BaseModel):
    """Cambio a nivel de fila que publica el backend (realtime)."""
    table: str
    event: EventKind
    record: Dict[str, Any]
