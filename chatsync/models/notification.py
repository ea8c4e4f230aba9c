# chatsync/models/notification.py
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class NotificationType(str, Enum):
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NEW_APPLICATION = "virgin"   # valor histórico en la tabla


ALLOWED_TYPES = {t.value for t in NotificationType}


class Pending(BaseModel):
    """Entrada optimista: todavía no la confirmó el backend."""
    kind: Literal["pending"] = "pending"
    temp_id: int


class Confirmed(BaseModel):
    kind: Literal["confirmed"] = "confirmed"
    id: int


SyncStatus = Annotated[Union[Pending, Confirmed], Field(discriminator="kind")]


class Notification(BaseModel):
    id: int                # negativo mientras está Pending
    target_user_id: int
    type: str
    content: str
    created_at: datetime
    read_at: Optional[datetime] = None
    status: Optional[SyncStatus] = None

    @model_validator(mode="after")
    def set_default_status(self):
        # lo que llega del backend ya está confirmado
        if self.status is None:
            self.status = Confirmed(id=self.id)
        return self

    @property
    def is_pending(self) -> bool:
        return isinstance(self.status, Pending)

    @property
    def is_read(self) -> bool:
        return self.read_at is not None
