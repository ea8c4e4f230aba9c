# chatsync/models/message.py
from datetime import datetime
from typing import List

from pydantic import BaseModel


class UserSummary(BaseModel):
    id: int
    name: str = ""


class Message(BaseModel):
    id: int
    sender: UserSummary
    receiver: UserSummary
    content: str
    created_at: datetime
    updated_at: datetime
    is_read: bool = False


class Conversation(BaseModel):
    """Derivada de los mensajes, nunca se persiste."""
    id: str                        # clave "<min>-<max>"
    participants: List[UserSummary]
    last_message: Message
    unread_count: int
    updated_at: datetime
