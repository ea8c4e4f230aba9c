# chatsync/services/aggregator.py
from typing import Dict, Iterable, List

from chatsync.models.message import Conversation, Message, UserSummary
from chatsync.services.conversation_id import encode


def _message_order(message: Message):
    return (message.created_at, message.id)


def group_by_conversation(messages: Iterable[Message]) -> Dict[str, List[Message]]:
    """Agrupa por clave de conversación, cada lista ascendente por created_at."""
    grouped: Dict[str, List[Message]] = {}
    for message in messages:
        key = encode(message.sender.id, message.receiver.id)
        grouped.setdefault(key, []).append(message)
    for key in grouped:
        grouped[key].sort(key=_message_order)
    return grouped


def group_conversations(
    messages_by_conversation: Dict[str, List[Message]],
    viewer: UserSummary,
) -> List[Conversation]:
    """
    Una Conversation por clave no vacía, la más reciente primero.
    No es reactiva: quien mute el cache tiene que volver a llamarla.
    """
    conversations = []

    for key, messages in messages_by_conversation.items():
        if not messages:
            continue

        last_message = messages[-1]
        other = (
            last_message.receiver
            if last_message.sender.id == viewer.id
            else last_message.sender
        )
        unread = sum(
            1 for m in messages
            if m.receiver.id == viewer.id and not m.is_read
        )

        conversations.append(Conversation(
            id=key,
            participants=sorted([viewer, other], key=lambda u: u.id),
            last_message=last_message,
            unread_count=unread,
            updated_at=last_message.created_at,
        ))

    # sort estable: empates mantienen el orden de las claves
    conversations.sort(key=lambda c: c.updated_at, reverse=True)
    return conversations
