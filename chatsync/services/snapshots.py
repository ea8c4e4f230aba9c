# chatsync/services/snapshots.py
"""Estado de los stores en JSON, para REST y para el WebSocket."""
from chatsync.services.chat_store import ChatStore
from chatsync.services.notification_store import NotificationStore


def conversations_payload(chat: ChatStore) -> dict:
    return {
        "conversations": [c.model_dump(mode="json") for c in chat.conversations],
        "hasMore": chat.conversations_has_more,
        "loading": chat.conversations_loading,
        "error": chat.error,
    }


def messages_payload(chat: ChatStore, conversation_id: str) -> dict:
    return {
        "conversationId": conversation_id,
        "messages": [m.model_dump(mode="json") for m in chat.get_conversation_messages(conversation_id)],
        "hasMore": chat.messages_has_more.get(conversation_id, False),
        "loading": chat.messages_loading.get(conversation_id, False),
        "error": chat.error,
    }


def notifications_payload(store: NotificationStore) -> dict:
    return {
        "notifications": [n.model_dump(mode="json") for n in store.notifications],
        "hasMore": store.has_more,
        "unread": store.unread_count(),
        "error": store.error,
    }


def topic_payload(session, topic: str) -> dict:
    if topic == "conversations":
        data = conversations_payload(session.chat)
    elif topic.startswith("messages:"):
        data = messages_payload(session.chat, topic.split(":", 1)[1])
    else:
        data = notifications_payload(session.notifications)
    return {"topic": topic, "data": data}
