import asyncio

import pytest

from chatsync.models.message import UserSummary
from chatsync.services.chat_store import CONVERSATIONS_PAGE_SIZE, MESSAGES_PAGE_SIZE, ChatStore
from chatsync.services.errors import MalformedKeyError

from conftest import ANA, message_row


def seed_thread(backend, count, a=5, b=9):
    """count mensajes alternando a->b y b->a, un minuto entre cada uno."""
    rows = []
    for i in range(1, count + 1):
        sender, receiver = (b, a) if i % 2 else (a, b)
        rows.append(message_row(i, sender, receiver, i))
    backend.seed("messages", rows)


@pytest.fixture
def store(backend):
    s = ChatStore(backend)
    s.set_current_user(ANA)
    return s


@pytest.mark.asyncio
async def test_fetch_messages_is_ascending_and_marks_read(backend, store):
    seed_thread(backend, 4)

    await store.fetch_messages("5-9", 5)

    messages = store.get_conversation_messages("5-9")
    assert [m.id for m in messages] == [1, 2, 3, 4]
    assert messages[0].sender == UserSummary(id=9, name="Bruno")
    assert store.messages_page["5-9"] == 1
    assert store.messages_has_more["5-9"] is False
    assert store.messages_loading["5-9"] is False

    # lo recibido por Ana queda leído local y remoto
    assert all(m.is_read for m in messages if m.receiver.id == 5)
    assert store.get_unread_count("5-9", 5) == 0
    assert all(r["is_read"] for r in backend.tables["messages"].values() if r["receiver_id"] == 5)


@pytest.mark.asyncio
async def test_fetch_messages_loads_newest_page(backend, store):
    seed_thread(backend, 60)

    await store.fetch_messages("5-9", 5)

    messages = store.get_conversation_messages("5-9")
    assert len(messages) == MESSAGES_PAGE_SIZE
    assert [m.id for m in messages] == list(range(11, 61))
    assert store.messages_has_more["5-9"] is True


@pytest.mark.asyncio
async def test_fetch_more_terminates_after_short_page(backend, store):
    seed_thread(backend, 60)
    await store.fetch_messages("5-9", 5)

    await store.fetch_more_messages("5-9", 5)

    messages = store.get_conversation_messages("5-9")
    assert [m.id for m in messages] == list(range(1, 61))
    assert store.messages_page["5-9"] == 2
    assert store.messages_has_more["5-9"] is False

    queries = backend.count("query")
    await store.fetch_more_messages("5-9", 5)
    await store.fetch_more_messages("5-9", 5)
    assert backend.count("query") == queries


@pytest.mark.asyncio
async def test_fetch_more_without_initial_fetch_is_noop(backend, store):
    seed_thread(backend, 3)

    await store.fetch_more_messages("5-9", 5)

    assert backend.calls == []


@pytest.mark.asyncio
async def test_fetch_messages_skips_when_in_flight_unless_forced(backend, store):
    seed_thread(backend, 3)
    store.messages_loading["5-9"] = True

    await store.fetch_messages("5-9", 5)
    assert backend.calls == []

    await store.fetch_messages("5-9", 5, force=True)
    assert len(store.get_conversation_messages("5-9")) == 3


@pytest.mark.asyncio
async def test_fetch_failure_keeps_cached_messages(backend, store):
    seed_thread(backend, 3)
    await store.fetch_messages("5-9", 5)

    backend.fail_on("query", "messages")
    await store.fetch_messages("5-9", 5, force=True)

    assert [m.id for m in store.get_conversation_messages("5-9")] == [1, 2, 3]
    assert store.messages_loading["5-9"] is False
    assert "backend caído" in store.error


@pytest.mark.asyncio
async def test_malformed_key_fails_only_that_call(backend, store):
    seed_thread(backend, 3)
    await store.fetch_messages("5-9", 5)

    with pytest.raises(MalformedKeyError):
        await store.fetch_messages("abc", 5)
    with pytest.raises(MalformedKeyError):
        await store.fetch_more_messages("5-x", 5)

    assert "abc" not in store.messages_loading
    assert len(store.get_conversation_messages("5-9")) == 3


@pytest.mark.asyncio
async def test_cancelled_fetch_does_not_write(backend, store):
    seed_thread(backend, 3)

    task = asyncio.create_task(store.fetch_messages("5-9", 5))
    await asyncio.sleep(0)  # la task queda esperando al backend
    store.cancel_messages("5-9")
    await task

    assert "5-9" not in store.messages_by_conversation
    assert store.messages_loading["5-9"] is False


@pytest.mark.asyncio
async def test_reset_discards_fetch_in_flight(backend, store):
    seed_thread(backend, 3)

    task = asyncio.create_task(store.fetch_messages("5-9", 5))
    await asyncio.sleep(0)
    store.reset()
    await task

    assert store.messages_by_conversation == {}
    assert store.current_user is None


@pytest.mark.asyncio
async def test_forced_fetch_supersedes_older_one(backend, store):
    seed_thread(backend, 3)

    first = asyncio.create_task(store.fetch_messages("5-9", 5))
    await asyncio.sleep(0)
    backend.seed("messages", [message_row(4, 9, 5, 4)])
    second = asyncio.create_task(store.fetch_messages("5-9", 5, force=True))
    await asyncio.gather(first, second)

    assert [m.id for m in store.get_conversation_messages("5-9")] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_send_then_fetch_conversations(backend, store):
    sent = await store.send_message(5, 9, "hi")

    assert sent is not None
    assert [m.content for m in store.get_conversation_messages("5-9")] == ["hi"]

    await store.fetch_conversations(ANA)

    [conversation] = store.conversations
    assert conversation.id == "5-9"
    assert [p.id for p in conversation.participants] == [5, 9]
    assert conversation.last_message.content == "hi"
    assert conversation.unread_count == 0


@pytest.mark.asyncio
async def test_send_strips_and_rejects_blank_content(backend, store):
    assert await store.send_message(5, 9, "   ") is None
    assert backend.count("insert") == 0

    sent = await store.send_message(5, 9, "  hola  ")
    assert sent.content == "hola"
    assert sent.receiver == UserSummary(id=9, name="Bruno")


@pytest.mark.asyncio
async def test_send_failure_touches_nothing(backend, store):
    backend.fail_on("insert", "messages")

    assert await store.send_message(5, 9, "hola") is None

    assert store.get_conversation_messages("5-9") == []
    assert store.sending_message is False
    assert store.error


@pytest.mark.asyncio
async def test_concurrent_sends_are_both_kept(backend, store):
    first, second = await asyncio.gather(
        store.send_message(5, 9, "uno"),
        store.send_message(9, 5, "dos"),
    )

    ids = [m.id for m in store.get_conversation_messages("5-9")]
    assert sorted(ids) == sorted([first.id, second.id])
    assert store.sending_message is False


@pytest.mark.asyncio
async def test_send_updates_disclosed_conversations(backend, store):
    backend.seed("messages", [message_row(1, 3, 5, 1)])
    await store.fetch_conversations(ANA)

    await store.send_message(5, 9, "hola")

    assert [c.id for c in store.conversations] == ["5-9", "3-5"]


@pytest.mark.asyncio
async def test_fetch_conversations_groups_and_counts(backend, store):
    backend.seed("messages", [
        message_row(1, 3, 5, 1),
        message_row(2, 5, 3, 2),
        message_row(3, 9, 5, 3),
        message_row(4, 9, 5, 4),
        message_row(5, 3, 7, 5),   # no es de Ana
    ])

    await store.fetch_conversations(ANA)

    assert [c.id for c in store.conversations] == ["5-9", "3-5"]
    assert store.conversations[0].unread_count == 2
    assert store.conversations[1].unread_count == 1
    assert store.get_total_unread_messages(5) == 3
    assert store.conversations_has_more is False
    assert "3-7" not in store.messages_by_conversation


@pytest.mark.asyncio
async def test_fetch_more_conversations_pages_from_cache(backend, store):
    users = [{"id": 100 + i, "name": f"user{i}"} for i in range(25)]
    backend.seed("users", users)
    backend.seed("messages", [message_row(i + 1, 100 + i, 5, i) for i in range(25)])

    await store.fetch_conversations(ANA)
    assert len(store.conversations) == CONVERSATIONS_PAGE_SIZE
    assert store.conversations_has_more is True

    queries = backend.count("query")
    store.fetch_more_conversations(ANA)

    assert len(store.conversations) == 25
    assert store.conversations_has_more is False
    assert backend.count("query") == queries


@pytest.mark.asyncio
async def test_mark_read_failure_leaves_cache(backend, store):
    seed_thread(backend, 3)
    backend.fail_on("update", "messages")

    await store.fetch_messages("5-9", 5)

    assert store.get_unread_count("5-9", 5) == 2


@pytest.mark.asyncio
async def test_listeners_receive_topics(backend, store):
    topics = []
    store.add_listener(topics.append)
    store.add_listener(lambda topic: 1 / 0)  # un listener roto no corta nada

    await store.send_message(5, 9, "hola")
    await store.fetch_conversations(ANA)

    assert "messages:5-9" in topics
    assert "conversations" in topics
