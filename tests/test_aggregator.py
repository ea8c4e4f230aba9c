from chatsync.models.message import Message, UserSummary
from chatsync.services.aggregator import group_by_conversation, group_conversations

from conftest import ANA, USERS, message_row

NAMES = {u["id"]: u["name"] for u in USERS}


def make_message(id, sender_id, receiver_id, minute, is_read=False):
    row = message_row(id, sender_id, receiver_id, minute, is_read=is_read)
    row["sender"] = UserSummary(id=sender_id, name=NAMES[sender_id])
    row["receiver"] = UserSummary(id=receiver_id, name=NAMES[receiver_id])
    return Message(**row)


def test_group_by_conversation_collapses_both_directions():
    grouped = group_by_conversation([
        make_message(2, 7, 3, 5),
        make_message(1, 3, 7, 1),
        make_message(3, 5, 9, 2),
    ])

    assert set(grouped) == {"3-7", "5-9"}
    assert [m.id for m in grouped["3-7"]] == [1, 2]


def test_last_message_and_unread_count():
    cache = {
        "5-9": [
            make_message(1, 9, 5, 1),
            make_message(2, 5, 9, 2),
            make_message(3, 9, 5, 3),
            make_message(4, 9, 5, 4, is_read=True),
        ],
    }

    [conversation] = group_conversations(cache, ANA)

    assert conversation.id == "5-9"
    assert conversation.last_message.id == 4
    assert conversation.updated_at == conversation.last_message.created_at
    # sólo los que recibió Ana y siguen sin leer
    assert conversation.unread_count == 2
    assert [p.id for p in conversation.participants] == [5, 9]


def test_other_party_taken_from_last_message():
    cache = {"3-5": [make_message(1, 5, 3, 1)]}

    [conversation] = group_conversations(cache, ANA)

    assert conversation.participants == [UserSummary(id=3, name="Tomás"), ANA]
    assert conversation.unread_count == 0


def test_sorted_by_most_recent_and_empty_keys_skipped():
    cache = {
        "3-5": [make_message(1, 3, 5, 1)],
        "5-9": [make_message(2, 9, 5, 10)],
        "5-7": [],
        "5-42": [make_message(3, 42, 5, 5)],
    }

    conversations = group_conversations(cache, ANA)

    assert [c.id for c in conversations] == ["5-9", "5-42", "3-5"]


def test_is_pure():
    cache = {"5-9": [make_message(1, 9, 5, 1)]}
    first = group_conversations(cache, ANA)
    second = group_conversations(cache, ANA)

    assert first == second
    assert len(cache["5-9"]) == 1
