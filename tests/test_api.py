import pytest
from fastapi.testclient import TestClient

from chatsync.main import create_app
from chatsync.security.jwt_utils import create_token

from conftest import message_row, notification_row


def auth(user_id):
    return {"Authorization": f"Bearer {create_token(user_id)}"}


@pytest.fixture
def client(backend):
    with TestClient(create_app(backend)) as c:
        yield c


def test_requires_bearer_token(client):
    assert client.get("/conversations").status_code == 401
    assert client.get("/conversations", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/notifications", headers={"Authorization": "Token x"}).status_code == 401


def test_send_message_then_list_conversations(client):
    response = client.post("/messages", json={"receiverId": 9, "content": "hi"}, headers=auth(5))
    assert response.status_code == 200
    assert response.json()["content"] == "hi"

    body = client.get("/conversations", headers=auth(5)).json()

    [conversation] = body["conversations"]
    assert conversation["id"] == "5-9"
    assert [p["id"] for p in conversation["participants"]] == [5, 9]
    assert conversation["unread_count"] == 0
    assert body["hasMore"] is False


def test_blank_message_is_rejected(client, backend):
    response = client.post("/messages", json={"receiverId": 9, "content": "  "}, headers=auth(5))

    assert response.status_code == 400
    assert backend.count("insert") == 0


def test_messages_of_a_conversation_are_read_on_open(client, backend):
    backend.seed("messages", [message_row(1, 9, 5, 1), message_row(2, 9, 5, 2)])

    assert client.get("/messages/unread-count", headers=auth(5)).json() == {"count": 0}
    client.get("/conversations", headers=auth(5))
    assert client.get("/messages/unread-count", headers=auth(5)).json() == {"count": 2}

    body = client.get("/conversations/5-9/messages", headers=auth(5)).json()

    assert [m["id"] for m in body["messages"]] == [1, 2]
    assert client.get("/messages/unread-count", headers=auth(5)).json() == {"count": 0}


def test_conversation_key_is_validated(client):
    assert client.get("/conversations/abc/messages", headers=auth(5)).status_code == 400
    assert client.get("/conversations/3-7/messages", headers=auth(5)).status_code == 403
    assert client.post("/conversations/3-7/read", headers=auth(5)).status_code == 403


def test_notifications_flow(client, backend):
    backend.seed("notifications", [notification_row(1, 5, 1), notification_row(2, 5, 2)])

    body = client.get("/notifications", headers=auth(5)).json()
    assert [n["id"] for n in body["notifications"]] == [2, 1]
    assert body["unread"] == 2

    assert client.post("/notifications/mark-read/2", headers=auth(5)).json() == {"ok": True, "changed": True}
    assert client.post("/notifications/mark-read/2", headers=auth(5)).json() == {"ok": True, "changed": False}
    assert client.get("/notifications/unread-count", headers=auth(5)).json() == {"count": 1}

    client.post("/notifications/mark-all-read", headers=auth(5))
    assert client.get("/notifications/unread-count", headers=auth(5)).json() == {"count": 0}


def test_send_notification_is_idempotent_per_job(client, backend):
    payload = {"targetUserId": 42, "type": "accepted", "content": "Accepted!", "jobId": 7}

    first = client.post("/notifications/send", json=payload, headers=auth(5)).json()
    second = client.post("/notifications/send", json=payload, headers=auth(5)).json()

    assert first["sent"]["target_user_id"] == 42
    assert second == {"ok": True, "sent": None}
    assert len([r for r in backend.tables["notifications"].values() if r["target_user_id"] == 42]) == 1


def test_send_notification_rejects_unknown_type(client):
    payload = {"targetUserId": 42, "type": "spam", "content": "x"}

    assert client.post("/notifications/send", json=payload, headers=auth(5)).status_code == 400


def test_proposal_viewed(client, backend):
    payload = {"targetUserId": 42, "jobId": 7, "proposalId": 3}

    first = client.post("/notifications/proposal-viewed", json=payload, headers=auth(5)).json()
    second = client.post("/notifications/proposal-viewed", json=payload, headers=auth(5)).json()

    assert first["sent"]["type"] == "viewed"
    assert second["sent"] is None


def test_consumer_status_without_service_bus(client):
    assert client.get("/notifications/debug/consumer-status").json() == {"backend": "memory"}


def test_websocket_pushes_initial_state(client, backend):
    backend.seed("notifications", [notification_row(1, 5, 1)])

    with client.websocket_connect(f"/ws/sync?token={create_token(5)}") as ws:
        first = ws.receive_json()
        second = ws.receive_json()

    assert first["topic"] == "conversations"
    assert second["topic"] == "notifications"


def test_websocket_pushes_realtime_changes(client):
    with client.websocket_connect(f"/ws/sync?token={create_token(5)}") as ws:
        ws.receive_json()
        ws.receive_json()

        client.post("/messages", json={"receiverId": 5, "content": "hola Ana"}, headers=auth(9))

        update = ws.receive_json()
        while update["topic"] != "messages:5-9":
            update = ws.receive_json()

    assert [m["content"] for m in update["data"]["messages"]] == ["hola Ana"]


def test_websocket_rejects_bad_token(client):
    from starlette.websockets import WebSocketDisconnect

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/sync?token=nope") as ws:
            ws.receive_json()
