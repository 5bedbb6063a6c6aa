import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from dmchat import realtime
from dmchat.main import app
from dmchat.models import as_object_id, pair_key


@pytest.fixture
def client(db):
    with TestClient(app) as c:
        yield c
    realtime.presence_writer.flush(timeout=5)


def _register(client, username):
    res = client.post("/auth/register", json={"username": username, "password": "password123"})
    assert res.status_code == 201, res.text
    body = res.json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}, body["token"]


def _receive(ws, kind):
    while True:
        frame = ws.receive_json()
        if frame["type"] == kind:
            return frame["data"]


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_register_login_and_duplicate_username(client):
    _register(client, "alice")
    dup = client.post("/auth/register", json={"username": "alice", "password": "password123"})
    assert dup.status_code == 400
    assert dup.json()["errors"][0]["field"] == "username"

    ok = client.post("/auth/login", json={"username": "alice", "password": "password123"})
    assert ok.status_code == 200
    assert ok.json()["user"]["username"] == "alice"

    bad = client.post("/auth/login", json={"username": "alice", "password": "nope-nope"})
    assert bad.status_code == 401
    assert bad.json()["success"] is False


def test_requests_require_a_token(client):
    assert client.get("/api/messages/chats/list").status_code == 401
    res = client.get("/api/messages/chats/list", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


def test_users_lists_everyone_else(client):
    _, headers, _ = _register(client, "alice")
    _register(client, "bob")
    users = client.get("/users", headers=headers).json()
    assert [u["username"] for u in users] == ["bob"]
    assert users[0]["isOnline"] is False


def test_send_list_history_and_delete(client, db):
    a_id, a_headers, _ = _register(client, "alice")
    b_id, b_headers, _ = _register(client, "bob")

    sent = client.post("/api/messages", json={"receiverId": b_id, "content": "hi"}, headers=a_headers)
    assert sent.status_code == 201, sent.text
    message = sent.json()["data"]
    assert sent.json()["delivery"]["receiverOnline"] is False
    chat = db.chats.find_one({"_id": as_object_id(message["chatId"])})
    assert chat["pair_key"] == pair_key(a_id, b_id)

    client.post("/api/messages", json={"receiverId": a_id, "content": "hey"}, headers=b_headers)

    chats = client.get("/api/messages/chats/list", headers=b_headers).json()["chats"]
    assert len(chats) == 1
    assert chats[0]["user"]["username"] == "alice"
    assert chats[0]["lastMessage"]["content"] == "hey"

    history = client.get(f"/api/messages/{message['chatId']}", headers=a_headers).json()["messages"]
    assert [m["content"] for m in history] == ["hi", "hey"]

    forbidden = client.delete(f"/api/messages/{message['id']}", headers=b_headers)
    assert forbidden.status_code == 403

    deleted = client.delete(f"/api/messages/{message['id']}", headers=a_headers)
    assert deleted.status_code == 200
    assert deleted.json()["messageId"] == message["id"]

    missing = client.delete(f"/api/messages/{message['id']}", headers=a_headers)
    assert missing.status_code == 404


def test_send_validation_errors_are_listed_per_field(client):
    _, headers, _ = _register(client, "alice")
    b_id, _, _ = _register(client, "bob")
    res = client.post("/api/messages", json={"receiverId": b_id, "content": "x" * 1001}, headers=headers)
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["errors"][0]["field"] == "content"

    res = client.post("/api/messages", json={"receiverId": "nope", "content": "hi"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "receiverId"


def test_self_chat_is_refused(client):
    a_id, headers, _ = _register(client, "alice")
    res = client.post("/api/messages/chat/create", json={"receiverId": a_id}, headers=headers)
    assert res.status_code == 400


def test_create_chat_is_idempotent(client):
    _, a_headers, _ = _register(client, "alice")
    b_id, _, _ = _register(client, "bob")
    first = client.post("/api/messages/chat/create", json={"receiverId": b_id}, headers=a_headers)
    second = client.post("/api/messages/chat/create", json={"receiverId": b_id}, headers=a_headers)
    assert first.status_code == second.status_code == 201
    assert first.json()["created"] is True
    assert second.json()["created"] is False
    assert first.json()["chat"]["chatId"] == second.json()["chat"]["chatId"]
    assert first.json()["chat"]["user"]["username"] == "bob"


def test_history_of_someone_elses_chat(client):
    _, a_headers, _ = _register(client, "alice")
    b_id, _, _ = _register(client, "bob")
    _, e_headers, _ = _register(client, "eve")
    chat = client.post("/api/messages/chat/create", json={"receiverId": b_id}, headers=a_headers).json()["chat"]
    assert client.get(f"/api/messages/{chat['chatId']}", headers=e_headers).status_code == 403


def test_cleanup_endpoint(client):
    _, headers, _ = _register(client, "alice")
    res = client.post("/api/messages/chats/cleanup", headers=headers)
    assert res.status_code == 200
    assert res.json()["totalCleaned"] == 0


def test_upload_creates_a_file_message(client):
    _, a_headers, _ = _register(client, "alice")
    b_id, _, _ = _register(client, "bob")
    res = client.post(
        "/api/messages/upload",
        data={"receiverId": b_id},
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=a_headers,
    )
    assert res.status_code == 201, res.text
    message = res.json()["data"]
    assert message["messageType"] == "file"
    assert message["content"].startswith("/uploads/messages/")
    assert client.get(message["content"]).content == b"hello"


def test_websocket_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()


def test_websocket_first_contact_scenario(client, db):
    a_id, _, a_token = _register(client, "alice")
    b_id, _, b_token = _register(client, "bob")

    with client.websocket_connect(f"/ws?token={a_token}") as wa:
        with client.websocket_connect(f"/ws?token={b_token}") as wb:
            assert _receive(wa, "user_online")["userId"] == b_id

            wa.send_json({"type": "send_message", "data": {"receiverId": b_id, "content": "hi"}})
            incoming = _receive(wb, "new_message")["message"]
            confirmed = _receive(wa, "message_sent")["message"]
            assert incoming["id"] == confirmed["id"]
            assert incoming["content"] == "hi"

            chat = db.chats.find_one({"pair_key": pair_key(a_id, b_id)})
            assert str(chat["_id"]) == incoming["chatId"]

            wb.send_json({"type": "join_chat", "data": {"chatId": incoming["chatId"]}})
            assert _receive(wb, "joined_chat") == {"chatId": incoming["chatId"]}

            wb.send_json({"type": "mark_message_read", "data": {"messageId": incoming["id"]}})
            assert _receive(wa, "message_read")["messageId"] == incoming["id"]

            wa.send_json({"type": "delete_message", "data": {"messageId": incoming["id"], "chatId": incoming["chatId"]}})
            expected = {"messageId": incoming["id"], "chatId": incoming["chatId"]}
            assert _receive(wb, "message_deleted") == expected
            assert _receive(wa, "message_deleted") == expected

            wb.send_json({"type": "delete_message", "data": {"messageId": incoming["id"]}})
            assert _receive(wb, "error")["code"] == "not_found"

        assert _receive(wa, "user_offline")["userId"] == b_id


def test_websocket_join_is_participant_only(client):
    _, a_headers, _ = _register(client, "alice")
    b_id, _, _ = _register(client, "bob")
    _, _, e_token = _register(client, "eve")
    chat = client.post("/api/messages/chat/create", json={"receiverId": b_id}, headers=a_headers).json()["chat"]

    with client.websocket_connect(f"/ws?token={e_token}") as we:
        we.send_json({"type": "join_chat", "data": {"chatId": chat["chatId"]}})
        assert _receive(we, "error")["code"] == "not_authorized"


def test_error_envelope_is_documented(client):
    spec = client.get("/openapi.json").json()
    assert "ErrorOut" in spec["components"]["schemas"]
    send_responses = spec["paths"]["/api/messages"]["post"]["responses"]
    assert send_responses["400"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorOut")


def test_shutdown_keeps_an_injected_database(client, db):
    from dmchat import db as dbmod

    dbmod.close()
    assert dbmod.get_db() is db
