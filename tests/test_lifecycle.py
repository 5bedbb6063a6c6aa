import os

import pytest

from dmchat import chats, uploads
from dmchat.errors import AuthorizationFailure, NotFound, ValidationFailure
from dmchat.lifecycle import delete_message, fetch_history, mark_read, send_message
from dmchat.models import as_object_id, pair_key


@pytest.fixture
def pair(make_user):
    return make_user("alice", "a.png"), make_user("bob", "b.png")


def _chat(db, message):
    return db.chats.find_one({"_id": as_object_id(message["chatId"])})


def test_first_send_creates_chat_and_message(db, pair):
    a, b = pair
    msg = send_message(db, a["_id"], str(b["_id"]), "  hi  ")

    chat = _chat(db, msg)
    assert chat["pair_key"] == pair_key(a["_id"], b["_id"])
    assert chat["last_message"] == as_object_id(msg["id"])
    assert msg["content"] == "hi"
    assert msg["messageType"] == "text"
    assert msg["sender"] == {"id": str(a["_id"]), "username": "alice", "avatar": "a.png"}
    assert msg["receiver"]["username"] == "bob"
    assert msg["isRead"] is False

    stored = db.messages.find_one({"_id": as_object_id(msg["id"])})
    assert stored["chat_id"] == chat["_id"]


def test_replies_reuse_the_chat(db, pair):
    a, b = pair
    first = send_message(db, a["_id"], b["_id"], "hi")
    second = send_message(db, b["_id"], a["_id"], "hey")
    assert first["chatId"] == second["chatId"]
    assert _chat(db, second)["last_message"] == as_object_id(second["id"])


@pytest.mark.parametrize("content,message_type,field", [
    ("", "text", "content"),
    ("   ", "text", "content"),
    ("x" * 1001, "text", "content"),
    ("hi", "video", "messageType"),
])
def test_send_validation(db, pair, content, message_type, field):
    a, b = pair
    with pytest.raises(ValidationFailure) as exc:
        send_message(db, a["_id"], b["_id"], content, message_type)
    assert exc.value.errors[0]["field"] == field
    assert db.messages.count_documents({}) == 0


def test_send_to_unknown_receiver(db, pair):
    a, _ = pair
    with pytest.raises(NotFound):
        send_message(db, a["_id"], "0123456789abcdef01234567", "hi")


def test_mark_read_is_idempotent(db, pair):
    a, b = pair
    msg = send_message(db, a["_id"], b["_id"], "hi")

    first, changed = mark_read(db, msg["id"], b["_id"])
    assert changed is True
    assert first["is_read"] is True and first["read_at"] is not None

    second, changed_again = mark_read(db, msg["id"], b["_id"])
    assert changed_again is False
    assert second == first


def test_only_receiver_marks_read(db, pair):
    a, b = pair
    msg = send_message(db, a["_id"], b["_id"], "hi")
    with pytest.raises(AuthorizationFailure):
        mark_read(db, msg["id"], a["_id"])


def test_mark_read_of_deleted_message_is_benign(db, pair):
    a, b = pair
    msg = send_message(db, a["_id"], b["_id"], "hi")
    delete_message(db, msg["id"], a["_id"])
    assert mark_read(db, msg["id"], b["_id"]) == (None, False)


def test_deleting_last_message_repoints_to_previous(db, pair):
    a, b = pair
    m1 = send_message(db, a["_id"], b["_id"], "one")
    m2 = send_message(db, b["_id"], a["_id"], "two")
    m3 = send_message(db, a["_id"], b["_id"], "three")

    delete_message(db, m3["id"], a["_id"])

    chat = _chat(db, m1)
    assert chat["last_message"] == as_object_id(m2["id"])
    stored = db.messages.find_one({"_id": as_object_id(m2["id"])})
    assert chat["last_message_at"] == stored["created_at"]


def test_deleting_older_message_keeps_pointer(db, pair):
    a, b = pair
    m1 = send_message(db, a["_id"], b["_id"], "one")
    m2 = send_message(db, a["_id"], b["_id"], "two")
    delete_message(db, m1["id"], a["_id"])
    assert _chat(db, m2)["last_message"] == as_object_id(m2["id"])


def test_deleting_only_message_clears_pointer(db, pair):
    a, b = pair
    msg = send_message(db, a["_id"], b["_id"], "only")
    delete_message(db, msg["id"], a["_id"])

    chat = _chat(db, msg)
    assert chat["last_message"] is None
    assert chat["last_message_at"] is None
    assert chat["active"] is True


def test_only_sender_deletes(db, pair):
    a, b = pair
    msg = send_message(db, a["_id"], b["_id"], "mine")
    with pytest.raises(AuthorizationFailure):
        delete_message(db, msg["id"], b["_id"])
    assert db.messages.count_documents({}) == 1


def test_delete_missing_message(db, pair):
    a, _ = pair
    with pytest.raises(NotFound):
        delete_message(db, "0123456789abcdef01234567", a["_id"])


def test_delete_is_audited(db, pair):
    a, b = pair
    msg = send_message(db, a["_id"], b["_id"], "bye")
    delete_message(db, msg["id"], a["_id"])
    entry = db.audit_log.find_one({"action": "DELETE_MESSAGE"})
    assert entry["actor"] == str(a["_id"])
    assert entry["details"]["message_id"] == msg["id"]


def test_delete_racing_a_send_keeps_the_new_message(db, pair, monkeypatch):
    a, b = pair
    send_message(db, a["_id"], b["_id"], "m0")
    m1 = send_message(db, a["_id"], b["_id"], "m1")
    real_latest = chats.latest_message
    raced = {}

    def latest_then_send(database, chat_id):
        stale = real_latest(database, chat_id)
        # B's send commits between the recomputation's read and its write
        raced["m2"] = send_message(database, b["_id"], a["_id"], "m2")
        return stale

    monkeypatch.setattr(chats, "latest_message", latest_then_send)
    delete_message(db, m1["id"], a["_id"])

    assert _chat(db, m1)["last_message"] == as_object_id(raced["m2"]["id"])


def test_send_landing_before_recompute_is_kept(db, pair):
    a, b = pair
    m1 = send_message(db, a["_id"], b["_id"], "m1")
    m2 = send_message(db, b["_id"], a["_id"], "m2")
    delete_message(db, m1["id"], a["_id"])
    assert _chat(db, m2)["last_message"] == as_object_id(m2["id"])


def test_history_is_oldest_first_and_participant_only(db, pair, make_user):
    a, b = pair
    eve = make_user("eve")
    for text in ("one", "two", "three"):
        msg = send_message(db, a["_id"], b["_id"], text)

    history = fetch_history(db, msg["chatId"], b["_id"])
    assert [m["content"] for m in history] == ["one", "two", "three"]
    assert history[0]["sender"]["username"] == "alice"

    with pytest.raises(AuthorizationFailure):
        fetch_history(db, msg["chatId"], eve["_id"])


def test_deleting_file_message_removes_the_upload(db, pair):
    a, b = pair
    path = os.path.join(uploads.messages_dir(), "attachment.txt")
    with open(path, "w") as f:
        f.write("data")
    msg = send_message(db, a["_id"], b["_id"], "/uploads/messages/attachment.txt", "file")

    delete_message(db, msg["id"], a["_id"])
    assert not os.path.exists(path)
    assert db.messages.count_documents({}) == 0


def test_file_removal_failure_does_not_block_delete(db, pair, monkeypatch):
    a, b = pair
    msg = send_message(db, a["_id"], b["_id"], "/uploads/messages/gone.png", "image")

    def boom(path):
        raise OSError("read-only filesystem")

    monkeypatch.setattr(uploads.os.path, "exists", lambda path: True)
    monkeypatch.setattr(uploads.os, "remove", boom)
    delete_message(db, msg["id"], a["_id"])
    assert db.messages.count_documents({}) == 0
