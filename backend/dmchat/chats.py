"""Canonical chat resolution and the chat's last-message pointer.

Every pair of users owns at most one active chat, keyed by ``pair_key``. The
unique index on that key is what makes creation race-safe: a caller that loses
the insert race reads back the winner's record instead of failing.

The ``last_message`` / ``last_message_at`` fields are only ever written by
:func:`advance_last_message` and :func:`refresh_last_message`.
"""
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .errors import AuthorizationFailure, NotFound, TransientStoreFailure, ValidationFailure
from .models import as_object_id, iso, new_chat, pair_key, presence_user, utcnow

log = logging.getLogger(__name__)

LATEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


class ResolutionStatus(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"


@dataclass(frozen=True)
class Resolution:
    status: ResolutionStatus
    chat: Optional[dict] = None
    reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.status is ResolutionStatus.CREATED


def _validate_pair(db: Database, user_a, user_b):
    a = as_object_id(user_a, "senderId")
    b = as_object_id(user_b, "receiverId")
    if a == b:
        raise ValidationFailure.field("receiverId", "Cannot start a chat with yourself")
    found = {u["_id"] for u in db.users.find({"_id": {"$in": [a, b]}}, {"_id": 1})}
    if a not in found:
        raise NotFound("Sender not found")
    if b not in found:
        raise NotFound("Receiver not found")
    return a, b


def find_active_by_key(db: Database, key: str) -> Optional[dict]:
    return db.chats.find_one({"pair_key": key, "active": True})


def resolve(db: Database, user_a, user_b) -> Resolution:
    """Find or create the active chat between two distinct, existing users."""
    a, b = _validate_pair(db, user_a, user_b)
    key = pair_key(a, b)

    chat = find_active_by_key(db, key)
    if chat:
        return Resolution(ResolutionStatus.ALREADY_EXISTS, chat)

    doc = new_chat(a, b)
    try:
        db.chats.insert_one(doc)
    except DuplicateKeyError:
        # lost the race against another first-contact send
        chat = find_active_by_key(db, key)
        if chat:
            log.info("Chat %s already created concurrently, reusing %s", key, chat["_id"])
            return Resolution(ResolutionStatus.ALREADY_EXISTS, chat)
        log.error("Duplicate key on chat %s but no active chat found on re-read", key)
        return Resolution(ResolutionStatus.FAILED, reason=f"chat {key} conflicted but could not be read back")

    log.info("Created chat %s for %s", doc["_id"], key)
    return Resolution(ResolutionStatus.CREATED, doc)


def resolve_chat(db: Database, user_a, user_b) -> dict:
    result = resolve(db, user_a, user_b)
    if result.status is ResolutionStatus.FAILED:
        raise TransientStoreFailure(result.reason)
    return result.chat


def advance_last_message(db: Database, chat_id: ObjectId, message: dict) -> bool:
    """Point the chat at ``message`` unless it already points at something newer."""
    res = db.chats.update_one(
        {
            "_id": chat_id,
            "$or": [
                {"last_message_at": None},
                {"last_message_at": {"$lte": message["created_at"]}},
            ],
        },
        {"$set": {
            "last_message": message["_id"],
            "last_message_at": message["created_at"],
            "updated_at": utcnow(),
        }},
    )
    return res.modified_count == 1


def latest_message(db: Database, chat_id: ObjectId) -> Optional[dict]:
    return db.messages.find_one({"chat_id": chat_id}, sort=LATEST_FIRST)


def refresh_last_message(db: Database, chat_id: ObjectId, expected: Optional[ObjectId]) -> bool:
    """Recompute the pointer from the newest surviving message.

    The write only lands while the chat still points at ``expected``; if a
    concurrent send has moved the pointer in the meantime, that send's value
    is newer and is left alone.
    """
    latest = latest_message(db, chat_id)
    if latest is not None and latest["_id"] == expected:
        return False
    update = {
        "last_message": latest["_id"] if latest else None,
        "last_message_at": latest["created_at"] if latest else None,
        "updated_at": utcnow(),
    }
    res = db.chats.update_one({"_id": chat_id, "last_message": expected}, {"$set": update})
    return res.modified_count == 1


def get_chat_for(db: Database, chat_id, user_id: ObjectId, active_only: bool = True) -> dict:
    query = {"_id": as_object_id(chat_id, "chatId")}
    if active_only:
        query["active"] = True
    chat = db.chats.find_one(query)
    if not chat:
        raise NotFound("Chat not found")
    if user_id not in chat["participants"]:
        raise AuthorizationFailure("You are not authorized to access this chat")
    return chat


def counterpart(chat: dict, user_id: ObjectId) -> Optional[ObjectId]:
    return next((p for p in chat["participants"] if p != user_id), None)


def _activity(chat: dict):
    return chat.get("last_message_at") or chat.get("created_at")


def format_chat(chat: dict, other: dict, last: Optional[dict]) -> dict:
    return {
        "chatId": str(chat["_id"]),
        "user": presence_user(other),
        "lastMessage": {
            "id": str(last["_id"]),
            "content": last["content"],
            "messageType": last.get("message_type"),
            "timestamp": iso(last["created_at"]),
            "sender": str(last["sender"]),
        } if last else None,
        "lastMessageAt": iso(chat.get("last_message_at")),
        "unread": 0,
    }


def list_chats(db: Database, user_id: ObjectId) -> List[dict]:
    """Active chats of a user, one per counterpart, most recent first."""
    chats = list(db.chats.find({"participants": user_id, "active": True}))

    others = {counterpart(c, user_id) for c in chats}
    profiles = {u["_id"]: u for u in db.users.find({"_id": {"$in": [o for o in others if o]}}, {"password_hash": 0})}

    by_user = {}
    for chat in chats:
        other = counterpart(chat, user_id)
        if other not in profiles:
            # orphan; left for the reconciliation sweep
            continue
        current = by_user.get(other)
        if current is None or _activity(chat) > _activity(current):
            by_user[other] = chat

    last_ids = [c["last_message"] for c in by_user.values() if c.get("last_message")]
    lasts = {m["_id"]: m for m in db.messages.find({"_id": {"$in": last_ids}})} if last_ids else {}

    ordered = sorted(by_user.items(), key=lambda kv: _activity(kv[1]), reverse=True)
    return [format_chat(chat, profiles[other], lasts.get(chat.get("last_message"))) for other, chat in ordered]


def create_chat(db: Database, user_id: ObjectId, receiver_id) -> tuple:
    result = resolve(db, user_id, receiver_id)
    if result.status is ResolutionStatus.FAILED:
        raise TransientStoreFailure(result.reason)
    chat = result.chat
    other = db.users.find_one({"_id": counterpart(chat, user_id)}, {"password_hash": 0})
    last = db.messages.find_one({"_id": chat["last_message"]}) if chat.get("last_message") else None
    return format_chat(chat, other, last), result.created
