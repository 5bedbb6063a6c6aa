"""Document shapes for the ``users``, ``chats`` and ``messages`` collections.

Documents travel through the code as plain dicts, the way pymongo hands them
out. The helpers here build new documents and turn stored ones into the
JSON-friendly payloads sent over HTTP and WebSocket.
"""
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from bson import ObjectId
from bson.errors import InvalidId

from .errors import ValidationFailure

PAIR_KEY_SEPARATOR = "_"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


def utcnow() -> datetime:
    # Mongo keeps milliseconds; truncating here keeps in-memory values equal
    # to what a later read returns
    now = datetime.utcnow()
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def as_object_id(value, field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationFailure.field(field, f"Invalid {field}")


def pair_key(user_a, user_b) -> str:
    """Order-independent key for the chat between two users."""
    return PAIR_KEY_SEPARATOR.join(sorted([str(user_a), str(user_b)]))


def new_user(username: str, password_hash: Optional[str], avatar: str = "") -> dict:
    return {
        "username": username,
        "password_hash": password_hash,
        "avatar": avatar,
        "is_online": False,
        "last_seen": None,
        "created_at": utcnow(),
    }


def new_chat(user_a: ObjectId, user_b: ObjectId) -> dict:
    now = utcnow()
    return {
        "participants": sorted([user_a, user_b], key=str),
        "pair_key": pair_key(user_a, user_b),
        "last_message": None,
        "last_message_at": None,
        "active": True,
        "created_at": now,
        "updated_at": now,
    }


def new_message(sender: ObjectId, receiver: Optional[ObjectId], chat_id: ObjectId,
                content: str, message_type: MessageType) -> dict:
    return {
        "sender": sender,
        "receiver": receiver,
        "chat_id": chat_id,
        "content": content,
        "message_type": message_type.value,
        "is_read": False,
        "read_at": None,
        "created_at": utcnow(),
    }


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def public_user(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return None
    return {
        "id": str(user["_id"]),
        "username": user.get("username"),
        "avatar": user.get("avatar", ""),
    }


def presence_user(user: dict) -> dict:
    out = public_user(user)
    out["isOnline"] = bool(user.get("is_online"))
    out["lastSeen"] = iso(user.get("last_seen"))
    return out


def format_message(message: dict, profiles: dict) -> dict:
    """``profiles`` maps user ObjectId -> user document."""
    receiver = message.get("receiver")
    return {
        "id": str(message["_id"]),
        "content": message["content"],
        "messageType": message.get("message_type", MessageType.TEXT.value),
        "sender": public_user(profiles.get(message["sender"])) or {"id": str(message["sender"])},
        "receiver": (public_user(profiles.get(receiver)) or {"id": str(receiver)}) if receiver else None,
        "chatId": str(message["chat_id"]),
        "timestamp": iso(message.get("created_at")),
        "isRead": bool(message.get("is_read")),
        "readAt": iso(message.get("read_at")),
    }


def load_profiles(db, user_ids: Iterable[ObjectId]) -> dict:
    ids = list({u for u in user_ids if u is not None})
    if not ids:
        return {}
    cursor = db.users.find({"_id": {"$in": ids}}, {"username": 1, "avatar": 1, "is_online": 1, "last_seen": 1})
    return {u["_id"]: u for u in cursor}
