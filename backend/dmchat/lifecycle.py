"""Message lifecycle: send, mark read, delete, history.

The synchronous functions talk to the store and are safe to call from any
thread. The ``*_and_*`` coroutines wrap them for the WebSocket and REST paths
so both go through the same persistence, pointer and delivery steps.
"""
import logging
from typing import Optional, Tuple

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

from .audit import log_event
from .chats import advance_last_message, get_chat_for, refresh_last_message, resolve_chat
from .config import MAX_MESSAGE_LENGTH
from .delivery import DeliveryReceipt, DeliveryRouter
from .errors import AuthorizationFailure, NotFound, ValidationFailure
from .models import (MessageType, as_object_id, format_message, iso, load_profiles,
                     new_message, pair_key, utcnow)
from .uploads import remove_upload

log = logging.getLogger(__name__)


def _clean_content(content, message_type) -> Tuple[str, MessageType]:
    try:
        message_type = MessageType(message_type or MessageType.TEXT)
    except ValueError:
        raise ValidationFailure.field("messageType", "messageType must be one of text, image, file")
    if not isinstance(content, str) or not content.strip():
        raise ValidationFailure.field("content", "Message content is required")
    content = content.strip()
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationFailure.field("content", f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
    return content, message_type


def send_message(db: Database, sender_id, receiver_id, content, message_type=MessageType.TEXT) -> dict:
    content, message_type = _clean_content(content, message_type)
    sender = as_object_id(sender_id, "senderId")
    receiver = as_object_id(receiver_id, "receiverId")

    chat = resolve_chat(db, sender, receiver)

    message = new_message(sender, receiver, chat["_id"], content, message_type)
    db.messages.insert_one(message)
    advance_last_message(db, chat["_id"], message)

    return format_message(message, load_profiles(db, [sender, receiver]))


def mark_read(db: Database, message_id, reader_id) -> Tuple[Optional[dict], bool]:
    """Returns ``(message, changed)``; ``(None, False)`` if the message is gone."""
    oid = as_object_id(message_id, "messageId")
    reader = as_object_id(reader_id, "userId")

    existing = db.messages.find_one({"_id": oid})
    if existing is None:
        return None, False
    if existing.get("receiver") != reader:
        raise AuthorizationFailure("Only the receiver can mark a message as read")

    updated = db.messages.find_one_and_update(
        {"_id": oid, "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        return updated, True
    # already read, or deleted since the first lookup
    return db.messages.find_one({"_id": oid}), False


def delete_message(db: Database, message_id, requester_id) -> dict:
    oid = as_object_id(message_id, "messageId")
    requester = as_object_id(requester_id, "userId")

    message = db.messages.find_one({"_id": oid})
    if not message:
        raise NotFound("Message not found")
    if message["sender"] != requester:
        raise AuthorizationFailure("Not authorized to delete this message")

    if message.get("message_type") in (MessageType.IMAGE.value, MessageType.FILE.value):
        remove_upload(message["content"])

    db.messages.delete_one({"_id": oid})
    refresh_last_message(db, message["chat_id"], oid)

    log_event(db, str(requester), "DELETE_MESSAGE", {"message_id": str(oid), "chat_id": str(message["chat_id"])})
    log.info("Message %s deleted by %s", oid, requester)
    return message


def fetch_history(db: Database, chat_id, user_id) -> list:
    user = as_object_id(user_id, "userId")
    chat = get_chat_for(db, chat_id, user, active_only=False)
    messages = list(db.messages.find({"chat_id": chat["_id"]}).sort([("created_at", ASCENDING), ("_id", ASCENDING)]))
    profiles = load_profiles(db, chat["participants"])
    return [format_message(m, profiles) for m in messages]


async def send_and_deliver(router: DeliveryRouter, db: Database, sender_id, receiver_id,
                           content, message_type=MessageType.TEXT) -> Tuple[dict, DeliveryReceipt]:
    # same pair key for both directions, so A->B and B->A share one sequence
    async with router.sequence(pair_key(sender_id, receiver_id)):
        message = await run_in_threadpool(send_message, db, sender_id, receiver_id, content, message_type)
        receipt = await router.deliver_message(message)
    return message, receipt


async def mark_read_and_notify(router: DeliveryRouter, db: Database, message_id, reader_id) -> Optional[dict]:
    message, changed = await run_in_threadpool(mark_read, db, message_id, reader_id)
    if message is None:
        log.debug("Mark read skipped, message %s no longer exists", message_id)
        return None
    if changed:
        await router.deliver_event("message_read", {
            "messageId": str(message["_id"]),
            "chatId": str(message["chat_id"]),
            "readAt": iso(message.get("read_at")),
        }, users=[message["sender"]])
    return message


async def delete_and_notify(router: DeliveryRouter, db: Database, message_id, requester_id) -> dict:
    oid = as_object_id(message_id, "messageId")
    # resolve the owning pair before taking the chat's sequence
    existing = await run_in_threadpool(db.messages.find_one, {"_id": oid}, {"sender": 1, "receiver": 1})
    key = pair_key(existing["sender"], existing.get("receiver")) if existing else str(oid)
    async with router.sequence(key):
        message = await run_in_threadpool(delete_message, db, oid, requester_id)
        payload = {"messageId": str(oid), "chatId": str(message["chat_id"])}
        await router.deliver_event(
            "message_deleted", payload,
            users=[message["sender"], message.get("receiver")],
            chats=[str(message["chat_id"])],
        )
    return payload
