import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from .auth import authenticate_token
from .chats import get_chat_for
from .db import get_db
from .delivery import DeliveryRouter, TypingTracker
from .errors import AuthenticationFailure, ChatError, ValidationFailure
from .lifecycle import delete_and_notify, mark_read_and_notify, send_and_deliver
from .models import as_object_id
from .presence import Connection, PresenceWriter, SessionRegistry

log = logging.getLogger(__name__)

router = APIRouter()

presence_writer = PresenceWriter(get_db)
registry = SessionRegistry(presence_writer)
delivery = DeliveryRouter(registry)
typing = TypingTracker(delivery)

_CLOSE = object()


def _require(data: dict, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationFailure("Validation failed", [{"field": f, "message": f"{f} is required"} for f in missing])


async def on_join_chat(conn: Connection, data: dict):
    _require(data, "chatId")
    chat = await run_in_threadpool(get_chat_for, get_db(), data["chatId"], conn.user_id)
    chat_id = str(chat["_id"])
    registry.join_room(chat_id, conn)
    await conn.send("joined_chat", {"chatId": chat_id})
    log.info("User %s joined chat %s", conn.username, chat_id)


async def on_leave_chat(conn: Connection, data: dict):
    _require(data, "chatId")
    registry.leave_room(data["chatId"], conn)
    await conn.send("left_chat", {"chatId": data["chatId"]})


async def on_send_message(conn: Connection, data: dict):
    _require(data, "receiverId")
    await send_and_deliver(
        delivery, get_db(), conn.user_id, data["receiverId"],
        data.get("content"), data.get("messageType") or "text",
    )


async def _typing_target_ok(conn: Connection, data: dict) -> bool:
    try:
        chat = await run_in_threadpool(get_chat_for, get_db(), data["chatId"], conn.user_id)
        return as_object_id(data["receiverId"]) in chat["participants"]
    except ChatError:
        return False


async def on_typing_start(conn: Connection, data: dict):
    if not data.get("chatId") or not data.get("receiverId"):
        return
    if await _typing_target_ok(conn, data) and not conn.closed:
        await typing.start(conn, data["chatId"], data["receiverId"])


async def on_typing_stop(conn: Connection, data: dict):
    # stops with no open indicator are dropped by the tracker
    if data.get("chatId"):
        await typing.stop(conn, data["chatId"])


async def on_mark_message_read(conn: Connection, data: dict):
    _require(data, "messageId")
    await mark_read_and_notify(delivery, get_db(), data["messageId"], conn.user_id)


async def on_delete_message(conn: Connection, data: dict):
    _require(data, "messageId")
    await delete_and_notify(delivery, get_db(), data["messageId"], conn.user_id)


HANDLERS = {
    "join_chat": on_join_chat,
    "leave_chat": on_leave_chat,
    "send_message": on_send_message,
    "typing_start": on_typing_start,
    "typing_stop": on_typing_stop,
    "mark_message_read": on_mark_message_read,
    "delete_message": on_delete_message,
}


async def dispatch(conn: Connection, event: str, data: dict):
    handler = HANDLERS.get(event)
    if handler is None:
        await conn.send("error", {"message": f"Unknown event: {event}", "code": "unknown_event"})
        return
    try:
        await handler(conn, data)
    except ChatError as e:
        await conn.send("error", e.to_dict())
    except PyMongoError:
        log.exception("Store failure handling %s for %s", event, conn.username)
        await conn.send("error", {"message": f"Error handling {event}", "code": "server_error"})


async def _worker(conn: Connection, inbox: asyncio.Queue):
    """Process one connection's events in arrival order until it closes."""
    while True:
        item = await inbox.get()
        if item is _CLOSE or conn.closed:
            return
        event, data = item
        try:
            await dispatch(conn, event, data)
        except Exception:
            log.exception("Unhandled error in %s for %s", event, conn.username)


def _parse(raw: str):
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        return None
    data = frame.get("data")
    return frame["type"], data if isinstance(data, dict) else {}


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    try:
        user = await run_in_threadpool(authenticate_token, websocket.query_params.get("token"))
    except AuthenticationFailure as e:
        # policy violation, before the socket ever enters the registry
        log.info("WS rejected: %s", e.message)
        await websocket.close(code=1008)
        return

    await websocket.accept()
    conn = Connection(websocket, user)
    await registry.register(conn)

    inbox: asyncio.Queue = asyncio.Queue()
    worker = asyncio.create_task(_worker(conn, inbox))
    try:
        while True:
            raw = await websocket.receive_text()
            parsed = _parse(raw)
            if parsed is None:
                await conn.send("error", {"message": "Malformed frame", "code": "validation_failed"})
                continue
            inbox.put_nowait(parsed)
    except WebSocketDisconnect:
        pass
    except Exception:
        log.exception("WS receive loop failed for %s", conn.username)
    finally:
        # unregister drops the session before its first await, so nothing
        # routes to this socket afterwards
        await registry.unregister(conn)
        inbox.put_nowait(_CLOSE)
        await typing.drop_connection(conn)
