"""Fan-out of chat events to live connections.

There is no store-and-forward queue: an event for a user with no live session
is dropped, and the user catches up through the history endpoint.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set, Tuple

from .config import TYPING_IDLE_SECONDS
from .presence import Connection, SessionRegistry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: str
    chat_id: str
    delivered: int
    receiver_online: bool

    def to_dict(self) -> dict:
        return {
            "messageId": self.message_id,
            "chatId": self.chat_id,
            "delivered": self.delivered,
            "receiverOnline": self.receiver_online,
        }


class ChatSequencer:
    """Per-chat async lock so persistence and delivery of one chat's events
    are not interleaved; delivery order then matches commit order."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


class DeliveryRouter:
    def __init__(self, registry: SessionRegistry):
        self.registry = registry
        self.sequencer = ChatSequencer()

    def sequence(self, key: str):
        return self.sequencer.hold(key)

    def _targets(self, users: Iterable = (), chats: Iterable = (),
                 exclude: Optional[Connection] = None) -> Set[Connection]:
        conns: Set[Connection] = set()
        for user_id in users:
            if user_id is not None:
                conns |= self.registry.route(user_id)
        for chat_id in chats:
            conns |= self.registry.room(chat_id)
        if exclude is not None:
            conns.discard(exclude)
        return conns

    async def deliver_event(self, event: str, payload: dict, users: Iterable = (),
                            chats: Iterable = (), exclude: Optional[Connection] = None) -> int:
        """Send ``event`` once to every live connection of ``users`` and ``chats`` rooms."""
        targets = self._targets(users, chats, exclude)
        if not targets:
            return 0
        return await self.registry.send_all(targets, event, payload)

    async def deliver_message(self, message: dict) -> DeliveryReceipt:
        """``message`` is the formatted, already-persisted message."""
        sender_id = message["sender"]["id"]
        receiver_id = message["receiver"]["id"] if message.get("receiver") else None
        chat_id = message["chatId"]

        sender_conns = self.registry.route(sender_id)
        receiver_conns = self.registry.route(receiver_id) if receiver_id else set()
        room_conns = self.registry.room(chat_id) - sender_conns

        data = {"message": message}
        delivered = await self.registry.send_all(sender_conns, "message_sent", data)
        delivered += await self.registry.send_all(receiver_conns | room_conns, "new_message", data)

        receipt = DeliveryReceipt(message["id"], chat_id, delivered, bool(receiver_conns))
        log.debug("Delivered message %s to %d connection(s)", receipt.message_id, delivered)
        return receipt


class TypingTracker:
    """Best-effort typing relay with a server-side idle timeout.

    Keyed by (sender, chat). Each entry remembers the receiver and the
    connection it came from, so a dropped connection can close its own
    indicators.
    """

    def __init__(self, router: DeliveryRouter, idle_seconds: float = TYPING_IDLE_SECONDS):
        self.router = router
        self.idle_seconds = idle_seconds
        self._active: Dict[Tuple[str, str], Tuple[str, Connection, asyncio.TimerHandle]] = {}

    def is_typing(self, user_id, chat_id) -> bool:
        return (str(user_id), str(chat_id)) in self._active

    async def start(self, conn: Connection, chat_id: str, receiver_id: str):
        if conn.closed:
            # the session ended while the request was in flight
            return
        key = (str(conn.user_id), str(chat_id))
        previous = self._active.pop(key, None)
        if previous is not None:
            previous[2].cancel()
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.idle_seconds, self._expire, key)
        self._active[key] = (str(receiver_id), conn, handle)
        if previous is None:
            await self.router.deliver_event("user_typing", self._payload(conn, chat_id), users=[receiver_id])

    async def stop(self, conn: Connection, chat_id: str):
        """Close an indicator this tracker opened; anything else is ignored."""
        entry = self._active.pop((str(conn.user_id), str(chat_id)), None)
        if entry is None:
            return
        entry[2].cancel()
        await self.router.deliver_event("user_stopped_typing", self._payload(conn, chat_id), users=[entry[0]])

    async def drop_connection(self, conn: Connection):
        for key, (receiver_id, origin, handle) in list(self._active.items()):
            if origin is not conn:
                continue
            handle.cancel()
            del self._active[key]
            await self.router.deliver_event("user_stopped_typing", self._payload(conn, key[1]), users=[receiver_id])

    def _expire(self, key):
        entry = self._active.pop(key, None)
        if entry is None:
            return
        receiver_id, conn, _ = entry
        log.debug("Typing indicator of %s in %s timed out", key[0], key[1])
        asyncio.ensure_future(
            self.router.deliver_event("user_stopped_typing", self._payload(conn, key[1]), users=[receiver_id])
        )

    @staticmethod
    def _payload(conn: Connection, chat_id) -> dict:
        return {"userId": str(conn.user_id), "username": conn.username, "chatId": str(chat_id)}
